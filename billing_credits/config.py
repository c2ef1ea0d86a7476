# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# billing_credits/config.py
from __future__ import annotations
from pydantic import Field, AliasChoices
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    # Postgres
    PGHOST: str = Field(default="localhost", validation_alias=AliasChoices("PGHOST", "POSTGRES_HOST"))
    PGPORT: int = Field(default=5432, validation_alias=AliasChoices("PGPORT", "POSTGRES_PORT"))
    PGDATABASE: str = Field(default="postgres", validation_alias=AliasChoices("PGDATABASE", "POSTGRES_DATABASE"))
    PGUSER: str = Field(default="postgres", validation_alias=AliasChoices("PGUSER", "POSTGRES_USER"))
    PGPASSWORD: str = Field(default="postgres", validation_alias=AliasChoices("PGPASSWORD", "POSTGRES_PASSWORD"))
    PGSSL: bool = Field(default=False, validation_alias=AliasChoices("PGSSL", "POSTGRES_SSL"))

    # Ledger namespace (credit_balances, credit_ledger, topup_failures + mirrored stripe tables)
    BILLING_SCHEMA: str = "billing"

    # Which plan list of the billing config is active: test | production
    BILLING_MODE: str = "test"

    # subscriber | organization | seat-users | manual
    CREDITS_GRANT_TO: str = "subscriber"

    # Plan configuration (JSON string or path to a JSON file)
    BILLING_PLANS_JSON: str | None = None
    BILLING_PLANS_FILE: str | None = None

    # Stripe
    STRIPE_SECRET_KEY: str | None = Field(default=None, validation_alias=AliasChoices("STRIPE_SECRET_KEY", "STRIPE_API_KEY"))
    STRIPE_WEBHOOK_SECRET: str | None = None
    TOPUP_SUCCESS_URL: str | None = None
    TOPUP_CANCEL_URL: str | None = None

    # Auto top-up guard rails
    AUTO_TOPUP_COOLDOWN_HOURS: int = 24
    AUTO_TOPUP_ESCALATION_FAILURES: int = 3
    AUTO_TOPUP_DEFAULT_MAX_PER_MONTH: int = 10
    # Stripe refuses tiny charges; 60 leaves room for currency conversion
    TOPUP_MIN_CHARGE_CENTS: int = 60

    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @property
    def grant_to(self) -> str:
        v = (self.CREDITS_GRANT_TO or "subscriber").strip().lower()
        return "subscriber" if v == "organization" else v


@lru_cache()
def get_settings() -> Settings:
    return Settings()
