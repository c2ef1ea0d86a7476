# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/namespaces.py

class BILLING:
    DEFAULT_SCHEMA = "billing"

    class TABLES:
        BALANCES = "credit_balances"
        LEDGER = "credit_ledger"
        TOPUP_FAILURES = "topup_failures"
        USAGE_EVENTS = "usage_events"

        # Mirrored from Stripe by the sync engine (read-only here)
        CUSTOMER_MAP = "user_stripe_customer_map"
        CUSTOMERS = "customers"
        SUBSCRIPTIONS = "subscriptions"
        SUBSCRIPTION_ITEMS = "subscription_items"
        PRICES = "prices"

    class KEYS:
        # Reserved balance key of the monetary wallet (stored in milli-cents)
        WALLET = "wallet"

    class LEDGER_METADATA:
        # seat entries: which user the seat belongs to (the holder may be the org pool)
        SEAT_USER = "seat_user"

    class METADATA:
        """Metadata keys attached to Stripe objects created by this package."""
        TOP_UP_KEY = "top_up_key"
        TOP_UP_AMOUNT = "top_up_amount"
        TOP_UP_AUTO = "top_up_auto"
        USER_ID = "user_id"
        FIRST_SEAT_USER_ID = "first_seat_user_id"
        PENDING_CREDIT_DOWNGRADE = "pending_credit_downgrade"
        DOWNGRADE_FROM_PRICE = "downgrade_from_price"
        UPGRADE_FROM_PRICE_AMOUNT = "upgrade_from_price_amount"
        CANCELLED_AS_DUPLICATE = "cancelled_as_duplicate"
