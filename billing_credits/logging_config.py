# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# logging_config.py
import logging
import os


def _to_level(name: str, default: int) -> int:
    level = getattr(logging, (name or "").upper(), None)
    return level if isinstance(level, int) else default

def configure_logging(level_name: str | None = None, log_format: str | None = None):
    # --- Root config ---
    log_level_name = (level_name or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_format = log_format or os.getenv("LOG_FORMAT",
                                         "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    level = _to_level(log_level_name, logging.INFO)

    # Make root the single source of truth
    logging.basicConfig(level=level, format=log_format, force=True)
    logging.captureWarnings(True)

    # --- Normalize noisy library loggers ---
    desired_levels = {
        "asyncio": os.getenv("ASYNCIO_LEVEL", "WARNING"),
        "asyncpg": os.getenv("ASYNCPG_LEVEL", "WARNING"),
        # stripe logs every request/response at INFO
        "stripe": os.getenv("STRIPE_LOG_LEVEL", "WARNING"),
        "urllib3": os.getenv("URLLIB3_LEVEL", "WARNING"),
    }

    for name, lvl_name in desired_levels.items():
        lg = logging.getLogger(name)
        # Remove any handlers these libs may have attached (causes duplicates)
        for h in list(lg.handlers):
            lg.removeHandler(h)
        lg.propagate = True
        lg.setLevel(_to_level(lvl_name, level))
