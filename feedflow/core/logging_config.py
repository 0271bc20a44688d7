"""
Process-wide logging setup.

Every module logs through ``logging.getLogger(__name__)``; this module wires
those loggers to a single stdout handler the first time it is called.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional


_is_configured = False

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def configure_logging(level: Optional[str] = None, *, force: bool = False) -> None:
    """
    Configure the root and ``feedflow`` loggers once per process.

    Args:
        level: Optional log level override (e.g., "DEBUG", "INFO").
        force: Re-apply the configuration even if it was already applied.
    """
    global _is_configured

    if _is_configured and not force:
        return

    log_level = (level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": LOG_FORMAT,
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": log_level,
                    "stream": "ext://sys.stdout",
                }
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
            "loggers": {
                # Keep SQL echo out of the feed logs unless explicitly requested.
                "sqlalchemy.engine": {"level": "WARNING"},
            },
        }
    )

    logging.getLogger("feedflow").setLevel(log_level)

    _is_configured = True
