# cardsync/core/logging_config.py
"""
Centralized logging configuration for the application.

Library loggers that chatter at INFO (HTTP clients, the database driver and
APScheduler's per-run messages) are held at WARNING so the webhook, queue and
governor logs stay readable.
"""

import logging
from typing import Optional

from cardsync.core.config import get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

NOISY_LOGGERS = (
    "httpx",
    "httpcore",
    "sqlalchemy",
    "sqlalchemy.engine",
    "asyncpg",
    "aiosqlite",
    "apscheduler",
)


def configure_logging(level: Optional[str] = None) -> str:
    """
    Configure logging for the application and return the level applied.

    The level comes from LOG_LEVEL in settings unless one is passed in.
    Unknown level names fall back to INFO.
    """
    log_level = (level or get_settings().LOG_LEVEL or "INFO").upper()
    numeric_level = getattr(logging, log_level, logging.INFO)

    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, handlers=[logging.StreamHandler()])

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # Keep app loggers at configured level
    logging.getLogger("cardsync").setLevel(numeric_level)
    logging.getLogger("__main__").setLevel(numeric_level)

    logging.getLogger(__name__).info("Logging configured at level: %s", log_level)
    return log_level
