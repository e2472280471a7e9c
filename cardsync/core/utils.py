"""
Utility functions for the application.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

LOCATION_GID_PREFIX = "gid://shopify/Location/"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_location_gid(location_id) -> Optional[str]:
    """Normalise a numeric Shopify location id (or an existing GID) to a GID."""
    if location_id in (None, ""):
        return None
    value = str(location_id)
    if value.startswith("gid://"):
        return value
    return f"{LOCATION_GID_PREFIX}{value}"


def location_numeric_id(location_gid: str) -> str:
    return str(location_gid).rsplit("/", 1)[-1]


def compute_backoff(attempts: int, base_seconds: float, max_seconds: float) -> float:
    """
    Exponential backoff: base, 2*base, 4*base ... capped at max_seconds.

    Non-decreasing in attempts. attempts < 1 is treated as the first attempt.
    """
    exponent = max(attempts, 1) - 1
    # Cap the exponent so huge attempt counts don't overflow the float
    delay = base_seconds * (2 ** min(exponent, 32))
    return min(delay, max_seconds)


def dialect_insert(db: AsyncSession, model):
    """
    Return an INSERT construct supporting ON CONFLICT for the bound dialect.

    Production runs on PostgreSQL, the test-suite on SQLite; both accept
    on_conflict_do_nothing with index_elements/index_where.
    """
    dialect_name = db.get_bind().dialect.name
    if dialect_name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)
