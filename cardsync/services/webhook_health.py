"""
Webhook feed health.

Every delivery from a known store bumps a per (store, location, topic) row.
The stale check groups those rows by store and location and reports groups
whose latest delivery is older than a threshold, which usually means Shopify
stopped delivering (expired registration, endpoint unreachable).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.core.utils import dialect_insert, utcnow
from cardsync.models.webhook import WebhookHealth
from cardsync.schemas.webhooks import StaleWebhookFeed

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    store_key: str
    topic: str
    webhook_id: str
    location_gid: Optional[str] = None


async def record_delivery(
    db: AsyncSession,
    delivery: Delivery,
    outcome: str,
    error: Optional[str] = None,
) -> None:
    """Upsert the health row for this delivery. The caller commits."""
    now = utcnow()
    error_at = now if error else None
    stmt = dialect_insert(db, WebhookHealth).values(
        store_key=delivery.store_key,
        location_gid=delivery.location_gid or "",
        topic=delivery.topic,
        last_received_at=now,
        last_webhook_id=delivery.webhook_id,
        last_outcome=outcome,
        event_count=1,
        last_error=error,
        last_error_at=error_at,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[WebhookHealth.store_key, WebhookHealth.location_gid, WebhookHealth.topic],
        set_={
            "last_received_at": now,
            "last_webhook_id": delivery.webhook_id,
            "last_outcome": outcome,
            "event_count": WebhookHealth.event_count + 1,
            "last_error": error,
            "last_error_at": error_at,
            "updated_at": now,
        },
    )
    await db.execute(stmt)


async def list_health(db: AsyncSession, store_key: Optional[str] = None) -> List[WebhookHealth]:
    stmt = select(WebhookHealth).order_by(WebhookHealth.last_received_at.desc())
    if store_key:
        stmt = stmt.where(WebhookHealth.store_key == store_key)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def find_stale_feeds(
    db: AsyncSession,
    threshold_minutes: int,
    now: Optional[datetime] = None,
) -> List[StaleWebhookFeed]:
    now = now or utcnow()
    latest = {}
    for row in await list_health(db):
        key = (row.store_key, row.location_gid)
        # Rows arrive newest first
        latest.setdefault(key, row)

    stale = []
    for (store_key, location_gid), row in latest.items():
        minutes = int((now - row.last_received_at).total_seconds() // 60)
        if minutes > threshold_minutes:
            stale.append(StaleWebhookFeed(
                store_key=store_key,
                location_gid=location_gid or None,
                last_topic=row.topic,
                last_received_at=row.last_received_at,
                minutes_since_last=minutes,
            ))
    return sorted(stale, key=lambda feed: (feed.store_key, feed.location_gid or ""))


async def check_webhook_health(session_factory, threshold_minutes: int) -> List[StaleWebhookFeed]:
    """Scheduled check; logs one warning per stale store/location."""
    async with session_factory() as db:
        stale = await find_stale_feeds(db, threshold_minutes)
    for feed in stale:
        logger.warning(
            "No Shopify webhooks from %s%s for %s min (last %s at %s)",
            feed.store_key,
            f" @ {feed.location_gid}" if feed.location_gid else "",
            feed.minutes_since_last,
            feed.last_topic,
            feed.last_received_at.isoformat(),
        )
    return stale
