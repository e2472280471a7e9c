# cardsync/services/webhook_ledger.py
"""Idempotency ledger for inbound webhooks."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.core.utils import dialect_insert, utcnow
from cardsync.models.webhook import WebhookEvent

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    is_new: bool
    event_id: Optional[int] = None


async def record_if_new(
    db: AsyncSession,
    *,
    webhook_id: str,
    topic: str,
    payload: Dict[str, Any],
    store_key: Optional[str] = None,
    shop_domain: Optional[str] = None,
    location_gid: Optional[str] = None,
) -> LedgerResult:
    """
    Insert the receipt unless one with this webhook id already exists.

    Uses INSERT ... ON CONFLICT DO NOTHING so that two concurrent deliveries
    of the same id race on the unique index, not on application logic. The row
    is not committed here: it shares the caller's transaction with the handler.
    """
    stmt = (
        dialect_insert(db, WebhookEvent)
        .values(
            webhook_id=webhook_id,
            topic=topic,
            payload=payload,
            store_key=store_key,
            shop_domain=shop_domain,
            location_gid=location_gid,
            received_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=[WebhookEvent.webhook_id])
        .returning(WebhookEvent.id)
    )
    result = await db.execute(stmt)
    inserted_id = result.scalar_one_or_none()
    if inserted_id is None:
        logger.info("Duplicate webhook %s (%s) - already recorded", webhook_id, topic)
        return LedgerResult(is_new=False)
    return LedgerResult(is_new=True, event_id=inserted_id)


async def set_outcome(db: AsyncSession, event_id: int, outcome: str) -> None:
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == event_id)
        .values(outcome=outcome)
        .execution_options(synchronize_session=False)
    )


async def get_by_webhook_id(db: AsyncSession, webhook_id: str) -> Optional[WebhookEvent]:
    result = await db.execute(select(WebhookEvent).where(WebhookEvent.webhook_id == webhook_id))
    return result.scalar_one_or_none()
