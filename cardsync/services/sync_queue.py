"""Helpers for enqueuing and managing outbound sync queue entries."""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from cardsync.core.config import get_settings
from cardsync.core.enums import SyncAction, SyncQueueStatus, SyncStatus
from cardsync.core.utils import compute_backoff, utcnow
from cardsync.models.inventory_item import InventoryItem
from cardsync.models.sync_queue import SyncQueueEntry

logger = logging.getLogger(__name__)


async def enqueue_sync(
    db: AsyncSession,
    *,
    inventory_item_id: int,
    action: SyncAction,
    max_attempts: Optional[int] = None,
) -> SyncQueueEntry:
    """
    Queue a push for a local change. An entry for the same item and action
    that is still waiting is reused rather than duplicated.
    """
    action = SyncAction(action)
    result = await db.execute(
        select(SyncQueueEntry).where(
            SyncQueueEntry.inventory_item_id == inventory_item_id,
            SyncQueueEntry.action == action.value,
            SyncQueueEntry.status == SyncQueueStatus.QUEUED.value,
        )
    )
    existing = result.scalars().first()
    if existing:
        logger.debug("Sync %s for item %s already queued (entry %s)", action.value, inventory_item_id, existing.id)
        return existing

    now = utcnow()
    entry = SyncQueueEntry(
        inventory_item_id=inventory_item_id,
        action=action.value,
        status=SyncQueueStatus.QUEUED.value,
        attempts=0,
        max_attempts=max_attempts or get_settings().SYNC_QUEUE_MAX_ATTEMPTS,
        rate_limited_count=0,
        queued_at=now,
        updated_at=now,
    )
    db.add(entry)
    await db.execute(
        update(InventoryItem)
        .where(InventoryItem.id == inventory_item_id)
        .values(sync_status=SyncStatus.PENDING.value)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    await db.refresh(entry)
    return entry


async def claim_batch(db: AsyncSession, limit: int, now: Optional[datetime] = None) -> List[SyncQueueEntry]:
    """
    Mark up to `limit` eligible queued entries as processing, oldest first.

    Each claim is a conditional UPDATE that also requires no other entry for
    the same item to be processing, so one item never has two pushes in flight.
    """
    now = now or utcnow()
    stmt = (
        select(SyncQueueEntry.id, SyncQueueEntry.inventory_item_id)
        .where(
            SyncQueueEntry.status == SyncQueueStatus.QUEUED.value,
            (SyncQueueEntry.retry_after.is_(None)) | (SyncQueueEntry.retry_after <= now),
        )
        .order_by(SyncQueueEntry.queued_at.asc(), SyncQueueEntry.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    candidates = (await db.execute(stmt)).all()

    in_flight = aliased(SyncQueueEntry)
    claimed_ids = []
    for entry_id, item_id in candidates:
        other_processing = exists().where(
            in_flight.inventory_item_id == item_id,
            in_flight.status == SyncQueueStatus.PROCESSING.value,
        )
        result = await db.execute(
            update(SyncQueueEntry)
            .where(
                SyncQueueEntry.id == entry_id,
                SyncQueueEntry.status == SyncQueueStatus.QUEUED.value,
                ~other_processing,
            )
            .values(status=SyncQueueStatus.PROCESSING.value, started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed_ids.append(entry_id)
        else:
            logger.debug("Skipped sync entry %s: item %s already in flight", entry_id, item_id)

    if not claimed_ids:
        return []
    result = await db.execute(
        select(SyncQueueEntry)
        .where(SyncQueueEntry.id.in_(claimed_ids))
        .order_by(SyncQueueEntry.queued_at.asc(), SyncQueueEntry.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def mark_completed(db: AsyncSession, entry: SyncQueueEntry, remote_product_id: Optional[str] = None) -> None:
    now = utcnow()
    await db.execute(
        update(SyncQueueEntry)
        .where(SyncQueueEntry.id == entry.id, SyncQueueEntry.status == SyncQueueStatus.PROCESSING.value)
        .values(
            status=SyncQueueStatus.COMPLETED.value,
            completed_at=now,
            last_error=None,
            remote_product_id=remote_product_id,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(InventoryItem)
        .where(InventoryItem.id == entry.inventory_item_id)
        .values(sync_status=SyncStatus.SYNCED.value, last_sync_error=None, last_synced_at=now)
        .execution_options(synchronize_session=False)
    )


async def release_claim(db: AsyncSession, entry: SyncQueueEntry, delay_seconds: float, reason: str) -> None:
    """Back to queued untouched: the call never reached Shopify (no token, circuit open)."""
    now = utcnow()
    await db.execute(
        update(SyncQueueEntry)
        .where(SyncQueueEntry.id == entry.id, SyncQueueEntry.status == SyncQueueStatus.PROCESSING.value)
        .values(
            status=SyncQueueStatus.QUEUED.value,
            retry_after=now + timedelta(seconds=max(delay_seconds, 0)),
            started_at=None,
            last_error=reason[:2000],
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )


async def requeue_rate_limited(db: AsyncSession, entry: SyncQueueEntry, delay_seconds: float, reason: str) -> None:
    """
    Shopify throttled the push. The entry goes back to queued without using
    one of its attempts; only rate_limited_count moves.
    """
    now = utcnow()
    await db.execute(
        update(SyncQueueEntry)
        .where(SyncQueueEntry.id == entry.id, SyncQueueEntry.status == SyncQueueStatus.PROCESSING.value)
        .values(
            status=SyncQueueStatus.QUEUED.value,
            rate_limited_count=SyncQueueEntry.rate_limited_count + 1,
            retry_after=now + timedelta(seconds=max(delay_seconds, 0)),
            started_at=None,
            last_error=reason[:2000],
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )


async def _mark_failed(db: AsyncSession, entry: SyncQueueEntry, attempts: int, error_message: str, now: datetime) -> None:
    await db.execute(
        update(SyncQueueEntry)
        .where(SyncQueueEntry.id == entry.id, SyncQueueEntry.status == SyncQueueStatus.PROCESSING.value)
        .values(
            status=SyncQueueStatus.FAILED.value,
            attempts=attempts,
            last_error=error_message,
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(InventoryItem)
        .where(InventoryItem.id == entry.inventory_item_id)
        .values(sync_status=SyncStatus.ERROR.value, last_sync_error=error_message)
        .execution_options(synchronize_session=False)
    )
    logger.error(
        "Sync entry %s (%s item %s) FAILED after %s attempt(s): %s",
        entry.id, entry.action, entry.inventory_item_id, attempts, error_message,
    )


async def record_failure(db: AsyncSession, entry: SyncQueueEntry, error_message: str) -> str:
    """
    Count one failed attempt. Requeue with exponential backoff while attempts
    stay below max_attempts; at max_attempts the entry is failed (terminal)
    and the item is flagged. Returns the resulting status.
    """
    settings = get_settings()
    now = utcnow()
    attempts = (entry.attempts or 0) + 1
    error_message = (error_message or "")[:2000]

    if attempts >= entry.max_attempts:
        await _mark_failed(db, entry, attempts, error_message, now)
        return SyncQueueStatus.FAILED.value

    delay = compute_backoff(attempts, settings.SYNC_RETRY_BASE_SECONDS, settings.SYNC_RETRY_MAX_SECONDS)
    await db.execute(
        update(SyncQueueEntry)
        .where(SyncQueueEntry.id == entry.id, SyncQueueEntry.status == SyncQueueStatus.PROCESSING.value)
        .values(
            status=SyncQueueStatus.QUEUED.value,
            attempts=attempts,
            last_error=error_message,
            retry_after=now + timedelta(seconds=delay),
            started_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    logger.warning(
        "Sync entry %s failed attempt %s/%s, retrying in %.0fs: %s",
        entry.id, attempts, entry.max_attempts, delay, error_message,
    )
    return SyncQueueStatus.QUEUED.value


async def mark_failed_terminal(db: AsyncSession, entry: SyncQueueEntry, error_message: str) -> None:
    """Rejected by Shopify (or nothing left to push): no retry will help."""
    await _mark_failed(db, entry, (entry.attempts or 0) + 1, (error_message or "")[:2000], utcnow())


async def recover_stuck(db: AsyncSession, timeout_seconds: int, now: Optional[datetime] = None) -> int:
    """Entries left processing by a crashed drainer go back to queued."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=timeout_seconds)
    result = await db.execute(
        update(SyncQueueEntry)
        .where(
            SyncQueueEntry.status == SyncQueueStatus.PROCESSING.value,
            SyncQueueEntry.started_at < cutoff,
        )
        .values(status=SyncQueueStatus.QUEUED.value, started_at=None, retry_after=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.warning("Recovered %s stuck sync queue entries", result.rowcount)
    return result.rowcount or 0


async def retry_failed_entry(db: AsyncSession, entry_id: int) -> Optional[SyncQueueEntry]:
    """Operator action: give a failed entry a fresh attempt budget."""
    now = utcnow()
    result = await db.execute(
        update(SyncQueueEntry)
        .where(SyncQueueEntry.id == entry_id, SyncQueueEntry.status == SyncQueueStatus.FAILED.value)
        .values(
            status=SyncQueueStatus.QUEUED.value,
            attempts=0,
            retry_after=None,
            started_at=None,
            completed_at=None,
            queued_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    entry = await db.get(SyncQueueEntry, entry_id, populate_existing=True)
    await db.execute(
        update(InventoryItem)
        .where(InventoryItem.id == entry.inventory_item_id)
        .values(sync_status=SyncStatus.PENDING.value)
        .execution_options(synchronize_session=False)
    )
    logger.info("Sync entry %s requeued by operator", entry_id)
    return entry


async def list_entries(db: AsyncSession, status: Optional[str] = None, limit: int = 100) -> List[SyncQueueEntry]:
    stmt = select(SyncQueueEntry).order_by(SyncQueueEntry.queued_at.desc()).limit(limit)
    if status:
        stmt = stmt.where(SyncQueueEntry.status == status)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_by_status(db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(
        select(SyncQueueEntry.status, func.count(SyncQueueEntry.id)).group_by(SyncQueueEntry.status)
    )
    return {status: count for status, count in result.all()}
