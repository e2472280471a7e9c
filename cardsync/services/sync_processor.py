# cardsync/services/sync_processor.py
"""
Drainer for the outbound sync queue.

Claims a batch, then pushes one entry at a time through the rate governor,
pausing for the governor's current delay between calls. Every remote call is
made outside a database transaction; each result is written back in its own
short session.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy import update

from cardsync.core.config import Settings, get_settings
from cardsync.core.enums import RemovalMode, RetryJobType, SyncAction, SyncQueueStatus
from cardsync.core.exceptions import (
    CallDeferredError,
    RemoteRateLimitedError,
    RemoteTerminalError,
)
from cardsync.core.utils import utcnow
from cardsync.database import async_session
from cardsync.models.inventory_item import InventoryItem
from cardsync.models.shopify_store import ShopifyStore
from cardsync.models.sync_queue import SyncQueueEntry
from cardsync.schemas.sync import DrainSummary
from cardsync.services import sync_queue
from cardsync.services.retry_jobs import enqueue_retry_job, recover_stuck_jobs
from cardsync.services.rate_governor import RateGovernor
from cardsync.services.shopify.client import ShopifyClient
from cardsync.services.store_resolver import get_store

logger = logging.getLogger(__name__)


class SyncQueueProcessor:
    def __init__(
        self,
        governor: RateGovernor,
        client_factory: Optional[Callable[[ShopifyStore], object]] = None,
        session_factory=async_session,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.governor = governor
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.client_factory = client_factory or (lambda store: ShopifyClient(store, governor=governor))
        self._sleep = sleep

    async def drain(self, limit: Optional[int] = None) -> DrainSummary:
        summary = DrainSummary()
        async with self.session_factory() as db:
            entries = await sync_queue.claim_batch(db, limit or self.settings.SYNC_QUEUE_BATCH_SIZE)
            await db.commit()

        summary.claimed = len(entries)
        if not entries:
            return summary
        logger.info("Draining %s sync queue entries", len(entries))

        previous_service = None
        for entry in entries:
            if previous_service is not None:
                # Cooperative pause between remote calls
                await self._sleep(self.governor.current_delay(previous_service))
            outcome, service = await self.process_entry(entry)
            previous_service = service if outcome not in ("deferred", "failed") else None
            if outcome == "completed":
                summary.completed += 1
            elif outcome == "rate_limited":
                summary.rate_limited += 1
            elif outcome == "requeued":
                summary.requeued += 1
            elif outcome == "deferred":
                summary.deferred += 1
            else:
                summary.failed += 1

        logger.info("Sync queue drain finished: %s", summary.model_dump())
        return summary

    async def process_entry(self, entry: SyncQueueEntry):
        """Push one claimed entry. Returns (outcome, governor service key)."""
        async with self.session_factory() as db:
            item = await db.get(InventoryItem, entry.inventory_item_id)
            store = await get_store(db, item.store_key) if item else None

            if item is None or store is None:
                reason = "inventory item not found" if item is None else f"store {item.store_key} not configured"
                await sync_queue.mark_failed_terminal(db, entry, reason)
                await db.commit()
                return "failed", None

        service = store.service_key
        try:
            client = self.client_factory(store)
            result = await self.governor.execute(service, lambda: self._push(client, entry, item))
        except CallDeferredError as exc:
            async with self.session_factory() as db:
                await sync_queue.release_claim(db, entry, exc.retry_in, str(exc))
                await db.commit()
            return "deferred", service
        except RemoteRateLimitedError as exc:
            delay = max(exc.retry_after or 0.0, self.governor.current_delay(service))
            async with self.session_factory() as db:
                await sync_queue.requeue_rate_limited(db, entry, delay, str(exc))
                await db.commit()
            return "rate_limited", service
        except (RemoteTerminalError, ValueError) as exc:
            async with self.session_factory() as db:
                await sync_queue.mark_failed_terminal(db, entry, str(exc))
                await db.commit()
            return "failed", service
        except Exception as exc:
            logger.warning("Sync entry %s (%s %s) error: %s", entry.id, entry.action, item.sku, exc)
            async with self.session_factory() as db:
                status = await sync_queue.record_failure(db, entry, f"{type(exc).__name__}: {exc}")
                await db.commit()
            return ("failed" if status == SyncQueueStatus.FAILED.value else "requeued"), service

        async with self.session_factory() as db:
            await self._apply_result(db, entry, result)
            if result.get("created"):
                await self._schedule_initial_level(db, entry.inventory_item_id)
            await sync_queue.mark_completed(db, entry, remote_product_id=result.get("product_id"))
            await db.commit()
        logger.info("Sync entry %s (%s %s) completed", entry.id, entry.action, item.sku)
        return "completed", service

    async def _push(self, client, entry: SyncQueueEntry, item: InventoryItem) -> Dict[str, Optional[str]]:
        action = SyncAction(entry.action)
        if item.deleted_at is not None and action != SyncAction.DELETE:
            logger.info("Item %s was removed locally; skipping %s", item.sku, action.value)
            return {
                "product_id": item.remote_product_id,
                "variant_id": item.remote_variant_id,
                "inventory_item_id": item.remote_inventory_item_id,
            }
        if action == SyncAction.DELETE:
            if item.remote_product_id:
                await client.delete_product(item.remote_product_id)
            return {"product_id": None}

        if not item.remote_product_id:
            # Update of a never-pushed item behaves as create
            ids = await client.create_product(sku=item.sku, title=item.title, price=item.price)
            return {**ids, "created": True}

        await client.update_product(
            item.remote_product_id,
            title=item.title,
            variant_id=item.remote_variant_id,
            price=item.price,
        )
        return {
            "product_id": item.remote_product_id,
            "variant_id": item.remote_variant_id,
            "inventory_item_id": item.remote_inventory_item_id,
        }

    async def _schedule_initial_level(self, db, item_id: int) -> None:
        """Stock for a newly created product, as an idempotent retry job."""
        item = await db.get(InventoryItem, item_id, populate_existing=True)
        if item is None or item.deleted_at is not None:
            return
        if not item.location_gid or not item.remote_inventory_item_id:
            return
        await enqueue_retry_job(
            db,
            job_type=RetryJobType.SET_REMOTE_LEVEL,
            sku=item.sku,
            payload={
                "store_key": item.store_key,
                "inventory_item_id": item.remote_inventory_item_id,
                "location_gid": item.location_gid,
                "quantity": max(item.quantity, 0),
            },
        )

    async def _apply_result(self, db, entry: SyncQueueEntry, result: Dict[str, Optional[str]]) -> None:
        now = utcnow()
        if entry.action == SyncAction.DELETE.value:
            values = dict(
                remote_product_id=None,
                remote_variant_id=None,
                remote_inventory_item_id=None,
                removed_from_remote_at=now,
                remote_removal_mode=RemovalMode.LOCAL_DELETE.value,
            )
        else:
            values = dict(
                remote_product_id=result.get("product_id"),
                remote_variant_id=result.get("variant_id"),
                remote_inventory_item_id=result.get("inventory_item_id"),
                removed_from_remote_at=None,
                remote_removal_mode=None,
            )
        await db.execute(
            update(InventoryItem)
            .where(InventoryItem.id == entry.inventory_item_id)
            .values(updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )


async def recover_stuck_work(session_factory=async_session, settings: Optional[Settings] = None) -> Dict[str, int]:
    """Maintenance sweep for both queues; scheduled alongside the drainer."""
    settings = settings or get_settings()
    async with session_factory() as db:
        entries = await sync_queue.recover_stuck(db, settings.SYNC_STUCK_TIMEOUT_SECONDS)
        jobs = await recover_stuck_jobs(db, settings.SYNC_STUCK_TIMEOUT_SECONDS)
        await db.commit()
    return {"sync_entries": entries, "retry_jobs": jobs}
