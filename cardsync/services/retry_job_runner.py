# cardsync/services/retry_job_runner.py
"""
Runs due retry jobs against Shopify.

Jobs are claimed in one short transaction, executed through the rate governor
with no transaction open, and their outcome written back individually. A dead
job is never revived here; see retry_jobs.retry_dead_job for the operator path.
"""

import logging
from typing import Callable, Optional

from pydantic import ValidationError

from cardsync.core.config import Settings, get_settings
from cardsync.core.enums import RetryJobStatus, RetryJobType
from cardsync.core.exceptions import (
    CallDeferredError,
    RemoteRateLimitedError,
    RemoteTerminalError,
)
from cardsync.database import async_session
from cardsync.models.retry_job import RetryJob
from cardsync.models.shopify_store import ShopifyStore
from cardsync.schemas.retry_jobs import RetryJobPayload, parse_payload
from cardsync.schemas.sync import RetryRunSummary
from cardsync.services import retry_jobs
from cardsync.services.rate_governor import RateGovernor
from cardsync.services.shopify.client import ShopifyClient
from cardsync.services.store_resolver import get_store

logger = logging.getLogger(__name__)

# Job status after a failed attempt, as counted in the run summary
RUN_OUTCOMES = {
    RetryJobStatus.DEAD.value: "dead",
    RetryJobStatus.DONE.value: "done",
}


class RetryJobRunner:
    def __init__(
        self,
        governor: RateGovernor,
        client_factory: Optional[Callable[[ShopifyStore], object]] = None,
        session_factory=async_session,
        settings: Optional[Settings] = None,
    ):
        self.governor = governor
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.client_factory = client_factory or (lambda store: ShopifyClient(store, governor=governor))

    async def run_due(self, limit: Optional[int] = None) -> RetryRunSummary:
        summary = RetryRunSummary()
        async with self.session_factory() as db:
            jobs = await retry_jobs.claim_due_jobs(db, limit or self.settings.RETRY_JOB_BATCH_SIZE)
            await db.commit()

        summary.claimed = len(jobs)
        for job in jobs:
            outcome = await self.run_job(job)
            if outcome == "done":
                summary.done += 1
            elif outcome == "dead":
                summary.dead += 1
            elif outcome == "deferred":
                summary.deferred += 1
            else:
                summary.requeued += 1

        if jobs:
            logger.info("Retry job run finished: %s", summary.model_dump())
        return summary

    async def run_job(self, job: RetryJob) -> str:
        try:
            job_type = RetryJobType(job.job_type)
            payload = parse_payload(job_type, job.payload or {})
        except (ValueError, ValidationError) as exc:
            return await self._dead(job, f"Unusable job: {exc}")

        async with self.session_factory() as db:
            store = await get_store(db, payload.store_key)
        if store is None:
            return await self._dead(job, f"Store {payload.store_key} not configured")

        service = store.service_key
        try:
            client = self.client_factory(store)
            await self.governor.execute(service, lambda: self.perform(client, job_type, payload))
        except CallDeferredError as exc:
            await self._requeue(job, exc.retry_in, str(exc))
            return "deferred"
        except RemoteRateLimitedError as exc:
            delay = max(exc.retry_after or 0.0, self.governor.current_delay(service))
            await self._requeue(job, delay, str(exc))
            return "deferred"
        except (RemoteTerminalError, ValueError) as exc:
            return await self._dead(job, str(exc))
        except Exception as exc:
            async with self.session_factory() as db:
                status = await retry_jobs.mark_job_failed(db, job, f"{type(exc).__name__}: {exc}")
                await db.commit()
            return RUN_OUTCOMES.get(status, "requeued")

        async with self.session_factory() as db:
            await retry_jobs.mark_job_done(db, job.id)
            await db.commit()
        logger.info("Retry job %s (%s sku=%s) done", job.id, job.job_type, job.sku)
        return "done"

    async def perform(self, client, job_type: RetryJobType, payload: RetryJobPayload) -> None:
        """Execute the side effect for one job type."""
        if job_type == RetryJobType.END_REMOTE_LISTING:
            await client.archive_product(payload.remote_product_id)
        elif job_type == RetryJobType.ZERO_REMOTE_QUANTITY:
            await client.set_inventory_level(payload.inventory_item_id, payload.location_gid, 0)
        elif job_type == RetryJobType.ENFORCE_LOCATION:
            await client.set_inventory_level(
                payload.inventory_item_id, payload.desired_location_gid, payload.quantity
            )
            for location_gid in payload.other_location_gids:
                if location_gid != payload.desired_location_gid:
                    await client.set_inventory_level(payload.inventory_item_id, location_gid, 0)
        elif job_type == RetryJobType.SET_REMOTE_LEVEL:
            await client.set_inventory_level(payload.inventory_item_id, payload.location_gid, payload.quantity)
        else:
            raise ValueError(f"Unsupported retry job type {job_type!r}")

    async def _requeue(self, job: RetryJob, delay: float, reason: str) -> None:
        async with self.session_factory() as db:
            await retry_jobs.requeue_job(db, job, delay, reason)
            await db.commit()

    async def _dead(self, job: RetryJob, reason: str) -> str:
        async with self.session_factory() as db:
            await retry_jobs.mark_job_dead(db, job, reason)
            await db.commit()
        return "dead"
