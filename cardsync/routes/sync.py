# cardsync/routes/sync.py
"""
Operator endpoints for the outbound sync queue, retry jobs, the governor
and inbound webhook feed health.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.core.config import get_settings
from cardsync.core.enums import RetryJobStatus, SyncQueueStatus
from cardsync.dependencies import get_db, get_governor, get_session_factory
from cardsync.schemas.retry_jobs import RetryJobRead
from cardsync.schemas.sync import DrainSummary, RetryRunSummary, SyncQueueEntryRead
from cardsync.schemas.webhooks import StaleWebhookFeed, WebhookHealthRead
from cardsync.services import retry_jobs, sync_queue, webhook_health
from cardsync.services.rate_governor import RateGovernor
from cardsync.services.retry_job_runner import RetryJobRunner
from cardsync.services.sync_processor import SyncQueueProcessor, recover_stuck_work

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/sync", tags=["sync"])


def _check_status(value: Optional[str], allowed) -> Optional[str]:
    if value is None:
        return None
    valid = {member.value for member in allowed}
    if value not in valid:
        raise HTTPException(status_code=400, detail=f"status must be one of {sorted(valid)}")
    return value


@router.get("/queue", response_model=List[SyncQueueEntryRead])
async def list_queue(
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    return await sync_queue.list_entries(db, _check_status(status, SyncQueueStatus), limit)


@router.get("/queue/stats")
async def queue_stats(db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    return {
        "sync_queue": await sync_queue.count_by_status(db),
        "retry_jobs": await retry_jobs.count_jobs_by_status(db),
    }


@router.post("/queue/{entry_id}/retry", response_model=SyncQueueEntryRead)
async def retry_queue_entry(entry_id: int, db: AsyncSession = Depends(get_db)):
    """Give a failed entry a fresh attempt budget."""
    entry = await sync_queue.retry_failed_entry(db, entry_id)
    if entry is None:
        raise HTTPException(status_code=409, detail=f"Sync entry {entry_id} is not in failed state")
    await db.commit()
    return entry


@router.post("/queue/drain", response_model=DrainSummary)
async def drain_queue(
    limit: Optional[int] = Query(None, ge=1, le=500),
    governor: RateGovernor = Depends(get_governor),
    session_factory=Depends(get_session_factory),
):
    logger.info("Manual sync queue drain requested (limit=%s)", limit)
    processor = SyncQueueProcessor(governor, session_factory=session_factory)
    return await processor.drain(limit)


@router.post("/sweep")
async def sweep_stuck(session_factory=Depends(get_session_factory)) -> Dict[str, int]:
    return await recover_stuck_work(session_factory, get_settings())


@router.get("/jobs", response_model=List[RetryJobRead])
async def list_retry_jobs(
    status: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    return await retry_jobs.list_jobs(db, _check_status(status, RetryJobStatus), limit)


@router.post("/jobs/{job_id}/retry", response_model=RetryJobRead)
async def retry_dead_job(job_id: int, db: AsyncSession = Depends(get_db)):
    """Revive a dead job. Refused while another job for the same sku and type is pending."""
    job = await retry_jobs.retry_dead_job(db, job_id)
    if job is None:
        raise HTTPException(
            status_code=409,
            detail=f"Retry job {job_id} is not dead, or a pending job already covers it",
        )
    await db.commit()
    return job


@router.post("/jobs/run", response_model=RetryRunSummary)
async def run_due_jobs(
    limit: Optional[int] = Query(None, ge=1, le=100),
    governor: RateGovernor = Depends(get_governor),
    session_factory=Depends(get_session_factory),
):
    logger.info("Manual retry job run requested (limit=%s)", limit)
    runner = RetryJobRunner(governor, session_factory=session_factory)
    return await runner.run_due(limit)


@router.get("/governor")
async def governor_snapshot(governor: RateGovernor = Depends(get_governor)) -> Dict[str, Any]:
    return governor.snapshot()


@router.post("/governor/reset")
async def reset_governor(service: Optional[str] = None, governor: RateGovernor = Depends(get_governor)):
    governor.reset(service)
    logger.warning("Rate governor reset (service=%s)", service or "all")
    return {"status": "success", "service": service}


@router.get("/webhook-health", response_model=List[WebhookHealthRead])
async def list_webhook_health(store_key: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    return await webhook_health.list_health(db, store_key)


@router.get("/webhook-health/stale", response_model=List[StaleWebhookFeed])
async def stale_webhook_feeds(
    threshold_minutes: Optional[int] = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
):
    threshold = threshold_minutes or get_settings().WEBHOOK_STALE_THRESHOLD_MINUTES
    return await webhook_health.find_stale_feeds(db, threshold)
