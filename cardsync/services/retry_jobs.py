"""Helpers for enqueuing and managing retry jobs."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from cardsync.core.config import get_settings
from cardsync.core.enums import RetryJobStatus, RetryJobType
from cardsync.core.utils import compute_backoff, dialect_insert, utcnow
from cardsync.models.retry_job import PENDING_STATUSES, QUEUED_INDEX_WHERE, RetryJob
from cardsync.schemas.retry_jobs import parse_payload

logger = logging.getLogger(__name__)


async def enqueue_retry_job(
    db: AsyncSession,
    *,
    job_type: RetryJobType,
    sku: str,
    payload: Dict[str, Any],
    max_attempts: Optional[int] = None,
    run_at: Optional[datetime] = None,
) -> Optional[RetryJob]:
    """
    Upsert the queued job for (job_type, store_key, sku).

    A second request for the same corrective action while one is queued only
    refreshes its payload. If the job is already running, the request becomes
    a queued successor that runs once the running job settles. Returns the
    queued job.
    """
    job_type = RetryJobType(job_type)
    parsed = parse_payload(job_type, payload)
    payload = parsed.model_dump()
    now = utcnow()
    max_attempts = max_attempts or get_settings().RETRY_JOB_MAX_ATTEMPTS

    stmt = dialect_insert(db, RetryJob).values(
        job_type=job_type.value,
        store_key=parsed.store_key,
        sku=sku,
        payload=payload,
        status=RetryJobStatus.QUEUED.value,
        attempts=0,
        max_attempts=max_attempts,
        next_run_at=run_at or now,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[RetryJob.job_type, RetryJob.store_key, RetryJob.sku],
        index_where=QUEUED_INDEX_WHERE,
        set_={"payload": stmt.excluded.payload, "updated_at": now},
    )
    await db.execute(stmt)

    job = await get_queued_job(db, job_type, parsed.store_key, sku)
    if job:
        logger.info(
            "Retry job %s queued for %s sku=%s (id=%s)", job_type.value, parsed.store_key, sku, job.id,
        )
    return job


async def get_queued_job(db: AsyncSession, job_type: RetryJobType, store_key: str, sku: str) -> Optional[RetryJob]:
    result = await db.execute(
        select(RetryJob).where(
            RetryJob.job_type == RetryJobType(job_type).value,
            RetryJob.store_key == store_key,
            RetryJob.sku == sku,
            RetryJob.status == RetryJobStatus.QUEUED.value,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def has_pending_job(db: AsyncSession, job_type: RetryJobType, store_key: str, sku: str) -> bool:
    result = await db.execute(
        select(RetryJob.id).where(
            RetryJob.job_type == RetryJobType(job_type).value,
            RetryJob.store_key == store_key,
            RetryJob.sku == sku,
            RetryJob.status.in_(PENDING_STATUSES),
        )
    )
    return result.first() is not None


async def _queued_successor_id(db: AsyncSession, job: RetryJob) -> Optional[int]:
    result = await db.execute(
        select(RetryJob.id).where(
            RetryJob.job_type == job.job_type,
            RetryJob.store_key == job.store_key,
            RetryJob.sku == job.sku,
            RetryJob.status == RetryJobStatus.QUEUED.value,
            RetryJob.id != job.id,
        )
    )
    return result.scalars().first()


async def _return_to_queue(
    db: AsyncSession,
    job: RetryJob,
    *,
    next_run_at: datetime,
    reason: str,
    now: datetime,
    attempts: Optional[int] = None,
) -> str:
    """
    Running job back to queued. If a newer queued job for the same target
    exists, the running one is retired as done instead; the successor carries
    the latest payload. Returns the resulting status.
    """
    values: Dict[str, Any] = {"last_error": (reason or "")[:2000], "updated_at": now}
    if attempts is not None:
        values["attempts"] = attempts

    successor_id = await _queued_successor_id(db, job)
    if successor_id is None:
        status = RetryJobStatus.QUEUED.value
        values.update(status=status, next_run_at=next_run_at)
    else:
        status = RetryJobStatus.DONE.value
        values.update(status=status, last_error=f"Superseded by retry job {successor_id}: {reason}"[:2000])
        logger.info(
            "Retry job %s (%s sku=%s) superseded by queued job %s", job.id, job.job_type, job.sku, successor_id,
        )

    await db.execute(
        update(RetryJob)
        .where(RetryJob.id == job.id, RetryJob.status == RetryJobStatus.RUNNING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return status


async def claim_due_jobs(db: AsyncSession, limit: int, now: Optional[datetime] = None) -> List[RetryJob]:
    """
    Move up to `limit` due jobs from queued to running (SKIP LOCKED on PostgreSQL).

    A queued job whose target already has a running job waits for it to settle.
    """
    now = now or utcnow()
    running = aliased(RetryJob)
    target_busy = (
        select(running.id)
        .where(
            running.status == RetryJobStatus.RUNNING.value,
            running.job_type == RetryJob.job_type,
            running.store_key == RetryJob.store_key,
            running.sku == RetryJob.sku,
        )
        .exists()
    )
    stmt = (
        select(RetryJob.id)
        .where(
            RetryJob.status == RetryJobStatus.QUEUED.value,
            RetryJob.next_run_at <= now,
            ~target_busy,
        )
        .order_by(RetryJob.next_run_at.asc(), RetryJob.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    candidate_ids = list((await db.execute(stmt)).scalars().all())

    claimed_ids = []
    for job_id in candidate_ids:
        result = await db.execute(
            update(RetryJob)
            .where(RetryJob.id == job_id, RetryJob.status == RetryJobStatus.QUEUED.value)
            .values(status=RetryJobStatus.RUNNING.value, started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed_ids.append(job_id)

    if not claimed_ids:
        return []
    result = await db.execute(
        select(RetryJob)
        .where(RetryJob.id.in_(claimed_ids))
        .order_by(RetryJob.next_run_at.asc(), RetryJob.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def mark_job_done(db: AsyncSession, job_id: int) -> None:
    now = utcnow()
    await db.execute(
        update(RetryJob)
        .where(RetryJob.id == job_id, RetryJob.status == RetryJobStatus.RUNNING.value)
        .values(status=RetryJobStatus.DONE.value, last_error=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )


async def mark_job_failed(
    db: AsyncSession,
    job: RetryJob,
    error_message: str,
    now: Optional[datetime] = None,
) -> str:
    """
    Count a failed attempt. Back to queued with an exponential delay, or dead
    once attempts reach max_attempts. Returns the resulting status, which is
    done when a queued successor already carries the action forward.
    """
    settings = get_settings()
    now = now or utcnow()
    attempts = (job.attempts or 0) + 1
    error_message = (error_message or "")[:2000]

    if attempts < job.max_attempts:
        delay = compute_backoff(attempts, settings.RETRY_JOB_BASE_SECONDS, settings.RETRY_JOB_MAX_SECONDS)
        logger.warning(
            "Retry job %s (%s sku=%s) failed attempt %s/%s, next run in %.0fs: %s",
            job.id, job.job_type, job.sku, attempts, job.max_attempts, delay, error_message,
        )
        return await _return_to_queue(
            db, job, next_run_at=now + timedelta(seconds=delay), reason=error_message, now=now, attempts=attempts,
        )

    logger.error(
        "Retry job %s (%s sku=%s) is DEAD after %s attempts: %s",
        job.id, job.job_type, job.sku, attempts, error_message,
    )
    await db.execute(
        update(RetryJob)
        .where(RetryJob.id == job.id, RetryJob.status == RetryJobStatus.RUNNING.value)
        .values(
            status=RetryJobStatus.DEAD.value,
            attempts=attempts,
            last_error=error_message,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return RetryJobStatus.DEAD.value


async def mark_job_dead(db: AsyncSession, job: RetryJob, error_message: str) -> None:
    """Terminal without retry (rejected request, unusable payload)."""
    logger.error("Retry job %s (%s sku=%s) is DEAD: %s", job.id, job.job_type, job.sku, error_message)
    await db.execute(
        update(RetryJob)
        .where(RetryJob.id == job.id, RetryJob.status == RetryJobStatus.RUNNING.value)
        .values(
            status=RetryJobStatus.DEAD.value,
            attempts=(job.attempts or 0) + 1,
            last_error=(error_message or "")[:2000],
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )


async def requeue_job(db: AsyncSession, job: RetryJob, delay_seconds: float, reason: str) -> str:
    """Put a running job back without counting an attempt (rate limit, open circuit)."""
    now = utcnow()
    return await _return_to_queue(
        db, job, next_run_at=now + timedelta(seconds=max(delay_seconds, 0)), reason=reason, now=now,
    )


async def retry_dead_job(db: AsyncSession, job_id: int) -> Optional[RetryJob]:
    """
    Operator action: reopen a dead job with a fresh attempt budget.

    Returns None if the job is not dead, or if another pending job for the
    same (job_type, store_key, sku) already exists.
    """
    job = await db.get(RetryJob, job_id, populate_existing=True)
    if job is None or job.status != RetryJobStatus.DEAD.value:
        return None
    if await has_pending_job(db, RetryJobType(job.job_type), job.store_key, job.sku):
        logger.info("Not reopening retry job %s: a pending %s job exists for %s", job_id, job.job_type, job.sku)
        return None

    now = utcnow()
    await db.execute(
        update(RetryJob)
        .where(RetryJob.id == job_id, RetryJob.status == RetryJobStatus.DEAD.value)
        .values(status=RetryJobStatus.QUEUED.value, attempts=0, next_run_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(job)
    logger.info("Retry job %s reopened by operator", job_id)
    return job


async def recover_stuck_jobs(db: AsyncSession, timeout_seconds: int, now: Optional[datetime] = None) -> int:
    """Jobs left running by a crashed worker go back to queued."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=timeout_seconds)
    result = await db.execute(
        select(RetryJob)
        .where(RetryJob.status == RetryJobStatus.RUNNING.value, RetryJob.started_at < cutoff)
        .execution_options(populate_existing=True)
    )
    stuck = list(result.scalars().all())
    for job in stuck:
        await _return_to_queue(db, job, next_run_at=now, reason="Recovered after worker timeout", now=now)
    if stuck:
        logger.warning("Recovered %s stuck retry jobs", len(stuck))
    return len(stuck)


async def list_jobs(db: AsyncSession, status: Optional[str] = None, limit: int = 100) -> List[RetryJob]:
    stmt = select(RetryJob).order_by(RetryJob.updated_at.desc()).limit(limit)
    if status:
        stmt = stmt.where(RetryJob.status == status)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_jobs_by_status(db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(select(RetryJob.status, func.count(RetryJob.id)).group_by(RetryJob.status))
    return {status: count for status, count in result.all()}
