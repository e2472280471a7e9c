"""
Scheduled tasks for the sync engine.

Interval jobs run inside the FastAPI process: the sync queue drainer, the
retry job runner, the stuck-work sweep and the webhook feed health check.
Each is limited to one running instance, so a slow drain is skipped rather
than stacked.
"""

import logging
from datetime import datetime
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cardsync.core.config import get_settings
from cardsync.database import async_session
from cardsync.services.rate_governor import RateGovernor
from cardsync.services.retry_job_runner import RetryJobRunner
from cardsync.services.sync_processor import SyncQueueProcessor, recover_stuck_work
from cardsync.services.webhook_health import check_webhook_health

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


async def drain_sync_queue_task(governor: RateGovernor):
    """Push queued local changes to Shopify"""
    try:
        summary = await SyncQueueProcessor(governor).drain()
        if summary.claimed:
            logger.info(f"Scheduled drain: {summary.model_dump()}")
    except Exception as e:
        logger.exception(f"Error in scheduled sync queue drain: {str(e)}")


async def run_retry_jobs_task(governor: RateGovernor):
    """Run retry jobs whose next run time has passed"""
    try:
        summary = await RetryJobRunner(governor).run_due()
        if summary.claimed:
            logger.info(f"Scheduled retry run: {summary.model_dump()}")
    except Exception as e:
        logger.exception(f"Error in scheduled retry job run: {str(e)}")


async def sweep_stuck_work_task():
    """Return entries and jobs abandoned in flight to the queue"""
    try:
        recovered = await recover_stuck_work()
        if any(recovered.values()):
            logger.warning(f"Stuck sweep recovered: {recovered}")
    except Exception as e:
        logger.exception(f"Error in stuck work sweep: {str(e)}")


async def check_webhook_health_task():
    """Warn about stores/locations that stopped receiving webhooks"""
    try:
        stale = await check_webhook_health(async_session, get_settings().WEBHOOK_STALE_THRESHOLD_MINUTES)
        if not stale:
            logger.debug("Webhook feeds healthy")
    except Exception as e:
        logger.exception(f"Error in webhook health check: {str(e)}")


def job_listener(event):
    """Listen to job events for logging"""
    if event.exception:
        logger.error(f"Job {event.job_id} crashed: {event.exception}")
    else:
        logger.debug(f"Job {event.job_id} executed successfully at {datetime.now()}")


def create_scheduler(governor: RateGovernor) -> AsyncIOScheduler:
    """Create and configure the scheduler"""
    global scheduler

    if scheduler is not None:
        return scheduler

    settings = get_settings()
    scheduler = AsyncIOScheduler()
    scheduler.add_listener(job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    if settings.SYNC_SCHEDULE_ENABLED:
        scheduler.add_job(
            drain_sync_queue_task,
            IntervalTrigger(seconds=settings.SYNC_DRAIN_INTERVAL_SECONDS),
            args=[governor],
            id="drain_sync_queue",
            name="Drain Sync Queue",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            run_retry_jobs_task,
            IntervalTrigger(seconds=settings.RETRY_JOB_INTERVAL_SECONDS),
            args=[governor],
            id="run_retry_jobs",
            name="Run Retry Jobs",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            sweep_stuck_work_task,
            IntervalTrigger(seconds=settings.STUCK_SWEEP_INTERVAL_SECONDS),
            id="sweep_stuck_work",
            name="Sweep Stuck Work",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            check_webhook_health_task,
            IntervalTrigger(seconds=settings.WEBHOOK_HEALTH_CHECK_INTERVAL_SECONDS),
            id="check_webhook_health",
            name="Check Webhook Health",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(
            "Sync jobs scheduled: drain every %ss, retry jobs every %ss, sweep every %ss, webhook health every %ss",
            settings.SYNC_DRAIN_INTERVAL_SECONDS,
            settings.RETRY_JOB_INTERVAL_SECONDS,
            settings.STUCK_SWEEP_INTERVAL_SECONDS,
            settings.WEBHOOK_HEALTH_CHECK_INTERVAL_SECONDS,
        )
    else:
        logger.info("Scheduled sync is disabled. Set SYNC_SCHEDULE_ENABLED=true to enable")

    return scheduler


async def start_scheduler(governor: RateGovernor):
    """Start the scheduler"""
    global scheduler

    if scheduler is None:
        scheduler = create_scheduler(governor)

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started successfully")

        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Active scheduled jobs: {len(jobs)}")
            for job in jobs:
                logger.info(f"  - {job.name}: {job.trigger}")
        else:
            logger.info("No scheduled jobs configured")


async def stop_scheduler():
    """Stop the scheduler gracefully"""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped successfully")
    scheduler = None


async def get_scheduler_status():
    """Get current scheduler status and job information"""
    if scheduler is None:
        return {"status": "not_initialized", "jobs": []}

    jobs_info = []
    for job in scheduler.get_jobs():
        jobs_info.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger)
        })

    return {
        "status": "running" if scheduler.running else "stopped",
        "jobs": jobs_info
    }
