# tests/unit/services/test_retry_jobs.py
from datetime import timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select

from cardsync.core.enums import RetryJobStatus, RetryJobType
from cardsync.core.utils import utcnow
from cardsync.models.retry_job import RetryJob
from cardsync.services import retry_jobs
from tests.conftest import LOCATION_A


def _level_payload(quantity=0):
    return {
        "store_key": "main-store",
        "inventory_item_id": "700002",
        "location_gid": LOCATION_A,
        "quantity": quantity,
    }


async def _count(db_session):
    return (await db_session.execute(select(func.count(RetryJob.id)))).scalar_one()


@pytest.mark.asyncio
async def test_enqueue_creates_queued_job(db_session):
    job = await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-1", payload=_level_payload(3),
    )

    assert job.status == RetryJobStatus.QUEUED.value
    assert job.attempts == 0
    assert job.max_attempts == 5
    assert job.payload["quantity"] == 3


@pytest.mark.asyncio
async def test_enqueue_rejects_invalid_payload(db_session):
    with pytest.raises(ValidationError):
        await retry_jobs.enqueue_retry_job(
            db_session, job_type=RetryJobType.END_REMOTE_LISTING, sku="PSA-1", payload={"store_key": "main-store"},
        )


@pytest.mark.asyncio
async def test_second_enqueue_refreshes_pending_job(db_session):
    first = await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-2", payload=_level_payload(3),
    )
    second = await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-2", payload=_level_payload(1),
    )

    assert first.id == second.id
    assert second.payload["quantity"] == 1
    assert await _count(db_session) == 1


@pytest.mark.asyncio
async def test_enqueue_while_running_queues_successor(db_session):
    await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-3", payload=_level_payload(3),
    )
    (running,) = await retry_jobs.claim_due_jobs(db_session, 5)

    successor = await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-3", payload=_level_payload(5),
    )

    assert successor.id != running.id
    assert successor.status == RetryJobStatus.QUEUED.value
    assert successor.payload["quantity"] == 5
    # Not claimable while the earlier job is still running
    assert await retry_jobs.claim_due_jobs(db_session, 5, now=utcnow() + timedelta(seconds=1)) == []

    await retry_jobs.mark_job_done(db_session, running.id)
    (claimed,) = await retry_jobs.claim_due_jobs(db_session, 5, now=utcnow() + timedelta(seconds=1))

    assert claimed.id == successor.id
    assert claimed.payload["quantity"] == 5


@pytest.mark.asyncio
async def test_failed_job_with_queued_successor_is_retired(db_session):
    await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-10", payload=_level_payload(3),
    )
    (running,) = await retry_jobs.claim_due_jobs(db_session, 5)
    successor = await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-10", payload=_level_payload(5),
    )

    status = await retry_jobs.mark_job_failed(db_session, running, "HTTP 503")
    await db_session.refresh(running)

    assert status == RetryJobStatus.DONE.value
    assert running.status == RetryJobStatus.DONE.value
    assert f"Superseded by retry job {successor.id}" in running.last_error
    assert await retry_jobs.count_jobs_by_status(db_session) == {"done": 1, "queued": 1}


@pytest.mark.asyncio
async def test_same_sku_in_two_stores_keeps_both_jobs(db_session):
    await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="ABC", payload=_level_payload(3),
    )
    await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="ABC",
        payload={**_level_payload(7), "store_key": "vegas"},
    )

    rows = (await db_session.execute(
        select(RetryJob.store_key, RetryJob.payload).where(RetryJob.sku == "ABC").order_by(RetryJob.store_key)
    )).all()

    assert [(store_key, payload["quantity"]) for store_key, payload in rows] == [("main-store", 3), ("vegas", 7)]


@pytest.mark.asyncio
async def test_different_job_types_for_same_sku_coexist(db_session):
    await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-4", payload=_level_payload(),
    )
    await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.ZERO_REMOTE_QUANTITY, sku="RAW-4",
        payload={"store_key": "main-store", "inventory_item_id": "700002", "location_gid": LOCATION_A},
    )

    assert await _count(db_session) == 2


@pytest.mark.asyncio
async def test_claim_only_due_jobs(db_session):
    now = utcnow()
    await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="DUE", payload=_level_payload(),
    )
    await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="LATER", payload=_level_payload(),
        run_at=now + timedelta(minutes=5),
    )

    claimed = await retry_jobs.claim_due_jobs(db_session, 10, now=now + timedelta(seconds=1))

    assert [job.sku for job in claimed] == ["DUE"]
    assert claimed[0].status == RetryJobStatus.RUNNING.value


@pytest.mark.asyncio
async def test_failures_back_off_then_die(db_session):
    job = await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-5", payload=_level_payload(),
        max_attempts=3,
    )
    now = utcnow()

    delays, statuses = [], []
    for _ in range(3):
        (claimed,) = await retry_jobs.claim_due_jobs(db_session, 1, now=now + timedelta(days=1))
        status = await retry_jobs.mark_job_failed(db_session, claimed, "HTTP 503", now=now)
        await db_session.refresh(claimed)
        statuses.append(status)
        delays.append((claimed.next_run_at - now).total_seconds())

    assert statuses == ["queued", "queued", "dead"]
    assert delays[:2] == [30, 60]
    assert claimed.attempts == 3
    assert claimed.last_error == "HTTP 503"


@pytest.mark.asyncio
async def test_dead_job_is_kept_and_can_be_revived(db_session):
    job = await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-6", payload=_level_payload(),
    )
    (claimed,) = await retry_jobs.claim_due_jobs(db_session, 1)
    await retry_jobs.mark_job_dead(db_session, claimed, "422 unknown location")

    assert await retry_jobs.retry_dead_job(db_session, 12345) is None
    revived = await retry_jobs.retry_dead_job(db_session, job.id)

    assert revived.status == RetryJobStatus.QUEUED.value
    assert revived.attempts == 0


@pytest.mark.asyncio
async def test_revive_refused_when_pending_duplicate_exists(db_session):
    job = await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-7", payload=_level_payload(),
    )
    (claimed,) = await retry_jobs.claim_due_jobs(db_session, 1)
    await retry_jobs.mark_job_dead(db_session, claimed, "boom")
    await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-7", payload=_level_payload(2),
    )

    assert await retry_jobs.retry_dead_job(db_session, job.id) is None
    assert await _count(db_session) == 2


@pytest.mark.asyncio
async def test_requeue_does_not_count_attempt(db_session):
    await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-8", payload=_level_payload(),
    )
    (claimed,) = await retry_jobs.claim_due_jobs(db_session, 1)

    await retry_jobs.requeue_job(db_session, claimed, 10, "circuit open")
    await db_session.refresh(claimed)

    assert claimed.status == RetryJobStatus.QUEUED.value
    assert claimed.attempts == 0


@pytest.mark.asyncio
async def test_stuck_running_jobs_are_recovered(db_session):
    await retry_jobs.enqueue_retry_job(
        db_session, job_type=RetryJobType.SET_REMOTE_LEVEL, sku="RAW-9", payload=_level_payload(),
    )
    await retry_jobs.claim_due_jobs(db_session, 1)

    recovered = await retry_jobs.recover_stuck_jobs(db_session, 600, now=utcnow() + timedelta(hours=1))

    assert recovered == 1
    assert await retry_jobs.count_jobs_by_status(db_session) == {"queued": 1}
