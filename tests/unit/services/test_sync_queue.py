# tests/unit/services/test_sync_queue.py
from datetime import timedelta

import pytest

from cardsync.core.enums import SyncAction, SyncQueueStatus, SyncStatus
from cardsync.core.utils import utcnow
from cardsync.models.sync_queue import SyncQueueEntry
from cardsync.services import sync_queue


@pytest.mark.asyncio
async def test_enqueue_marks_item_pending(db_session, make_item):
    item = await make_item("RAW-1")

    entry = await sync_queue.enqueue_sync(db_session, inventory_item_id=item.id, action=SyncAction.UPDATE)
    await db_session.refresh(item)

    assert entry.status == SyncQueueStatus.QUEUED.value
    assert entry.attempts == 0
    assert entry.max_attempts == 3
    assert item.sync_status == SyncStatus.PENDING.value


@pytest.mark.asyncio
async def test_enqueue_coalesces_with_waiting_entry(db_session, make_item):
    item = await make_item("RAW-2")

    first = await sync_queue.enqueue_sync(db_session, inventory_item_id=item.id, action=SyncAction.UPDATE)
    second = await sync_queue.enqueue_sync(db_session, inventory_item_id=item.id, action=SyncAction.UPDATE)

    assert first.id == second.id


@pytest.mark.asyncio
async def test_claim_batch_is_fifo_and_skips_future_entries(db_session, make_item):
    now = utcnow()
    items = [await make_item(f"RAW-{n}") for n in range(3)]
    for offset, item in enumerate(items):
        db_session.add(SyncQueueEntry(
            inventory_item_id=item.id, action=SyncAction.UPDATE.value,
            status=SyncQueueStatus.QUEUED.value, queued_at=now - timedelta(minutes=10 - offset),
        ))
    db_session.add(SyncQueueEntry(
        inventory_item_id=items[0].id, action=SyncAction.CREATE.value,
        status=SyncQueueStatus.QUEUED.value, queued_at=now - timedelta(minutes=20),
        retry_after=now + timedelta(minutes=5),
    ))
    await db_session.commit()

    claimed = await sync_queue.claim_batch(db_session, 10, now=now)

    assert [entry.inventory_item_id for entry in claimed] == [item.id for item in items]
    assert all(entry.status == SyncQueueStatus.PROCESSING.value for entry in claimed)


@pytest.mark.asyncio
async def test_one_item_never_has_two_entries_in_flight(db_session, make_item):
    item = await make_item("RAW-9")
    now = utcnow()
    for minutes, action in ((3, SyncAction.UPDATE), (2, SyncAction.DELETE)):
        db_session.add(SyncQueueEntry(
            inventory_item_id=item.id, action=action.value,
            status=SyncQueueStatus.QUEUED.value, queued_at=now - timedelta(minutes=minutes),
        ))
    await db_session.commit()

    claimed = await sync_queue.claim_batch(db_session, 10, now=now)

    assert [entry.action for entry in claimed] == [SyncAction.UPDATE.value]


@pytest.mark.asyncio
async def test_failure_requeues_with_backoff_then_fails(db_session, make_item):
    item = await make_item("RAW-3")
    entry = await sync_queue.enqueue_sync(db_session, inventory_item_id=item.id, action=SyncAction.UPDATE)
    await db_session.commit()

    statuses = []
    for _ in range(3):
        (claimed,) = await sync_queue.claim_batch(db_session, 1, now=utcnow() + timedelta(hours=1))
        statuses.append(await sync_queue.record_failure(db_session, claimed, "HTTP 502"))
        await db_session.commit()

    await db_session.refresh(entry)
    await db_session.refresh(item)
    assert statuses == ["queued", "queued", "failed"]
    assert entry.status == SyncQueueStatus.FAILED.value
    assert entry.attempts == 3
    assert entry.last_error == "HTTP 502"
    assert item.sync_status == SyncStatus.ERROR.value


@pytest.mark.asyncio
async def test_first_retry_waits_base_delay(db_session, make_item):
    item = await make_item("RAW-4")
    await sync_queue.enqueue_sync(db_session, inventory_item_id=item.id, action=SyncAction.UPDATE)
    (claimed,) = await sync_queue.claim_batch(db_session, 1)

    before = utcnow()
    await sync_queue.record_failure(db_session, claimed, "timeout")
    await db_session.refresh(claimed)

    assert claimed.retry_after >= before + timedelta(seconds=30)
    assert claimed.retry_after <= utcnow() + timedelta(seconds=31)


@pytest.mark.asyncio
async def test_rate_limited_requeue_does_not_spend_attempts(db_session, make_item):
    item = await make_item("RAW-5")
    await sync_queue.enqueue_sync(db_session, inventory_item_id=item.id, action=SyncAction.UPDATE)

    for _ in range(5):
        (claimed,) = await sync_queue.claim_batch(db_session, 1, now=utcnow() + timedelta(hours=1))
        await sync_queue.requeue_rate_limited(db_session, claimed, 4.0, "429")
    await db_session.refresh(claimed)

    assert claimed.status == SyncQueueStatus.QUEUED.value
    assert claimed.attempts == 0
    assert claimed.rate_limited_count == 5


@pytest.mark.asyncio
async def test_completed_entry_marks_item_synced(db_session, make_item):
    item = await make_item("RAW-6")
    await sync_queue.enqueue_sync(db_session, inventory_item_id=item.id, action=SyncAction.UPDATE)
    (claimed,) = await sync_queue.claim_batch(db_session, 1)

    await sync_queue.mark_completed(db_session, claimed, remote_product_id="42")
    await db_session.refresh(claimed)
    await db_session.refresh(item)

    assert claimed.status == SyncQueueStatus.COMPLETED.value
    assert claimed.completed_at is not None
    assert item.sync_status == SyncStatus.SYNCED.value


@pytest.mark.asyncio
async def test_stuck_processing_entries_are_recovered(db_session, make_item):
    item = await make_item("RAW-7")
    await sync_queue.enqueue_sync(db_session, inventory_item_id=item.id, action=SyncAction.UPDATE)
    (claimed,) = await sync_queue.claim_batch(db_session, 1)

    recovered = await sync_queue.recover_stuck(db_session, 600, now=utcnow() + timedelta(minutes=11))
    await db_session.refresh(claimed)

    assert recovered == 1
    assert claimed.status == SyncQueueStatus.QUEUED.value


@pytest.mark.asyncio
async def test_operator_retry_of_failed_entry(db_session, make_item):
    item = await make_item("RAW-8")
    await sync_queue.enqueue_sync(db_session, inventory_item_id=item.id, action=SyncAction.UPDATE)
    (claimed,) = await sync_queue.claim_batch(db_session, 1)
    await sync_queue.mark_failed_terminal(db_session, claimed, "422 invalid")

    assert await sync_queue.retry_failed_entry(db_session, 999) is None
    entry = await sync_queue.retry_failed_entry(db_session, claimed.id)
    await db_session.refresh(item)

    assert entry.status == SyncQueueStatus.QUEUED.value
    assert entry.attempts == 0
    assert item.sync_status == SyncStatus.PENDING.value
    assert (await sync_queue.count_by_status(db_session)) == {"queued": 1}
