# tests/unit/services/test_inventory_service.py
import pytest
from sqlalchemy import select

from cardsync.core.enums import ItemType, RetryJobType, SaleChannel, SyncAction, SyncStatus
from cardsync.core.exceptions import InvalidInventoryOperation, InventoryItemNotFoundError
from cardsync.models.retry_job import RetryJob
from cardsync.models.sale import ItemSale
from cardsync.models.sync_queue import SyncQueueEntry
from cardsync.schemas.inventory import InventoryItemCreate, InventoryItemUpdate, LocalSaleCreate
from cardsync.services.inventory_service import InventoryService
from tests.conftest import LOCATION_A, LOCATION_B


async def _queue_actions(db_session, item_id):
    result = await db_session.execute(
        select(SyncQueueEntry.action).where(SyncQueueEntry.inventory_item_id == item_id).order_by(SyncQueueEntry.id)
    )
    return list(result.scalars().all())


async def _jobs(db_session, sku):
    result = await db_session.execute(select(RetryJob).where(RetryJob.sku == sku).order_by(RetryJob.id))
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_create_item_queues_create(db_session, store):
    service = InventoryService(db_session, user="admin")

    item = await service.create_item(InventoryItemCreate(
        store_key="main-store", sku="NEW-100", title="Charizard Base Set", price=120.0, quantity=3,
        location_gid=LOCATION_A,
    ))

    assert item.id is not None
    assert item.sync_status == SyncStatus.PENDING.value
    assert item.updated_by == "admin"
    assert await _queue_actions(db_session, item.id) == [SyncAction.CREATE.value]


@pytest.mark.asyncio
async def test_create_duplicate_sku_rejected(db_session, make_item):
    await make_item("DUP-1")
    service = InventoryService(db_session)

    with pytest.raises(InvalidInventoryOperation):
        await service.create_item(InventoryItemCreate(store_key="main-store", sku="DUP-1"))


def test_graded_item_cannot_be_created_with_stack():
    with pytest.raises(ValueError):
        InventoryItemCreate(store_key="main-store", sku="PSA-X", item_type=ItemType.GRADED, quantity=2)


@pytest.mark.asyncio
async def test_get_missing_item_raises(db_session):
    with pytest.raises(InventoryItemNotFoundError):
        await InventoryService(db_session).get_item(424242)


@pytest.mark.asyncio
async def test_list_items_hides_removed(db_session, make_item):
    await make_item("LIST-1")
    removed = await make_item("LIST-2")
    service = InventoryService(db_session)
    await service.remove_item(removed.id)

    skus = [item.sku for item in await service.list_items()]
    all_skus = [item.sku for item in await service.list_items(include_deleted=True)]

    assert skus == ["LIST-1"]
    assert sorted(all_skus) == ["LIST-1", "LIST-2"]


@pytest.mark.asyncio
async def test_update_catalog_fields_queues_update(db_session, make_item):
    item = await make_item("UPD-1")

    updated = await InventoryService(db_session).update_item(item.id, InventoryItemUpdate(price=30.0))

    assert updated.price == 30.0
    assert updated.sync_status == SyncStatus.PENDING.value
    assert await _queue_actions(db_session, item.id) == [SyncAction.UPDATE.value]
    assert await _jobs(db_session, "UPD-1") == []


@pytest.mark.asyncio
async def test_manual_stock_count_schedules_level(db_session, make_item):
    item = await make_item("UPD-2", quantity=5)

    updated = await InventoryService(db_session).update_item(item.id, InventoryItemUpdate(quantity=8))

    (job,) = await _jobs(db_session, "UPD-2")
    assert updated.quantity == 8
    assert job.job_type == RetryJobType.SET_REMOTE_LEVEL.value
    assert job.payload["quantity"] == 8
    assert job.payload["location_gid"] == LOCATION_A
    assert await _queue_actions(db_session, item.id) == []


@pytest.mark.asyncio
async def test_graded_quantity_above_one_rejected(db_session, make_item):
    item = await make_item("PSA-10", item_type=ItemType.GRADED)

    with pytest.raises(InvalidInventoryOperation):
        await InventoryService(db_session).update_item(item.id, InventoryItemUpdate(quantity=2))


@pytest.mark.asyncio
async def test_remove_item_is_soft_and_idempotent(db_session, make_item):
    item = await make_item("DEL-1")
    service = InventoryService(db_session)

    removed = await service.remove_item(item.id)
    again = await service.remove_item(item.id)

    assert removed.deleted_at is not None
    assert again.deleted_at == removed.deleted_at
    assert await _queue_actions(db_session, item.id) == [SyncAction.DELETE.value]


@pytest.mark.asyncio
async def test_local_graded_sale_ends_remote_listing(db_session, make_item):
    item = await make_item("PSA-20", item_type=ItemType.GRADED)

    sold = await InventoryService(db_session).record_local_sale(
        item.id, LocalSaleCreate(channel=SaleChannel.IN_STORE, price=400.0),
    )

    (job,) = await _jobs(db_session, "PSA-20")
    assert sold.quantity == 0
    assert sold.sold_channel == SaleChannel.IN_STORE.value
    assert sold.sold_price == 400.0
    assert job.job_type == RetryJobType.END_REMOTE_LISTING.value
    assert job.payload["remote_product_id"] == item.remote_product_id


@pytest.mark.asyncio
async def test_local_graded_sale_twice_rejected(db_session, make_item):
    item = await make_item("PSA-21", item_type=ItemType.GRADED)
    service = InventoryService(db_session)
    await service.record_local_sale(item.id, LocalSaleCreate())

    with pytest.raises(InvalidInventoryOperation):
        await service.record_local_sale(item.id, LocalSaleCreate())


@pytest.mark.asyncio
async def test_local_raw_sale_lowers_remote_level(db_session, make_item):
    item = await make_item("RAW-20", quantity=5)

    sold = await InventoryService(db_session).record_local_sale(item.id, LocalSaleCreate(quantity=2))

    (job,) = await _jobs(db_session, "RAW-20")
    sales = (await db_session.execute(select(ItemSale).where(ItemSale.inventory_item_id == item.id))).scalars().all()
    assert sold.quantity == 3
    assert sold.sold_at is None
    assert job.job_type == RetryJobType.SET_REMOTE_LEVEL.value
    assert job.payload["quantity"] == 3
    assert [sale.quantity for sale in sales] == [2]


@pytest.mark.asyncio
async def test_local_raw_sale_of_last_units_zeroes_remote(db_session, make_item):
    item = await make_item("RAW-21", quantity=2)

    sold = await InventoryService(db_session).record_local_sale(item.id, LocalSaleCreate(quantity=2))

    (job,) = await _jobs(db_session, "RAW-21")
    assert sold.quantity == 0
    assert sold.sold_at is not None
    assert job.job_type == RetryJobType.ZERO_REMOTE_QUANTITY.value


@pytest.mark.asyncio
async def test_local_raw_oversell_rejected(db_session, make_item):
    item = await make_item("RAW-22", quantity=1)

    with pytest.raises(InvalidInventoryOperation):
        await InventoryService(db_session).record_local_sale(item.id, LocalSaleCreate(quantity=3))


@pytest.mark.asyncio
async def test_shopify_channel_not_allowed_locally(db_session, make_item):
    item = await make_item("RAW-23", quantity=1)

    with pytest.raises(InvalidInventoryOperation):
        await InventoryService(db_session).record_local_sale(item.id, LocalSaleCreate(channel=SaleChannel.SHOPIFY))


@pytest.mark.asyncio
async def test_transfer_graded_item_enforces_location(db_session, make_item):
    item = await make_item("PSA-30", item_type=ItemType.GRADED)

    moved = await InventoryService(db_session).transfer_item(item.id, LOCATION_B)

    (job,) = await _jobs(db_session, "PSA-30")
    assert moved.location_gid == LOCATION_B
    assert job.job_type == RetryJobType.ENFORCE_LOCATION.value
    assert job.payload["desired_location_gid"] == LOCATION_B
    assert job.payload["other_location_gids"] == [LOCATION_A]


@pytest.mark.asyncio
async def test_transfer_raw_item_rejected(db_session, make_item):
    item = await make_item("RAW-30", quantity=4)

    with pytest.raises(InvalidInventoryOperation):
        await InventoryService(db_session).transfer_item(item.id, LOCATION_B)
