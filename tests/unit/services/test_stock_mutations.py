# tests/unit/services/test_stock_mutations.py
import pytest
from sqlalchemy import select

from cardsync.core.enums import ItemType, SaleChannel
from cardsync.models.sale import ItemSale
from cardsync.services import stock_mutations
from cardsync.services.stock_mutations import SaleDetails


def _sale(order_id="1001", channel=SaleChannel.SHOPIFY, price=40.0):
    return SaleDetails(order_id=order_id, channel=channel, price=price, currency="USD")


@pytest.mark.asyncio
async def test_record_item_sale_claims_item_order_once(db_session, make_item):
    item = await make_item("RAW-1", quantity=5)

    first = await stock_mutations.record_item_sale(db_session, item.id, _sale(), 2)
    second = await stock_mutations.record_item_sale(db_session, item.id, _sale(), 2)

    assert first is not None
    assert second is None
    rows = (await db_session.execute(select(ItemSale))).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_graded_unit_sells_only_once(db_session, make_item):
    item = await make_item("PSA10-1", item_type=ItemType.GRADED, quantity=1)

    first = await stock_mutations.sell_graded_unit(db_session, item.id, _sale("A"))
    second = await stock_mutations.sell_graded_unit(db_session, item.id, _sale("B"))
    await db_session.refresh(item)

    assert first.consumed == 1
    assert second.consumed == 0
    assert item.quantity == 0
    assert item.sold_order_id == "A"
    assert item.sold_channel == SaleChannel.SHOPIFY.value


@pytest.mark.asyncio
async def test_raw_decrement_clamps_and_sets_sale_block_only_at_zero(db_session, make_item):
    item = await make_item("RAW-2", quantity=3)

    partial = await stock_mutations.decrement_raw_stock(db_session, item.id, 2, _sale("A"))
    await db_session.refresh(item)
    assert (partial.previous, partial.current) == (3, 1)
    assert item.sold_at is None

    rest = await stock_mutations.decrement_raw_stock(db_session, item.id, 5, _sale("B"))
    await db_session.refresh(item)
    assert rest.consumed == 1
    assert item.quantity == 0
    assert item.sold_order_id == "B"


@pytest.mark.asyncio
async def test_raw_decrement_of_empty_stock_is_noop(db_session, make_item):
    item = await make_item("RAW-3", quantity=0)

    change = await stock_mutations.decrement_raw_stock(db_session, item.id, 1, _sale())

    assert change.consumed == 0
    assert not change.changed


@pytest.mark.asyncio
async def test_absolute_level_to_zero_records_inventory_adjustment(db_session, make_item):
    item = await make_item("PSA9-1", item_type=ItemType.GRADED, quantity=1)

    change = await stock_mutations.set_absolute_quantity(db_session, item.id, 0)
    await db_session.refresh(item)

    assert (change.previous, change.current) == (1, 0)
    assert item.sold_at is not None
    assert item.sold_channel == SaleChannel.INVENTORY_ADJUSTMENT.value
    assert item.sold_order_id is None


@pytest.mark.asyncio
async def test_absolute_level_to_zero_after_restock_records_fresh_adjustment(db_session, make_item):
    item = await make_item("RAW-4", quantity=2)
    await stock_mutations.decrement_raw_stock(db_session, item.id, 2, _sale("ORDER-9"))
    await stock_mutations.set_absolute_quantity(db_session, item.id, 3)
    await stock_mutations.set_absolute_quantity(db_session, item.id, 0)
    await db_session.refresh(item)

    assert item.sold_channel == SaleChannel.INVENTORY_ADJUSTMENT.value
    assert item.sold_order_id is None
    assert item.sold_price is None


@pytest.mark.asyncio
async def test_negative_absolute_level_clamps_to_zero(db_session, make_item):
    item = await make_item("RAW-5", quantity=4)

    change = await stock_mutations.set_absolute_quantity(db_session, item.id, -2)

    assert change.current == 0
    assert await stock_mutations.current_quantity(db_session, item.id) == 0


@pytest.mark.asyncio
async def test_adjustment_takes_order_details_from_late_order(db_session, make_item):
    item = await make_item("PSA8-1", item_type=ItemType.GRADED, quantity=1)
    await stock_mutations.set_absolute_quantity(db_session, item.id, 0)

    attached = await stock_mutations.attach_order_to_adjustment(db_session, item.id, _sale("LATE-1"))
    await db_session.refresh(item)

    assert attached is True
    assert item.sold_order_id == "LATE-1"
    assert item.sold_channel == SaleChannel.SHOPIFY.value


@pytest.mark.asyncio
async def test_claim_restore_never_exceeds_sold(db_session, make_item):
    item = await make_item("RAW-6", quantity=5)
    sale_id = await stock_mutations.record_item_sale(db_session, item.id, _sale(), 3)
    sale_row = await db_session.get(ItemSale, sale_id)

    granted = await stock_mutations.claim_restore(db_session, sale_row, 10)
    await db_session.refresh(sale_row)
    again = await stock_mutations.claim_restore(db_session, sale_row, 1)

    assert granted == 3
    assert again == 0


@pytest.mark.asyncio
async def test_claim_restore_loses_race_with_stale_row(db_session, make_item):
    item = await make_item("RAW-7", quantity=5)
    sale_id = await stock_mutations.record_item_sale(db_session, item.id, _sale(), 2)
    sale_row = await db_session.get(ItemSale, sale_id)

    assert await stock_mutations.claim_restore(db_session, sale_row, 1) == 1
    # sale_row still says restored_quantity == 0: a concurrent claim would see this snapshot
    assert await stock_mutations.claim_restore(db_session, sale_row, 1) == 0


@pytest.mark.asyncio
async def test_raw_restore_clears_block_only_for_matching_order(db_session, make_item):
    item = await make_item("RAW-8", quantity=1)
    await stock_mutations.decrement_raw_stock(db_session, item.id, 1, _sale("ORDER-1"))

    await stock_mutations.restore_raw_stock(db_session, item.id, 1, "OTHER", fully_restored=True)
    await db_session.refresh(item)
    assert item.sold_order_id == "ORDER-1"

    quantity = await stock_mutations.restore_raw_stock(db_session, item.id, 1, "ORDER-1", fully_restored=True)
    await db_session.refresh(item)
    assert quantity == 2
    assert item.sold_order_id is None
    assert item.sold_at is None


@pytest.mark.asyncio
async def test_graded_restore_puts_unit_back(db_session, make_item):
    item = await make_item("PSA10-2", item_type=ItemType.GRADED, quantity=1)
    await stock_mutations.sell_graded_unit(db_session, item.id, _sale())

    await stock_mutations.restore_graded_unit(db_session, item.id)
    await db_session.refresh(item)

    assert item.quantity == 1
    assert item.sold_at is None
    assert item.sold_channel is None
