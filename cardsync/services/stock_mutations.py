# cardsync/services/stock_mutations.py
"""
Quantity changes on InventoryItem, each a single conditional UPDATE.

Nothing here reads a row and writes it back unconditionally: every statement
carries a predicate against the value it expects, so webhook handlers, the
local admin API and the queue workers can interleave on the same item. Callers
own the transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.core.enums import SaleChannel
from cardsync.core.exceptions import DatabaseError
from cardsync.core.utils import dialect_insert, utcnow
from cardsync.models.inventory_item import InventoryItem
from cardsync.models.sale import ItemSale

logger = logging.getLogger(__name__)

# Compare-and-set retries before giving up on a hot row
MAX_CAS_ATTEMPTS = 5


@dataclass
class SaleDetails:
    order_id: Optional[str]
    channel: SaleChannel
    price: Optional[float] = None
    currency: Optional[str] = None
    sold_at: Optional[datetime] = None


@dataclass
class StockChange:
    item_id: int
    previous: int
    current: int

    @property
    def consumed(self) -> int:
        return max(self.previous - self.current, 0)

    @property
    def changed(self) -> bool:
        return self.previous != self.current


def _sale_block(sale: SaleDetails, now: datetime) -> dict:
    return dict(
        sold_at=sale.sold_at or now,
        sold_price=sale.price,
        sold_order_id=sale.order_id,
        sold_channel=sale.channel.value,
        sold_currency=sale.currency,
    )


CLEARED_SALE_BLOCK = dict(
    sold_at=None,
    sold_price=None,
    sold_order_id=None,
    sold_channel=None,
    sold_currency=None,
)


async def current_quantity(db: AsyncSession, item_id: int) -> Optional[int]:
    result = await db.execute(select(InventoryItem.quantity).where(InventoryItem.id == item_id))
    return result.scalar_one_or_none()


async def record_item_sale(
    db: AsyncSession,
    item_id: int,
    sale: SaleDetails,
    quantity: int,
) -> Optional[int]:
    """
    Claim (item, order) in item_sales. Returns the new row id, or None when
    this order was already applied to this item.
    """
    now = utcnow()
    stmt = (
        dialect_insert(db, ItemSale)
        .values(
            inventory_item_id=item_id,
            remote_order_id=sale.order_id,
            quantity=quantity,
            restored_quantity=0,
            sale_price=sale.price,
            currency=sale.currency,
            channel=sale.channel.value,
            sold_at=sale.sold_at or now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=[ItemSale.inventory_item_id, ItemSale.remote_order_id])
        .returning(ItemSale.id)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def set_sale_quantity(db: AsyncSession, sale_id: int, quantity: int) -> None:
    await db.execute(
        update(ItemSale)
        .where(ItemSale.id == sale_id)
        .values(quantity=quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def sell_graded_unit(db: AsyncSession, item_id: int, sale: SaleDetails) -> StockChange:
    """Take the single unit of a graded item if it is still in stock."""
    now = utcnow()
    result = await db.execute(
        update(InventoryItem)
        .where(InventoryItem.id == item_id, InventoryItem.quantity > 0)
        .values(quantity=0, updated_at=now, last_remote_seen_at=now, **_sale_block(sale, now))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return StockChange(item_id=item_id, previous=1, current=0)
    return StockChange(item_id=item_id, previous=0, current=0)


async def attach_order_to_adjustment(db: AsyncSession, item_id: int, sale: SaleDetails) -> bool:
    """
    A level webhook can land before the order webhook for the same sale. When
    the unit was already zeroed as an inventory adjustment, give that sale its
    order details instead of treating the order as a second sale.
    """
    now = utcnow()
    result = await db.execute(
        update(InventoryItem)
        .where(
            InventoryItem.id == item_id,
            InventoryItem.quantity == 0,
            InventoryItem.sold_order_id.is_(None),
            InventoryItem.sold_channel == SaleChannel.INVENTORY_ADJUSTMENT.value,
        )
        .values(updated_at=now, **_sale_block(sale, now))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def decrement_raw_stock(
    db: AsyncSession,
    item_id: int,
    count: int,
    sale: SaleDetails,
) -> StockChange:
    """
    quantity = max(quantity - count, 0), expressed as compare-and-set on the
    quantity just read. The sale block is written only when this statement
    takes the item to zero.
    """
    for _ in range(MAX_CAS_ATTEMPTS):
        previous = await current_quantity(db, item_id)
        if previous is None:
            return StockChange(item_id=item_id, previous=0, current=0)
        new_quantity = max(previous - count, 0)
        if new_quantity == previous:
            return StockChange(item_id=item_id, previous=previous, current=previous)

        now = utcnow()
        values = dict(quantity=new_quantity, updated_at=now, last_remote_seen_at=now)
        if new_quantity == 0:
            values.update(_sale_block(sale, now))

        result = await db.execute(
            update(InventoryItem)
            .where(InventoryItem.id == item_id, InventoryItem.quantity == previous)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return StockChange(item_id=item_id, previous=previous, current=new_quantity)

    raise DatabaseError(f"Inventory item {item_id} kept changing under a raw sale; giving up")


async def claim_restore(db: AsyncSession, sale_row: ItemSale, count: int) -> int:
    """
    Reserve up to `count` not-yet-restored units of a sale. Returns how many
    units the caller may put back (0 when another cancel/refund got there first).
    """
    count = min(count, sale_row.quantity - sale_row.restored_quantity)
    if count <= 0:
        return 0
    result = await db.execute(
        update(ItemSale)
        .where(
            ItemSale.id == sale_row.id,
            ItemSale.restored_quantity == sale_row.restored_quantity,
        )
        .values(restored_quantity=ItemSale.restored_quantity + count, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return 0
    return count


async def restore_graded_unit(db: AsyncSession, item_id: int) -> None:
    """Cancellation/refund of a graded sale: the single unit is back on the shelf."""
    await db.execute(
        update(InventoryItem)
        .where(InventoryItem.id == item_id)
        .values(quantity=1, updated_at=utcnow(), **CLEARED_SALE_BLOCK)
        .execution_options(synchronize_session=False)
    )


async def restore_raw_stock(
    db: AsyncSession,
    item_id: int,
    count: int,
    order_id: str,
    fully_restored: bool,
) -> Optional[int]:
    """Add units back; clear the sale block only if it belongs to this fully restored order."""
    values = dict(quantity=InventoryItem.quantity + count, updated_at=utcnow())
    if fully_restored:
        is_this_order = InventoryItem.sold_order_id == order_id
        for column in CLEARED_SALE_BLOCK:
            values[column] = case(
                (is_this_order, None),
                else_=getattr(InventoryItem, column),
            )

    result = await db.execute(
        update(InventoryItem)
        .where(InventoryItem.id == item_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return await current_quantity(db, item_id)


async def set_absolute_quantity(
    db: AsyncSession,
    item_id: int,
    quantity: int,
) -> StockChange:
    """
    Authoritative level from the remote. A >0 -> 0 transition is recorded as a
    fresh implicit sale on the inventory-adjustment channel, without an order
    id; a later order webhook for it attaches via attach_order_to_adjustment.
    """
    quantity = max(quantity, 0)
    for _ in range(MAX_CAS_ATTEMPTS):
        previous = await current_quantity(db, item_id)
        if previous is None:
            return StockChange(item_id=item_id, previous=0, current=0)

        now = utcnow()
        values = dict(quantity=quantity, updated_at=now, last_remote_seen_at=now)
        if previous > 0 and quantity == 0:
            # Any earlier sale block belongs to a unit since restocked
            values.update(_sale_block(SaleDetails(order_id=None, channel=SaleChannel.INVENTORY_ADJUSTMENT), now))

        result = await db.execute(
            update(InventoryItem)
            .where(InventoryItem.id == item_id, InventoryItem.quantity == previous)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return StockChange(item_id=item_id, previous=previous, current=quantity)

    raise DatabaseError(f"Inventory item {item_id} kept changing under a level update; giving up")
