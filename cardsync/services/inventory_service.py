"""
Local (admin-side) inventory mutations.

Everything here originates in this system rather than in a Shopify event, so
each change also schedules the outbound work that brings the storefront in
line: a sync queue entry for catalog data, or a retry job for stock-level side
effects. The caller commits.
"""

import logging
import uuid
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.core.enums import ItemType, RetryJobType, SaleChannel, SyncAction, SyncStatus
from cardsync.core.exceptions import InvalidInventoryOperation, InventoryItemNotFoundError
from cardsync.core.utils import utcnow
from cardsync.models.inventory_item import InventoryItem
from cardsync.schemas.inventory import (
    InventoryItemCreate,
    InventoryItemUpdate,
    LocalSaleCreate,
)
from cardsync.services import stock_mutations
from cardsync.services.retry_jobs import enqueue_retry_job
from cardsync.services.stock_mutations import SaleDetails
from cardsync.services.sync_queue import enqueue_sync

logger = logging.getLogger(__name__)


class InventoryService:
    def __init__(self, db: AsyncSession, user: Optional[str] = None):
        self.db = db
        self.user = user

    async def get_item(self, item_id: int) -> InventoryItem:
        item = await self.db.get(InventoryItem, item_id, populate_existing=True)
        if item is None:
            raise InventoryItemNotFoundError(f"Inventory item {item_id} not found")
        return item

    async def list_items(
        self,
        store_key: Optional[str] = None,
        sync_status: Optional[str] = None,
        include_deleted: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[InventoryItem]:
        stmt = select(InventoryItem).order_by(InventoryItem.id.desc()).limit(limit).offset(offset)
        if store_key:
            stmt = stmt.where(InventoryItem.store_key == store_key)
        if sync_status:
            stmt = stmt.where(InventoryItem.sync_status == sync_status)
        if not include_deleted:
            stmt = stmt.where(InventoryItem.deleted_at.is_(None))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def create_item(self, data: InventoryItemCreate) -> InventoryItem:
        now = utcnow()
        item = InventoryItem(
            store_key=data.store_key,
            sku=data.sku,
            item_type=data.item_type.value,
            title=data.title,
            price=data.price,
            quantity=data.quantity,
            location_gid=data.location_gid,
            sync_status=SyncStatus.PENDING.value,
            created_at=now,
            updated_at=now,
            updated_by=self.user,
        )
        self.db.add(item)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            raise InvalidInventoryOperation(f"SKU {data.sku} already exists in store {data.store_key}") from exc

        await enqueue_sync(self.db, inventory_item_id=item.id, action=SyncAction.CREATE)
        logger.info("Created %s item %s in %s (qty %s)", item.item_type, item.sku, item.store_key, item.quantity)
        return item

    async def update_item(self, item_id: int, data: InventoryItemUpdate) -> InventoryItem:
        item = await self.get_item(item_id)
        if item.deleted_at is not None:
            raise InvalidInventoryOperation(f"Item {item.sku} has been removed")

        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        quantity = changes.pop("quantity", None)
        if quantity is not None and item.is_graded and quantity > 1:
            raise InvalidInventoryOperation("graded items have a quantity of at most 1")

        now = utcnow()
        if changes:
            await self.db.execute(
                update(InventoryItem)
                .where(InventoryItem.id == item.id)
                .values(updated_at=now, updated_by=self.user, **changes)
                .execution_options(synchronize_session=False)
            )
            await enqueue_sync(self.db, inventory_item_id=item.id, action=SyncAction.UPDATE)

        if quantity is not None and quantity != item.quantity:
            # Manual stock count: absolute, like a remote level event but outbound
            await self.db.execute(
                update(InventoryItem)
                .where(InventoryItem.id == item.id)
                .values(quantity=quantity, updated_at=now, updated_by=self.user)
                .execution_options(synchronize_session=False)
            )
            await self._schedule_level(item, quantity)

        return await self.get_item(item.id)

    async def remove_item(self, item_id: int) -> InventoryItem:
        """Soft delete; the listing is taken down by the sync queue."""
        item = await self.get_item(item_id)
        if item.deleted_at is not None:
            return item
        await self.db.execute(
            update(InventoryItem)
            .where(InventoryItem.id == item.id, InventoryItem.deleted_at.is_(None))
            .values(deleted_at=utcnow(), updated_by=self.user)
            .execution_options(synchronize_session=False)
        )
        await enqueue_sync(self.db, inventory_item_id=item.id, action=SyncAction.DELETE)
        logger.info("Removed item %s from %s", item.sku, item.store_key)
        return await self.get_item(item.id)

    async def record_local_sale(self, item_id: int, data: LocalSaleCreate) -> InventoryItem:
        """
        Sale made outside Shopify (in store, shows). The storefront must stop
        selling the unit: graded listings are ended, raw levels are lowered.
        """
        item = await self.get_item(item_id)
        if item.deleted_at is not None:
            raise InvalidInventoryOperation(f"Item {item.sku} has been removed")
        if data.channel == SaleChannel.SHOPIFY:
            raise InvalidInventoryOperation("Shopify sales arrive by webhook")
        if not item.is_graded and data.quantity > item.quantity:
            raise InvalidInventoryOperation(
                f"Only {item.quantity} of {item.sku} in stock, cannot sell {data.quantity}"
            )

        sale = SaleDetails(
            order_id=data.order_reference or f"local:{uuid.uuid4().hex}",
            channel=data.channel,
            price=data.price if data.price is not None else item.price,
        )
        sale_id = await stock_mutations.record_item_sale(self.db, item.id, sale, data.quantity)
        if sale_id is None:
            raise InvalidInventoryOperation(f"Sale {sale.order_id} already recorded for {item.sku}")

        if item.is_graded:
            change = await stock_mutations.sell_graded_unit(self.db, item.id, sale)
        else:
            change = await stock_mutations.decrement_raw_stock(self.db, item.id, data.quantity, sale)

        if not change.consumed:
            raise InvalidInventoryOperation(f"{item.sku} is out of stock")
        if change.consumed != data.quantity:
            await stock_mutations.set_sale_quantity(self.db, sale_id, change.consumed)

        if item.is_graded:
            if item.remote_product_id:
                await enqueue_retry_job(
                    self.db,
                    job_type=RetryJobType.END_REMOTE_LISTING,
                    sku=item.sku,
                    payload={"store_key": item.store_key, "remote_product_id": item.remote_product_id},
                )
        elif change.current == 0 and item.remote_inventory_item_id and item.location_gid:
            await enqueue_retry_job(
                self.db,
                job_type=RetryJobType.ZERO_REMOTE_QUANTITY,
                sku=item.sku,
                payload={
                    "store_key": item.store_key,
                    "inventory_item_id": item.remote_inventory_item_id,
                    "location_gid": item.location_gid,
                },
            )
        else:
            await self._schedule_level(item, change.current)

        logger.info(
            "Local %s sale of %s x %s (%s -> %s)",
            data.channel.value, change.consumed, item.sku, change.previous, change.current,
        )
        return await self.get_item(item.id)

    async def transfer_item(self, item_id: int, location_gid: str) -> InventoryItem:
        """Move a graded unit to another location and make Shopify stock it there only."""
        item = await self.get_item(item_id)
        if item.item_type != ItemType.GRADED.value:
            raise InvalidInventoryOperation("Only graded items can be transferred between locations")
        if item.location_gid == location_gid:
            return item

        previous_location = item.location_gid
        await self.db.execute(
            update(InventoryItem)
            .where(InventoryItem.id == item.id)
            .values(location_gid=location_gid, updated_at=utcnow(), updated_by=self.user)
            .execution_options(synchronize_session=False)
        )

        if item.remote_inventory_item_id:
            await enqueue_retry_job(
                self.db,
                job_type=RetryJobType.ENFORCE_LOCATION,
                sku=item.sku,
                payload={
                    "store_key": item.store_key,
                    "inventory_item_id": item.remote_inventory_item_id,
                    "desired_location_gid": location_gid,
                    "other_location_gids": [previous_location] if previous_location else [],
                    "quantity": item.quantity,
                },
            )
        logger.info("Transferred %s from %s to %s", item.sku, previous_location, location_gid)
        return await self.get_item(item.id)

    async def _schedule_level(self, item: InventoryItem, quantity: int) -> None:
        if not item.remote_inventory_item_id or not item.location_gid:
            return
        await enqueue_retry_job(
            self.db,
            job_type=RetryJobType.SET_REMOTE_LEVEL,
            sku=item.sku,
            payload={
                "store_key": item.store_key,
                "inventory_item_id": item.remote_inventory_item_id,
                "location_gid": item.location_gid,
                "quantity": max(quantity, 0),
            },
        )
