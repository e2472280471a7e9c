# cardsync/services/reconciliation_service.py
"""
Reconciliation of Shopify events against local inventory.

One handler per event class. Handlers run inside the webhook request's
transaction (the caller commits or rolls back) and never raise: data-layer
errors come back as HandlerOutcome.FAILED so the router can answer 500 and let
Shopify redeliver.
"""

import functools
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.core.enums import (
    HandlerOutcome,
    InventoryTruthMode,
    RemovalMode,
    RetryJobType,
    SaleChannel,
)
from cardsync.core.exceptions import DatabaseError
from cardsync.core.utils import to_location_gid, utcnow
from cardsync.models.inventory_item import InventoryItem
from cardsync.models.sale import ItemSale
from cardsync.models.shopify_store import ShopifyStore
from cardsync.schemas.webhooks import (
    InventoryLevelPayload,
    OrderLineItem,
    OrderPayload,
    ProductListingPayload,
    ProductPayload,
    RefundPayload,
)
from cardsync.services import stock_mutations
from cardsync.services.match_utils import find_item
from cardsync.services.retry_jobs import enqueue_retry_job
from cardsync.services.stock_mutations import SaleDetails

logger = logging.getLogger(__name__)


@dataclass
class StoreContext:
    store: ShopifyStore
    location_gid: Optional[str] = None

    @property
    def store_key(self) -> str:
        return self.store.key

    @property
    def database_is_truth(self) -> bool:
        return self.store.inventory_truth_mode == InventoryTruthMode.DATABASE.value


@dataclass
class HandlerResult:
    outcome: HandlerOutcome
    message: str = ""
    item_ids: List[int] = field(default_factory=list)

    @classmethod
    def applied(cls, message: str = "", item_ids: Optional[List[int]] = None) -> "HandlerResult":
        return cls(HandlerOutcome.APPLIED, message, list(item_ids or []))

    @classmethod
    def noop(cls, message: str = "") -> "HandlerResult":
        return cls(HandlerOutcome.NOOP, message)

    @classmethod
    def failed(cls, message: str) -> "HandlerResult":
        return cls(HandlerOutcome.FAILED, message)

    @property
    def ok(self) -> bool:
        return self.outcome != HandlerOutcome.FAILED


def reconciliation_handler(method):
    """Convert data-layer exceptions raised by a handler into a FAILED result."""

    @functools.wraps(method)
    async def wrapper(self, ctx: StoreContext, payload):
        try:
            return await method(self, ctx, payload)
        except (SQLAlchemyError, DatabaseError) as exc:
            logger.exception("%s failed for store %s", method.__name__, ctx.store_key)
            return HandlerResult.failed(f"{type(exc).__name__}: {exc}")

    return wrapper


class ReconciliationService:
    def __init__(self, db: AsyncSession):
        self.db = db

    # --- helpers ---

    async def _match_line(self, ctx: StoreContext, line: OrderLineItem, order_location: Optional[str]):
        location_gid = to_location_gid(line.location_id) or order_location or ctx.location_gid
        return await find_item(
            self.db,
            ctx.store_key,
            variant_id=line.variant_id,
            sku=line.sku,
            location_gid=location_gid,
        )

    async def _schedule_remote_level(self, ctx: StoreContext, item: InventoryItem, quantity: int) -> None:
        """Queue a set_remote_level correction so the storefront matches local stock."""
        if not item.remote_inventory_item_id or not item.location_gid:
            logger.debug("Item %s has no remote inventory item/location; not scheduling level %s", item.sku, quantity)
            return
        await enqueue_retry_job(
            self.db,
            job_type=RetryJobType.SET_REMOTE_LEVEL,
            sku=item.sku,
            payload={
                "store_key": ctx.store_key,
                "inventory_item_id": item.remote_inventory_item_id,
                "location_gid": item.location_gid,
                "quantity": max(quantity, 0),
            },
        )

    async def _sales_for_order(self, ctx: StoreContext, order_id: str) -> List[ItemSale]:
        result = await self.db.execute(
            select(ItemSale)
            .join(InventoryItem, InventoryItem.id == ItemSale.inventory_item_id)
            .where(ItemSale.remote_order_id == order_id, InventoryItem.store_key == ctx.store_key)
            .order_by(ItemSale.id.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _restore(self, ctx: StoreContext, sale_row: ItemSale, count: int, order_id: str) -> bool:
        restorable = await stock_mutations.claim_restore(self.db, sale_row, count)
        if not restorable:
            return False

        item = await self.db.get(InventoryItem, sale_row.inventory_item_id, populate_existing=True)
        if item is None:
            return False

        if item.is_graded:
            await stock_mutations.restore_graded_unit(self.db, item.id)
            logger.info("Restored graded item %s (order %s)", item.sku, order_id)
            await self._schedule_remote_level(ctx, item, 1)
        else:
            fully_restored = sale_row.restored_quantity + restorable >= sale_row.quantity
            new_quantity = await stock_mutations.restore_raw_stock(
                self.db, item.id, restorable, order_id, fully_restored
            )
            logger.info(
                "Restored %s unit(s) of raw item %s (order %s), quantity now %s",
                restorable, item.sku, order_id, new_quantity,
            )
            if new_quantity:
                await self._schedule_remote_level(ctx, item, new_quantity)
        return True

    # --- handlers ---

    @reconciliation_handler
    async def handle_sale(self, ctx: StoreContext, order: OrderPayload) -> HandlerResult:
        """
        Paid order: consume stock once per (item, order).

        orders/create, orders/paid and orders/updated all deliver the same order
        under different webhook ids; the item_sales claim makes the repeats no-ops.
        """
        if not order.id:
            return HandlerResult.noop("order without id")
        if not order.is_paid:
            logger.info("Order %s financial_status=%s - not deducting stock", order.id, order.financial_status)
            return HandlerResult.noop(f"order not paid ({order.financial_status})")

        order_location = to_location_gid(order.location_id)
        touched = []
        for line in order.line_items:
            if line.quantity <= 0:
                continue
            item = await self._match_line(ctx, line, order_location)
            if item is None:
                logger.info("Order %s line sku=%s variant=%s: no local item", order.id, line.sku, line.variant_id)
                continue

            sale = SaleDetails(
                order_id=order.id,
                channel=SaleChannel.SHOPIFY,
                price=line.price,
                currency=order.currency,
            )
            sale_id = await stock_mutations.record_item_sale(self.db, item.id, sale, line.quantity)
            if sale_id is None:
                logger.info("Order %s already applied to %s", order.id, item.sku)
                continue

            if item.is_graded:
                change = await stock_mutations.sell_graded_unit(self.db, item.id, sale)
                consumed = change.consumed
                if not consumed and await stock_mutations.attach_order_to_adjustment(self.db, item.id, sale):
                    # Already zeroed by the level webhook for this same sale
                    consumed = 1
            else:
                change = await stock_mutations.decrement_raw_stock(self.db, item.id, line.quantity, sale)
                consumed = change.consumed

            if consumed != line.quantity:
                await stock_mutations.set_sale_quantity(self.db, sale_id, consumed)
            if consumed:
                touched.append(item.id)
                logger.info("Order %s sold %s of %s (%s -> %s)", order.id, consumed, item.sku, change.previous, change.current)
            else:
                logger.warning("Order %s: %s had no stock left to sell", order.id, item.sku)

        if not touched:
            return HandlerResult.noop("no matching stock")
        return HandlerResult.applied(f"order {order.id}", touched)

    @reconciliation_handler
    async def handle_cancellation(self, ctx: StoreContext, order: OrderPayload) -> HandlerResult:
        if not order.id:
            return HandlerResult.noop("order without id")

        sales = await self._sales_for_order(ctx, order.id)
        if not sales:
            logger.info("Cancelled order %s has no recorded sale - nothing to restore", order.id)
            return HandlerResult.noop("no recorded sale")

        touched = []
        for sale_row in sales:
            if await self._restore(ctx, sale_row, sale_row.unrestored_quantity, order.id):
                touched.append(sale_row.inventory_item_id)

        if not touched:
            return HandlerResult.noop("already restored")
        return HandlerResult.applied(f"cancelled order {order.id}", touched)

    @reconciliation_handler
    async def handle_refund(self, ctx: StoreContext, refund: RefundPayload) -> HandlerResult:
        if not refund.order_id:
            return HandlerResult.noop("refund without order id")

        sales = {row.inventory_item_id: row for row in await self._sales_for_order(ctx, refund.order_id)}
        if not sales:
            logger.info("Refund for order %s has no recorded sale - nothing to restore", refund.order_id)
            return HandlerResult.noop("no recorded sale")

        touched = []
        for refund_line in refund.refund_line_items:
            line = refund_line.line_item
            if line is None or refund_line.quantity <= 0:
                continue
            line_location = to_location_gid(refund_line.location_id)
            item = await self._match_line(ctx, line, line_location)
            if item is None or item.id not in sales:
                continue
            if await self._restore(ctx, sales[item.id], refund_line.quantity, refund.order_id):
                touched.append(item.id)

        if not touched:
            return HandlerResult.noop("nothing restorable")
        return HandlerResult.applied(f"refund for order {refund.order_id}", touched)

    @reconciliation_handler
    async def handle_inventory_level(self, ctx: StoreContext, level: InventoryLevelPayload) -> HandlerResult:
        """
        Absolute on-hand count for one location. Shopify is the source of truth
        unless the store runs in database-truth mode, where only drift is flagged.
        """
        if level.available is None:
            return HandlerResult.noop("no level in payload")

        location_gid = to_location_gid(level.location_id) or ctx.location_gid
        item = await find_item(
            self.db,
            ctx.store_key,
            inventory_item_id=level.remote_inventory_item_id,
            sku=level.sku,
            location_gid=location_gid,
        )
        if item is None:
            logger.info(
                "Level update for inventory item %s at %s: no local item",
                level.remote_inventory_item_id, location_gid,
            )
            return HandlerResult.noop("no matching item")

        now = utcnow()
        if ctx.database_is_truth:
            drifted = item.quantity != level.available
            details = {
                "expected": item.quantity,
                "actual": level.available,
                "location_gid": location_gid,
                "observed_at": now.isoformat(),
            } if drifted else None
            await self.db.execute(
                update(InventoryItem)
                .where(InventoryItem.id == item.id)
                .values(remote_drift=drifted, remote_drift_details=details, last_remote_seen_at=now)
                .execution_options(synchronize_session=False)
            )
            if drifted:
                logger.warning("Drift on %s: local %s, Shopify %s", item.sku, item.quantity, level.available)
            return HandlerResult.applied("drift checked", [item.id])

        change = await stock_mutations.set_absolute_quantity(self.db, item.id, level.available)
        if level.available < 0:
            logger.warning("Shopify reports %s for %s; clamping to 0 and correcting remote", level.available, item.sku)
            await self._schedule_remote_level(ctx, item, 0)

        if change.previous > 0 and change.current == 0:
            logger.info("%s dropped to 0 via inventory level - recorded as inventory adjustment", item.sku)
        if not change.changed:
            return HandlerResult.noop("level unchanged")
        return HandlerResult.applied(f"{item.sku}: {change.previous} -> {change.current}", [item.id])

    @reconciliation_handler
    async def handle_product_update(self, ctx: StoreContext, product: ProductPayload) -> HandlerResult:
        """Title and variant price flow down; quantity is never touched here."""
        touched = set()
        now = utcnow()

        if product.title:
            result = await self.db.execute(
                update(InventoryItem)
                .where(
                    InventoryItem.store_key == ctx.store_key,
                    InventoryItem.remote_product_id == product.id,
                    InventoryItem.title.is_distinct_from(product.title),
                )
                .values(title=product.title, last_remote_seen_at=now, updated_at=now)
                .returning(InventoryItem.id)
                .execution_options(synchronize_session=False)
            )
            touched.update(result.scalars().all())

        for variant in product.variants:
            if variant.price is None or not (variant.id or variant.sku):
                continue
            if variant.id:
                target = InventoryItem.remote_variant_id == variant.id
            else:
                target = InventoryItem.sku == variant.sku
            result = await self.db.execute(
                update(InventoryItem)
                .where(
                    InventoryItem.store_key == ctx.store_key,
                    InventoryItem.remote_product_id == product.id,
                    target,
                    InventoryItem.price.is_distinct_from(variant.price),
                )
                .values(price=variant.price, last_remote_seen_at=now, updated_at=now)
                .returning(InventoryItem.id)
                .execution_options(synchronize_session=False)
            )
            touched.update(result.scalars().all())

        if not touched:
            return HandlerResult.noop("no changes")
        return HandlerResult.applied(f"product {product.id}", sorted(touched))

    @reconciliation_handler
    async def handle_product_deleted(self, ctx: StoreContext, product: ProductPayload) -> HandlerResult:
        now = utcnow()
        result = await self.db.execute(
            update(InventoryItem)
            .where(InventoryItem.store_key == ctx.store_key, InventoryItem.remote_product_id == product.id)
            .values(
                remote_product_id=None,
                remote_variant_id=None,
                remote_inventory_item_id=None,
                removed_from_remote_at=now,
                remote_removal_mode=RemovalMode.PRODUCT_DELETED.value,
                updated_at=now,
            )
            .returning(InventoryItem.id)
            .execution_options(synchronize_session=False)
        )
        item_ids = list(result.scalars().all())
        if not item_ids:
            return HandlerResult.noop("no linked items")
        logger.info("Product %s deleted on Shopify; unlinked %s item(s)", product.id, len(item_ids))
        return HandlerResult.applied(f"product {product.id} deleted", item_ids)

    @reconciliation_handler
    async def handle_listing_unpublished(self, ctx: StoreContext, listing: ProductListingPayload) -> HandlerResult:
        now = utcnow()
        result = await self.db.execute(
            update(InventoryItem)
            .where(InventoryItem.store_key == ctx.store_key, InventoryItem.remote_product_id == listing.product_id)
            .values(
                removed_from_remote_at=now,
                remote_removal_mode=RemovalMode.UNPUBLISHED.value,
                updated_at=now,
            )
            .returning(InventoryItem.id)
            .execution_options(synchronize_session=False)
        )
        item_ids = list(result.scalars().all())
        if not item_ids:
            return HandlerResult.noop("no linked items")
        return HandlerResult.applied(f"product {listing.product_id} unpublished", item_ids)
