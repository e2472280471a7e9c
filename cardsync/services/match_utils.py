"""
Locate the local inventory record a remote event refers to.

Order of preference:
1. remote inventory-item id or variant id, scoped to the location when known;
2. with a known location only, the SKU at that exact location among records
   already linked to a remote variant;
3. when the SKU is the only identifier, (SKU, location), or SKU alone when the
   event carries no location (SKUs are unique per store).

Remote-id misses never fall back across locations: a cross-location guess
would move stock in the wrong shop.
"""

import logging
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cardsync.models.inventory_item import InventoryItem

logger = logging.getLogger(__name__)


def _live(store_key: str):
    return (
        InventoryItem.store_key == store_key,
        InventoryItem.deleted_at.is_(None),
    )


async def _first(db: AsyncSession, stmt) -> Optional[InventoryItem]:
    # Fresh row state: earlier statements in this session may have changed it
    result = await db.execute(
        stmt.order_by(InventoryItem.id.asc()).limit(1).execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def find_item(
    db: AsyncSession,
    store_key: str,
    *,
    inventory_item_id: Optional[str] = None,
    variant_id: Optional[str] = None,
    sku: Optional[str] = None,
    location_gid: Optional[str] = None,
) -> Optional[InventoryItem]:
    if inventory_item_id or variant_id:
        id_clauses = []
        if inventory_item_id:
            id_clauses.append(InventoryItem.remote_inventory_item_id == inventory_item_id)
        if variant_id:
            id_clauses.append(InventoryItem.remote_variant_id == variant_id)

        stmt = select(InventoryItem).where(*_live(store_key), or_(*id_clauses))
        if location_gid:
            stmt = stmt.where(InventoryItem.location_gid == location_gid)
        item = await _first(db, stmt)
        if item:
            return item

        if not location_gid or not sku:
            logger.debug(
                "No match for inventory_item=%s variant=%s in %s and no location-scoped fallback",
                inventory_item_id, variant_id, store_key,
            )
            return None

        # Location-scoped fallback only
        stmt = select(InventoryItem).where(
            *_live(store_key),
            InventoryItem.sku == sku,
            InventoryItem.location_gid == location_gid,
            InventoryItem.remote_variant_id.is_not(None),
        )
        return await _first(db, stmt)

    if not sku:
        return None

    stmt = select(InventoryItem).where(*_live(store_key), InventoryItem.sku == sku)
    if location_gid:
        stmt = stmt.where(InventoryItem.location_gid == location_gid)
    return await _first(db, stmt)
