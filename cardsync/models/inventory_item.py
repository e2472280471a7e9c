"""
Models for a single unit (or stack) of sellable card stock.

An InventoryItem is the local source record mirrored onto the remote catalog.
Quantity is only ever changed through conditional UPDATE statements in the
services layer so concurrent webhook handlers and queue workers can interleave.
"""

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, Text, TIMESTAMP,
    CheckConstraint, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship

from ..database import Base, JSONVariant
from cardsync.core.enums import ItemType, SyncStatus
from cardsync.core.utils import utcnow


class InventoryItem(Base):
    __tablename__ = "inventory_items"
    __table_args__ = (
        UniqueConstraint("store_key", "sku", name="uq_inventory_items_store_sku"),
        CheckConstraint("quantity >= 0", name="ck_inventory_items_quantity_non_negative"),
        Index("ix_inventory_items_remote_variant_location", "store_key", "remote_variant_id", "location_gid"),
        Index("ix_inventory_items_remote_inventory_location", "store_key", "remote_inventory_item_id", "location_gid"),
    )

    id = Column(Integer, primary_key=True)
    created_at = Column(TIMESTAMP(timezone=False), default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=False), default=utcnow, onupdate=utcnow, nullable=False)

    # Identity
    store_key = Column(String(64), nullable=False, index=True)
    sku = Column(String, nullable=False)
    item_type = Column(String(16), nullable=False, default=ItemType.RAW.value)
    title = Column(String, nullable=True)
    price = Column(Float, nullable=True)

    # Stock
    quantity = Column(Integer, nullable=False, default=0)
    location_gid = Column(String, nullable=True, index=True)

    # Remote identifiers, null until the first successful push
    remote_product_id = Column(String, nullable=True, index=True)
    remote_variant_id = Column(String, nullable=True)
    remote_inventory_item_id = Column(String, nullable=True)

    # Sale block - written together, only by sale-confirming paths
    sold_at = Column(TIMESTAMP(timezone=False), nullable=True)
    sold_price = Column(Float, nullable=True)
    sold_order_id = Column(String, nullable=True, index=True)
    sold_channel = Column(String(32), nullable=True)
    sold_currency = Column(String(8), nullable=True)

    # Outbound sync bookkeeping
    sync_status = Column(String(16), nullable=False, default=SyncStatus.PENDING.value, index=True)
    last_sync_error = Column(Text, nullable=True)
    last_synced_at = Column(TIMESTAMP(timezone=False), nullable=True)
    last_remote_seen_at = Column(TIMESTAMP(timezone=False), nullable=True)

    # Soft removal from the remote catalog; the row is never physically deleted
    removed_from_remote_at = Column(TIMESTAMP(timezone=False), nullable=True)
    remote_removal_mode = Column(String(32), nullable=True)

    # Only used when the store runs in database-truth mode
    remote_drift = Column(Boolean, nullable=False, default=False)
    remote_drift_details = Column(JSONVariant, nullable=True)

    deleted_at = Column(TIMESTAMP(timezone=False), nullable=True)
    updated_by = Column(String(64), nullable=True)

    sales = relationship("ItemSale", back_populates="item")
    sync_entries = relationship("SyncQueueEntry", back_populates="item")

    @property
    def is_graded(self) -> bool:
        return self.item_type == ItemType.GRADED.value

    def __repr__(self) -> str:
        return (f"<InventoryItem(id={self.id}, store='{self.store_key}', sku='{self.sku}', "
                f"qty={self.quantity}, location='{self.location_gid}')>")
