# cardsync/models/sale.py

from sqlalchemy import Column, Integer, String, Float, ForeignKey, TIMESTAMP, UniqueConstraint
from sqlalchemy.orm import relationship

from ..database import Base
from cardsync.core.utils import utcnow


class ItemSale(Base):
    """
    Units of one inventory item consumed by one remote order.

    Keyed by (item, order) so that the same order arriving under several topics
    (orders/create, orders/paid, orders/updated) is applied once, and so that
    cancellations and refunds know how many units they may restore.
    """

    __tablename__ = "item_sales"
    __table_args__ = (
        UniqueConstraint("inventory_item_id", "remote_order_id", name="uq_item_sales_item_order"),
    )

    id = Column(Integer, primary_key=True)
    inventory_item_id = Column(Integer, ForeignKey("inventory_items.id"), index=True, nullable=False)
    remote_order_id = Column(String, nullable=False, index=True)

    quantity = Column(Integer, nullable=False)
    restored_quantity = Column(Integer, nullable=False, default=0)
    sale_price = Column(Float, nullable=True)
    currency = Column(String(8), nullable=True)
    channel = Column(String(32), nullable=False)

    sold_at = Column(TIMESTAMP(timezone=False), default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=False), default=utcnow, onupdate=utcnow, nullable=False)

    item = relationship("InventoryItem", back_populates="sales")

    @property
    def unrestored_quantity(self) -> int:
        return max(self.quantity - (self.restored_quantity or 0), 0)
