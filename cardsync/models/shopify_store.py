# cardsync/models/shopify_store.py
from sqlalchemy import Column, Integer, String, Boolean, TIMESTAMP

from ..database import Base
from cardsync.core.enums import InventoryTruthMode
from cardsync.core.utils import utcnow


class ShopifyStore(Base):
    """
    A storefront on the remote commerce platform.

    `key` is the internal store key every inventory item is scoped by; `domain`
    is the myshopify domain that arrives in the X-Shopify-Shop-Domain header.
    """
    __tablename__ = "shopify_stores"

    id = Column(Integer, primary_key=True)
    key = Column(String(64), unique=True, nullable=False, index=True)
    domain = Column(String(255), unique=True, nullable=False, index=True)
    access_token = Column(String, nullable=True)
    webhook_secret = Column(String, nullable=True)
    api_version = Column(String(16), nullable=True)
    inventory_truth_mode = Column(String(16), nullable=False, default=InventoryTruthMode.SHOPIFY.value)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(TIMESTAMP(timezone=False), default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=False), default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def service_key(self) -> str:
        """Governor key: rate limits and circuits are tracked per storefront."""
        return f"shopify:{self.key}"

    def __repr__(self) -> str:
        return f"<ShopifyStore(key={self.key}, domain={self.domain})>"
