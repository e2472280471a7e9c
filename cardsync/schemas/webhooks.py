"""
Pydantic models for the Shopify webhook bodies this service reconciles.

Only the fields the reconciliation handlers read are declared. The read
models at the end describe webhook feed health for operators.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import Field, field_validator

from .base import BaseSchema, RemoteId, RemotePayload

PAID_FINANCIAL_STATUSES = {"paid", "partially_paid"}


class OrderLineItem(RemotePayload):
    id: RemoteId = None
    sku: Optional[str] = None
    variant_id: RemoteId = None
    product_id: RemoteId = None
    quantity: int = 0
    price: Optional[float] = None
    location_id: RemoteId = None


class OrderPayload(RemotePayload):
    """orders/create, orders/updated, orders/paid, orders/fulfilled, orders/cancelled"""

    id: RemoteId
    name: Optional[str] = None
    financial_status: Optional[str] = None
    currency: Optional[str] = None
    cancelled_at: Optional[str] = None
    location_id: RemoteId = None
    line_items: List[OrderLineItem] = Field(default_factory=list)

    @property
    def is_paid(self) -> bool:
        return (self.financial_status or "").lower() in PAID_FINANCIAL_STATUSES


class RefundLineItem(RemotePayload):
    line_item_id: RemoteId = None
    quantity: int = 0
    location_id: RemoteId = None
    line_item: Optional[OrderLineItem] = None


class RefundPayload(RemotePayload):
    """refunds/create"""

    id: RemoteId = None
    order_id: RemoteId
    refund_line_items: List[RefundLineItem] = Field(default_factory=list)


class InventoryLevelPayload(RemotePayload):
    """
    inventory_levels/update carries inventory_item_id/location_id/available.
    inventory_items/update carries the inventory item as `id` plus its sku and
    usually no level at all.
    """

    inventory_item_id: RemoteId = None
    id: RemoteId = None
    sku: Optional[str] = None
    location_id: RemoteId = None
    available: Optional[int] = None
    updated_at: Optional[str] = None

    @property
    def remote_inventory_item_id(self) -> Optional[str]:
        return self.inventory_item_id or self.id


class ProductVariant(RemotePayload):
    id: RemoteId = None
    sku: Optional[str] = None
    price: Optional[float] = None
    inventory_item_id: RemoteId = None


class ProductPayload(RemotePayload):
    """products/update and products/delete (the latter only carries `id`)"""

    id: RemoteId
    title: Optional[str] = None
    status: Optional[str] = None
    variants: List[ProductVariant] = Field(default_factory=list)


class ProductListingPayload(RemotePayload):
    """product_listings/remove"""

    product_id: RemoteId


class WebhookHealthRead(BaseSchema):
    store_key: str
    location_gid: Optional[str] = None
    topic: str
    last_received_at: datetime
    last_webhook_id: Optional[str] = None
    last_outcome: Optional[str] = None
    event_count: int
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @field_validator("location_gid", mode="before")
    @classmethod
    def store_wide_as_none(cls, value):
        return value or None


class StaleWebhookFeed(BaseSchema):
    """A store/location whose most recent delivery is older than the threshold."""

    store_key: str
    location_gid: Optional[str] = None
    last_topic: str
    last_received_at: datetime
    minutes_since_last: int
