from datetime import datetime
from typing import Optional

from pydantic import Field, model_validator

from cardsync.core.enums import ItemType, SaleChannel
from .base import BaseSchema


class InventoryItemCreate(BaseSchema):
    store_key: str
    sku: str = Field(min_length=1)
    item_type: ItemType = ItemType.RAW
    title: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    quantity: int = Field(default=1, ge=0)
    location_gid: Optional[str] = None

    @model_validator(mode="after")
    def graded_is_one_of_one(self):
        if self.item_type == ItemType.GRADED and self.quantity > 1:
            raise ValueError("graded items have a quantity of at most 1")
        return self


class InventoryItemUpdate(BaseSchema):
    title: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    quantity: Optional[int] = Field(default=None, ge=0)


class LocalSaleCreate(BaseSchema):
    quantity: int = Field(default=1, ge=1)
    price: Optional[float] = Field(default=None, ge=0)
    channel: SaleChannel = SaleChannel.IN_STORE
    order_reference: Optional[str] = None


class TransferRequest(BaseSchema):
    location_gid: str


class InventoryItemRead(BaseSchema):
    id: int
    store_key: str
    sku: str
    item_type: str
    title: Optional[str] = None
    price: Optional[float] = None
    quantity: int
    location_gid: Optional[str] = None
    remote_product_id: Optional[str] = None
    remote_variant_id: Optional[str] = None
    remote_inventory_item_id: Optional[str] = None
    sold_at: Optional[datetime] = None
    sold_order_id: Optional[str] = None
    sold_channel: Optional[str] = None
    sync_status: str
    last_sync_error: Optional[str] = None
    removed_from_remote_at: Optional[datetime] = None
    remote_removal_mode: Optional[str] = None
    remote_drift: bool = False
    deleted_at: Optional[datetime] = None
