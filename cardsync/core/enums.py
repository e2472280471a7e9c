"""
Shared enums and constants used across the application.
"""

from enum import Enum


class ItemType(str, Enum):
    """Graded cards are unique 1-of-1 units; raw cards are fungible stock."""
    GRADED = "graded"
    RAW = "raw"


class SyncStatus(str, Enum):
    """Outbound sync state of an inventory item."""
    PENDING = "pending"    # Local change waiting in the sync queue
    SYNCED = "synced"      # Local data matches the remote catalog
    ERROR = "error"        # Last push failed terminally, needs an operator


class InventoryTruthMode(str, Enum):
    SHOPIFY = "shopify"    # Remote on-hand counts overwrite local quantity
    DATABASE = "database"  # Local quantity wins, remote counts only flag drift


class RemovalMode(str, Enum):
    PRODUCT_DELETED = "product_deleted"
    UNPUBLISHED = "unpublished"
    LOCAL_DELETE = "local_delete"


class SaleChannel(str, Enum):
    SHOPIFY = "shopify"
    INVENTORY_ADJUSTMENT = "inventory-adjustment"
    IN_STORE = "in_store"
    OTHER = "other"


class WebhookTopic(str, Enum):
    """Closed set of remote event classes this system reconciles."""
    SALE_CONFIRMED = "sale_confirmed"
    ORDER_CANCELLED = "order_cancelled"
    REFUND_CREATED = "refund_created"
    INVENTORY_LEVEL_CHANGED = "inventory_level_changed"
    PRODUCT_UPDATED = "product_updated"
    PRODUCT_DELETED = "product_deleted"
    LISTING_UNPUBLISHED = "listing_unpublished"
    UNKNOWN = "unknown"

    @classmethod
    def from_header(cls, topic: str) -> "WebhookTopic":
        return SHOPIFY_TOPICS.get((topic or "").strip().lower(), cls.UNKNOWN)


SHOPIFY_TOPICS = {
    "orders/create": WebhookTopic.SALE_CONFIRMED,
    "orders/updated": WebhookTopic.SALE_CONFIRMED,
    "orders/paid": WebhookTopic.SALE_CONFIRMED,
    "orders/fulfilled": WebhookTopic.SALE_CONFIRMED,
    "orders/cancelled": WebhookTopic.ORDER_CANCELLED,
    "refunds/create": WebhookTopic.REFUND_CREATED,
    "inventory_levels/update": WebhookTopic.INVENTORY_LEVEL_CHANGED,
    "inventory_items/update": WebhookTopic.INVENTORY_LEVEL_CHANGED,
    "products/update": WebhookTopic.PRODUCT_UPDATED,
    "products/delete": WebhookTopic.PRODUCT_DELETED,
    "product_listings/remove": WebhookTopic.LISTING_UNPUBLISHED,
}


class WebhookOutcome(str, Enum):
    """Outcome stored on the idempotency ledger row."""
    PROCESSED = "processed"
    NOOP = "noop"
    UNRESOLVED_STORE = "unresolved_store"
    IGNORED = "ignored"
    INVALID_PAYLOAD = "invalid_payload"


class HandlerOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    FAILED = "failed"


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncQueueStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RetryJobType(str, Enum):
    END_REMOTE_LISTING = "end_remote_listing"
    ZERO_REMOTE_QUANTITY = "zero_remote_quantity"
    ENFORCE_LOCATION = "enforce_location"
    SET_REMOTE_LEVEL = "set_remote_level"


class RetryJobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    DEAD = "dead"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"
