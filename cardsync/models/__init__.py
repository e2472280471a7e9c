from .shopify_store import ShopifyStore
from .inventory_item import InventoryItem
from .sale import ItemSale
from .webhook import WebhookEvent, WebhookHealth
from .sync_queue import SyncQueueEntry
from .retry_job import RetryJob

# This ensures all models are registered with SQLAlchemy
__all__ = [
    'ShopifyStore',
    'InventoryItem',
    'ItemSale',
    'WebhookEvent',
    'WebhookHealth',
    'SyncQueueEntry',
    'RetryJob',
]
