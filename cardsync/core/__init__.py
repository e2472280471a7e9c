"""
Core module exports.
"""
from .enums import (
    ItemType,
    SyncStatus,
    SyncAction,
    SyncQueueStatus,
    RetryJobType,
    RetryJobStatus,
    WebhookTopic,
    WebhookOutcome,
    HandlerOutcome,
    InventoryTruthMode,
    RemovalMode,
    SaleChannel,
    CircuitState,
)

from .exceptions import (
    BaseServiceError,
    InventoryServiceError,
    InventoryItemNotFoundError,
    InvalidInventoryOperation,
    PlatformServiceError,
    RemoteCallError,
    RemoteRateLimitedError,
    RemoteTransientError,
    RemoteTerminalError,
    CallDeferredError,
    CircuitOpenError,
    TokensExhaustedError,
    DatabaseError,
)
