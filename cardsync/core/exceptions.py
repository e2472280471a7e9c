from typing import Optional


class BaseServiceError(Exception):
    """Base exception for all service-related errors."""
    pass

class InventoryServiceError(BaseServiceError):
    """Base exception for inventory service errors."""
    pass

class InventoryItemNotFoundError(InventoryServiceError):
    """Raised when an inventory item is not found."""
    pass

class InvalidInventoryOperation(InventoryServiceError):
    """Raised when a local mutation would break an inventory invariant."""
    pass

class DatabaseError(Exception):
    """Exception raised for database-related errors."""
    pass

class PlatformServiceError(BaseServiceError):
    """Base exception for remote platform errors."""
    pass

class RemoteCallError(PlatformServiceError):
    """Raised when a call to the remote catalog fails."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

class RemoteRateLimitedError(RemoteCallError):
    """Remote API asked us to slow down. Never terminal."""

    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None, status_code: Optional[int] = 429):
        super().__init__(message, status_code)
        self.retry_after = retry_after

class RemoteTransientError(RemoteCallError):
    """Network failure or 5xx; worth retrying up to max attempts."""

    retryable = True

class RemoteTerminalError(RemoteCallError):
    """Request was rejected and will not succeed on retry."""
    pass

class CallDeferredError(PlatformServiceError):
    """The governor refused to let a call through right now. Not a failure."""

    def __init__(self, service: str, retry_in: float, message: Optional[str] = None):
        super().__init__(message or f"Call to {service} deferred, retry in {retry_in:.1f}s")
        self.service = service
        self.retry_in = retry_in

class CircuitOpenError(CallDeferredError):
    """Raised when the circuit for a remote service is open."""

    def __init__(self, service: str, retry_in: float):
        super().__init__(service, retry_in, f"Circuit open for {service}, retry in {retry_in:.1f}s")

class TokensExhaustedError(CallDeferredError):
    """Raised when the token bucket for a remote service is empty."""

    def __init__(self, service: str, retry_in: float):
        super().__init__(service, retry_in, f"No API tokens left for {service}, retry in {retry_in:.1f}s")
