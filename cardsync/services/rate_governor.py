# cardsync/services/rate_governor.py
"""
Process-wide throttle shared by every caller of the Shopify Admin API.

One RateGovernor instance lives on `app.state` (and is handed to the scheduler
jobs). Per downstream service key it keeps:

- a token bucket (capacity / refill per second) consulted before each call;
- a dynamic inter-call delay, stretched when Shopify reports high call-limit
  usage and decayed back toward a floor while usage stays low;
- a circuit breaker: closed -> open after N consecutive failures, open -> half
  open once the cool-down expires (one trial call allowed), half open -> closed on
  success or back to open with a doubled cool-down on failure.

All state is guarded by a single lock because webhook requests, the sync queue
drainer and the retry job runner consult it concurrently. The clock is
injectable so tests can step time without sleeping.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from cardsync.core.config import Settings, get_settings
from cardsync.core.enums import CircuitState
from cardsync.core.exceptions import (
    CircuitOpenError,
    RemoteRateLimitedError,
    RemoteTerminalError,
    TokensExhaustedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ServiceRateState:
    """Mutable throttle state for one downstream service"""
    tokens: float
    last_refill: float
    current_delay: float
    circuit_state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    trips: int = 0
    open_until: float = 0.0
    trial_in_flight: bool = False
    rate_limited_count: int = 0
    last_usage: Optional[float] = None
    last_transition_reason: Optional[str] = None


class RateGovernor:

    def __init__(
        self,
        capacity: int = 500,
        refill_per_second: float = 8.3,
        min_delay: float = 2.0,
        max_delay: float = 15.0,
        delay_decay: float = 0.9,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        max_cooldown_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.delay_decay = delay_decay
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.max_cooldown_seconds = max_cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._services: Dict[str, ServiceRateState] = {}

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **overrides) -> "RateGovernor":
        settings = settings or get_settings()
        options = dict(
            capacity=settings.RATE_BUCKET_CAPACITY,
            refill_per_second=settings.RATE_BUCKET_REFILL_PER_SECOND,
            min_delay=settings.RATE_MIN_DELAY_SECONDS,
            max_delay=settings.RATE_MAX_DELAY_SECONDS,
            delay_decay=settings.RATE_DELAY_DECAY,
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            cooldown_seconds=settings.CIRCUIT_COOLDOWN_SECONDS,
            max_cooldown_seconds=settings.CIRCUIT_MAX_COOLDOWN_SECONDS,
        )
        options.update(overrides)
        return cls(**options)

    # --- internal helpers (caller holds the lock) ---

    def _state(self, service: str) -> ServiceRateState:
        state = self._services.get(service)
        if state is None:
            state = ServiceRateState(
                tokens=float(self.capacity),
                last_refill=self._clock(),
                current_delay=self.min_delay,
            )
            self._services[service] = state
        return state

    def _refill(self, state: ServiceRateState, now: float) -> None:
        elapsed = max(now - state.last_refill, 0.0)
        if elapsed:
            state.tokens = min(float(self.capacity), state.tokens + elapsed * self.refill_per_second)
        state.last_refill = now

    def _cooldown_for(self, trips: int) -> float:
        return min(self.cooldown_seconds * (2 ** max(trips - 1, 0)), self.max_cooldown_seconds)

    def _trip(self, service: str, state: ServiceRateState, now: float, reason: str) -> None:
        state.trips += 1
        cooldown = self._cooldown_for(state.trips)
        state.circuit_state = CircuitState.OPEN
        state.open_until = now + cooldown
        state.trial_in_flight = False
        state.last_transition_reason = reason
        logger.warning(
            "Circuit for %s OPEN (%s) after %s consecutive failures; cooling down %.0fs",
            service, reason, state.consecutive_failures, cooldown,
        )

    # --- token bucket ---

    def try_acquire(self, service: str) -> bool:
        """Take one token if available. Never blocks."""
        with self._lock:
            state = self._state(service)
            self._refill(state, self._clock())
            if state.tokens >= 1.0:
                state.tokens -= 1.0
                return True
            return False

    def available_tokens(self, service: str) -> float:
        with self._lock:
            state = self._state(service)
            self._refill(state, self._clock())
            return state.tokens

    # --- dynamic delay ---

    def current_delay(self, service: str) -> float:
        with self._lock:
            return self._state(service).current_delay

    def record_usage(self, service: str, used: float, limit: float) -> float:
        """
        Feed a call-limit observation (REST `X-Shopify-Shop-Api-Call-Limit` or
        GraphQL throttleStatus) and return the adjusted inter-call delay.
        """
        if not limit or limit <= 0:
            return self.current_delay(service)

        usage = (used / limit) * 100
        with self._lock:
            state = self._state(service)
            state.last_usage = usage
            delay = state.current_delay
            if usage > 90:
                target = min(delay * 3, self.max_delay)
                logger.warning("CRITICAL API usage for %s: %.1f%% - delay now %.2fs", service, usage, target)
            elif usage > 80:
                target = min(delay * 2, self.max_delay * 2 / 3)
                logger.warning("HIGH API usage for %s: %.1f%% - delay now %.2fs", service, usage, target)
            elif usage > 70:
                target = min(delay * 1.3, self.max_delay * 0.4)
                logger.info("Moderate API usage for %s: %.1f%%", service, usage)
            else:
                target = None

            if target is None:
                state.current_delay = max(delay * self.delay_decay, self.min_delay)
            else:
                # A warning never shortens an already stretched delay
                state.current_delay = max(delay, target)
            return state.current_delay

    def record_rate_limited(self, service: str, retry_after: Optional[float] = None) -> float:
        """Remote returned 429/THROTTLED: stretch the delay and drain the bucket."""
        with self._lock:
            state = self._state(service)
            state.rate_limited_count += 1
            stretched = min(max(state.current_delay * 2, self.min_delay), self.max_delay)
            if retry_after:
                stretched = max(stretched, min(float(retry_after), self.max_delay))
            state.current_delay = max(state.current_delay, stretched)
            state.tokens = 0.0
            state.last_refill = self._clock()
            logger.warning(
                "Rate limited by %s (retry_after=%s); delay now %.2fs",
                service, retry_after, state.current_delay,
            )
            return state.current_delay

    # --- circuit breaker ---

    def allow_request(self, service: str) -> bool:
        """
        False while the circuit is open. Once the cool-down has elapsed the
        circuit goes half open and exactly one caller is let through as a trial call.
        """
        with self._lock:
            state = self._state(service)
            now = self._clock()
            if state.circuit_state == CircuitState.CLOSED:
                return True
            if state.circuit_state == CircuitState.OPEN:
                if now < state.open_until:
                    return False
                state.circuit_state = CircuitState.HALF_OPEN
                state.trial_in_flight = True
                state.last_transition_reason = "cooldown elapsed"
                logger.warning("Circuit for %s HALF OPEN; allowing one trial call", service)
                return True
            # Half open
            if state.trial_in_flight:
                return False
            state.trial_in_flight = True
            return True

    def retry_in(self, service: str) -> float:
        """Seconds until an open circuit will admit a trial call (0 when not open)."""
        with self._lock:
            state = self._state(service)
            if state.circuit_state != CircuitState.OPEN:
                return 0.0
            return max(state.open_until - self._clock(), 0.0)

    def record_success(self, service: str) -> None:
        with self._lock:
            state = self._state(service)
            if state.circuit_state != CircuitState.CLOSED:
                logger.warning("Circuit for %s CLOSED after successful trial call", service)
                state.last_transition_reason = "trial call succeeded"
            state.circuit_state = CircuitState.CLOSED
            state.consecutive_failures = 0
            state.trips = 0
            state.trial_in_flight = False
            state.open_until = 0.0

    def record_failure(self, service: str, reason: str = "failure") -> None:
        with self._lock:
            state = self._state(service)
            now = self._clock()
            state.consecutive_failures += 1
            if state.circuit_state == CircuitState.HALF_OPEN:
                self._trip(service, state, now, f"trial call failed: {reason}")
            elif (state.circuit_state == CircuitState.CLOSED
                  and state.consecutive_failures >= self.failure_threshold):
                self._trip(service, state, now, reason)

    def release_trial(self, service: str) -> None:
        """A half-open trial call ended without reaching the remote (e.g. no token)."""
        with self._lock:
            state = self._state(service)
            if state.circuit_state == CircuitState.HALF_OPEN:
                state.trial_in_flight = False

    def circuit_state(self, service: str) -> CircuitState:
        with self._lock:
            state = self._state(service)
            if state.circuit_state == CircuitState.OPEN and self._clock() >= state.open_until:
                # Reported as half open; the transition itself happens in allow_request
                return CircuitState.HALF_OPEN
            return state.circuit_state

    # --- gate for outbound calls ---

    async def execute(self, service: str, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run one outbound call under the governor.

        Circuit first, then the token: calls refused by an open circuit leave
        the bucket untouched, and a trial call that finds no token is handed back.
        Raises CircuitOpenError / TokensExhaustedError without calling
        `operation`; remote errors are recorded and re-raised.
        """
        if not self.allow_request(service):
            raise CircuitOpenError(service, self.retry_in(service))
        if not self.try_acquire(service):
            self.release_trial(service)
            raise TokensExhaustedError(service, 1.0 / self.refill_per_second if self.refill_per_second else 1.0)

        try:
            result = await operation()
        except RemoteRateLimitedError as exc:
            # Throttling says nothing about the health of the remote
            self.record_rate_limited(service, exc.retry_after)
            self.release_trial(service)
            raise
        except RemoteTerminalError:
            # The remote answered; the request itself was bad
            self.record_success(service)
            raise
        except Exception as exc:
            self.record_failure(service, type(exc).__name__)
            raise

        self.record_success(service)
        return result

    def reset(self, service: Optional[str] = None) -> None:
        with self._lock:
            if service is None:
                self._services.clear()
            else:
                self._services.pop(service, None)

    def snapshot(self) -> Dict[str, dict]:
        """Read-only view for the admin API."""
        with self._lock:
            now = self._clock()
            result = {}
            for service, state in self._services.items():
                self._refill(state, now)
                result[service] = {
                    "tokens": round(state.tokens, 2),
                    "capacity": self.capacity,
                    "current_delay": round(state.current_delay, 3),
                    "last_usage_percent": state.last_usage,
                    "circuit_state": state.circuit_state.value,
                    "consecutive_failures": state.consecutive_failures,
                    "trips": state.trips,
                    "open_for_seconds": round(max(state.open_until - now, 0.0), 1)
                    if state.circuit_state == CircuitState.OPEN else 0.0,
                    "rate_limited_count": state.rate_limited_count,
                }
            return result
