"""
Circuit Breaker Pattern Implementation

One breaker per payment operation class (card, cash voucher, customer,
webhook processing, recovery) so a failing dependency for one class does
not block the others. Breakers are owned by a CircuitBreakerRegistry that
the service container builds at startup.
"""
import asyncio
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar, ParamSpec
from dataclasses import dataclass

from permit_payments.core.logging import get_logger
from permit_payments.core.exceptions import CircuitBreakerOpenError, ServiceTimeoutError

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"      # Normal operation, requests pass through
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # One trial call allowed


class OperationClass(str, Enum):
    """Provider operation classes, each guarded by its own breaker"""
    CARD_PAYMENT = "card_payment"
    CASH_VOUCHER_PAYMENT = "cash_voucher_payment"
    CUSTOMER_OPERATIONS = "customer_operations"
    WEBHOOK_PROCESSING = "webhook_processing"
    RECOVERY = "recovery"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5           # Consecutive failures before opening
    cooldown_seconds: float = 30.0       # Time in OPEN before the half-open trial
    call_timeout_seconds: float | None = None  # Time bound per call; a timeout is a failure


@dataclass
class CircuitBreakerState:
    """State tracking for circuit breaker"""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: float = 0.0
    last_failure_at: datetime | None = None
    trial_in_flight: bool = False
    trips: int = 0


StateListener = Callable[["CircuitBreaker", CircuitState, CircuitState], Awaitable[None]]


def _count_every_error(error: BaseException) -> bool:
    return True


class CircuitBreaker:
    """
    Circuit breaker for external service protection.

    States:
    - CLOSED: consecutive failures are counted, any success resets the count
    - OPEN: every call is rejected until the cooldown elapses
    - HALF_OPEN: exactly one trial call; success closes, failure reopens

    ``is_failure`` decides which exceptions count against the breaker. Errors
    it rejects (e.g. a card decline) prove the dependency answered and are
    recorded as successes.
    """

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        is_failure: Callable[[BaseException], bool] | None = None,
        on_state_change: StateListener | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._is_failure = is_failure or _count_every_error
        self._on_state_change = on_state_change
        self._clock = clock
        self._state = CircuitBreakerState()
        # threading.Lock so counters stay consistent across Celery event loops
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state"""
        return self._state.state

    @property
    def failure_count(self) -> int:
        return self._state.failure_count

    @property
    def is_closed(self) -> bool:
        return self._state.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state.state == CircuitState.HALF_OPEN

    def _cooldown_elapsed(self) -> bool:
        return self._clock() - self._state.last_failure_time >= self.config.cooldown_seconds

    def allows_request(self) -> bool:
        """Would a call be let through right now? Does not change state."""
        with self._lock:
            if self._state.state == CircuitState.CLOSED:
                return True
            if self._state.state == CircuitState.OPEN:
                return self._cooldown_elapsed()
            return not self._state.trial_in_flight

    def _transition_to_sync(self, new_state: CircuitState) -> CircuitState:
        """Switch state under the lock. Returns the previous state."""
        old_state = self._state.state
        self._state.state = new_state

        if new_state == CircuitState.CLOSED:
            self._state.failure_count = 0
            self._state.trial_in_flight = False
        elif new_state == CircuitState.OPEN:
            self._state.trial_in_flight = False
            self._state.trips += 1

        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "failure_count": self._state.failure_count,
            }
        )
        return old_state

    async def _notify(self, old_state: CircuitState, new_state: CircuitState) -> None:
        if self._on_state_change is None or old_state == new_state:
            return
        try:
            await self._on_state_change(self, old_state, new_state)
        except Exception as e:
            logger.error(
                "Circuit breaker state listener failed",
                extra_data={"service": self.service_name, "error": str(e)},
                exc_info=True,
            )

    async def _acquire(self) -> bool:
        """Reserve permission to call. Moves OPEN to HALF_OPEN after the cooldown."""
        transition = None
        with self._lock:
            state = self._state.state
            if state == CircuitState.CLOSED:
                return True

            if state == CircuitState.OPEN:
                if not self._cooldown_elapsed():
                    return False
                transition = (self._transition_to_sync(CircuitState.HALF_OPEN), CircuitState.HALF_OPEN)
                self._state.trial_in_flight = True
            elif self._state.trial_in_flight:
                return False
            else:
                self._state.trial_in_flight = True

        if transition:
            await self._notify(*transition)
        return True

    async def record_success(self) -> None:
        """Record a successful call"""
        transition = None
        with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                transition = (self._transition_to_sync(CircuitState.CLOSED), CircuitState.CLOSED)
            elif self._state.state == CircuitState.CLOSED:
                self._state.failure_count = 0
        if transition:
            await self._notify(*transition)

    async def record_failure(self, error: BaseException | None = None) -> None:
        """Record a failed call"""
        transition = None
        with self._lock:
            self._state.failure_count += 1
            self._state.last_failure_time = self._clock()
            self._state.last_failure_at = datetime.now(timezone.utc)

            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._state.failure_count,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None
                }
            )

            if self._state.state == CircuitState.HALF_OPEN:
                transition = (self._transition_to_sync(CircuitState.OPEN), CircuitState.OPEN)
            elif (
                self._state.state == CircuitState.CLOSED
                and self._state.failure_count >= self.config.failure_threshold
            ):
                transition = (self._transition_to_sync(CircuitState.OPEN), CircuitState.OPEN)
        if transition:
            await self._notify(*transition)

    def get_retry_after(self) -> float:
        """Get seconds until the half-open trial is allowed"""
        if self._state.state != CircuitState.OPEN:
            return 0.0
        remaining = self.config.cooldown_seconds - (self._clock() - self._state.last_failure_time)
        return max(0.0, remaining)

    async def execute(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs
    ) -> T:
        """
        Execute an async callable with circuit breaker protection.

        Raises:
            CircuitBreakerOpenError: the call was rejected without running
            ServiceTimeoutError: the call exceeded ``call_timeout_seconds``
        """
        if not await self._acquire():
            raise CircuitBreakerOpenError(self.service_name, round(self.get_retry_after(), 1))

        try:
            if self.config.call_timeout_seconds:
                try:
                    result = await asyncio.wait_for(
                        func(*args, **kwargs), timeout=self.config.call_timeout_seconds
                    )
                except asyncio.TimeoutError as e:
                    raise ServiceTimeoutError(
                        self.service_name, self.config.call_timeout_seconds
                    ) from e
            else:
                result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            with self._lock:
                self._state.trial_in_flight = False
            raise
        except Exception as e:
            if self._is_failure(e):
                await self.record_failure(e)
            else:
                await self.record_success()
            raise

        await self.record_success()
        return result

    def to_dict(self) -> dict[str, Any]:
        """Snapshot for observability endpoints"""
        return {
            "service": self.service_name,
            "state": self._state.state.value,
            "failure_count": self._state.failure_count,
            "failure_threshold": self.config.failure_threshold,
            "cooldown_seconds": self.config.cooldown_seconds,
            "retry_after_seconds": round(self.get_retry_after(), 1),
            "last_failure_at": self._state.last_failure_at,
            "trips": self._state.trips,
        }


class CircuitBreakerRegistry:
    """Owns one breaker per operation class"""

    def __init__(
        self,
        configs: dict[str, CircuitBreakerConfig],
        *,
        is_failure: Callable[[BaseException], bool] | None = None,
        on_state_change: StateListener | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._breakers: dict[str, CircuitBreaker] = {
            name: CircuitBreaker(
                name,
                config,
                is_failure=is_failure,
                on_state_change=on_state_change,
                clock=clock,
            )
            for name, config in configs.items()
        }

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> "CircuitBreakerRegistry":
        """Build the five payment breakers from CB_<CLASS>_* settings"""
        configs = {}
        for op in OperationClass:
            prefix = f"CB_{op.name}"
            configs[op.value] = CircuitBreakerConfig(
                failure_threshold=getattr(settings, f"{prefix}_FAILURE_THRESHOLD"),
                cooldown_seconds=getattr(settings, f"{prefix}_COOLDOWN_SECONDS"),
                call_timeout_seconds=settings.STRIPE_API_TIMEOUT_SECONDS,
            )
        return cls(configs, **kwargs)

    def get(self, name: str | OperationClass) -> CircuitBreaker:
        key = name.value if isinstance(name, OperationClass) else name
        try:
            return self._breakers[key]
        except KeyError:
            raise KeyError(f"No circuit breaker registered for '{key}'") from None

    def __iter__(self):
        return iter(self._breakers.values())

    def snapshot(self) -> list[dict[str, Any]]:
        return [cb.to_dict() for cb in self._breakers.values()]
