"""
Circuit breakers for outbound HTTP

One breaker per external dependency (Resend, Slack, PayPal). After
``failure_threshold`` consecutive failures the breaker opens and calls fail
fast with CircuitBreakerOpenError. Once ``timeout_seconds`` have passed a
limited number of trial calls go through; ``success_threshold`` successes
close it again, a single failure reopens it.
"""
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar, ParamSpec

from app.core.logging import get_logger
from app.core.exceptions import CircuitBreakerOpenError

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3


@dataclass(frozen=True)
class BreakerSnapshot:
    """Point-in-time view for the admin status endpoint"""
    service: str
    state: CircuitState
    failure_count: int
    success_count: int
    half_open_calls: int
    retry_after_seconds: float


class CircuitBreaker:
    """Failure counter with a fail-fast window for one outbound service"""

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._trial_calls = 0
        self._opened_at = 0.0
        # threading.Lock: Celery tasks run each call on a fresh event loop
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def get_retry_after(self) -> float:
        """Seconds until an open breaker lets a trial call through"""
        if self._state != CircuitState.OPEN:
            return 0.0
        elapsed = time.monotonic() - self._opened_at
        return max(0.0, self.config.timeout_seconds - elapsed)

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            return BreakerSnapshot(
                service=self.service_name,
                state=self._state,
                failure_count=self._failures,
                success_count=self._successes,
                half_open_calls=self._trial_calls,
                retry_after_seconds=round(self.get_retry_after(), 1),
            )

    def _move_to(self, new_state: CircuitState) -> None:
        # caller holds self._lock
        previous = self._state
        self._state = new_state
        self._successes = 0
        self._trial_calls = 0
        if new_state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        elif new_state == CircuitState.CLOSED:
            self._failures = 0

        logger.info(
            "Circuit breaker state changed",
            extra_data={
                "service": self.service_name,
                "from_state": previous.value,
                "to_state": new_state.value,
            },
        )

    async def can_execute(self) -> bool:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self.get_retry_after() > 0:
                    return False
                self._move_to(CircuitState.HALF_OPEN)

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_calls >= self.config.half_open_max_calls:
                    return False
                self._trial_calls += 1
            return True

    async def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                self._failures = 0
                return
            self._successes += 1
            if self._successes >= self.config.success_threshold:
                self._move_to(CircuitState.CLOSED)

    async def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._failures += 1
            logger.warning(
                "Outbound call failed",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                },
            )
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN)

    async def execute(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """
        Await ``func`` through the breaker.

        Raises:
            CircuitBreakerOpenError: the breaker is open, ``func`` was not called
        """
        if not await self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            await self.record_failure(e)
            raise

        await self.record_success()
        return result


_breakers: dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()

_HTTP_SERVICE_CONFIG = CircuitBreakerConfig(timeout_seconds=60.0)
_PAYPAL_CONFIG = CircuitBreakerConfig(timeout_seconds=30.0)


def _named_breaker(service_name: str, config: CircuitBreakerConfig) -> CircuitBreaker:
    with _breakers_lock:
        breaker = _breakers.get(service_name)
        if breaker is None:
            breaker = _breakers[service_name] = CircuitBreaker(service_name, config)
        return breaker


def reset_circuit_breakers() -> None:
    """Forget every breaker's state (tests)"""
    with _breakers_lock:
        _breakers.clear()


def get_alert_email_circuit_breaker() -> CircuitBreaker:
    """Circuit breaker for the Resend email API"""
    return _named_breaker("alert_email", _HTTP_SERVICE_CONFIG)


def get_alert_slack_circuit_breaker() -> CircuitBreaker:
    """Circuit breaker for the Slack incoming webhook"""
    return _named_breaker("alert_slack", _HTTP_SERVICE_CONFIG)


def get_paypal_circuit_breaker() -> CircuitBreaker:
    """Circuit breaker for the PayPal REST API"""
    return _named_breaker("paypal", _PAYPAL_CONFIG)


def get_notification_email_circuit_breaker() -> CircuitBreaker:
    """Circuit breaker for deposit and refund emails; separate from alerts"""
    return _named_breaker("notification_email", _HTTP_SERVICE_CONFIG)
