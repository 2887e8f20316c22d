"""
Circuit Breaker for payment provider calls

A provider that keeps timing out or answering 5xx is short-circuited for a
while instead of tying up request handlers on doomed round-trips.
"""
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from app.core.exceptions import CircuitBreakerOpenError
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"        # requests flow
    OPEN = "open"            # requests blocked
    HALF_OPEN = "half_open"  # probing recovery


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3


def _always(_: Exception) -> bool:
    return True


class CircuitBreaker:
    """
    Per-service breaker (CLOSED → OPEN → HALF_OPEN → CLOSED).

    `execute` takes a `counts_as_failure` predicate so that business
    rejections raised by the wrapped call do not trip the breaker; only
    exceptions the predicate accepts are recorded as failures.
    """

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._half_open_calls = 0
        self._opened_at = 0.0
        # threading.Lock ולא asyncio.Lock — ה-breaker משותף גם ל-event loops של Celery
        self._lock = threading.Lock()

    @classmethod
    def get_instance(cls, service_name: str, config: CircuitBreakerConfig | None = None) -> "CircuitBreaker":
        if service_name not in cls._instances:
            with cls._instances_lock:
                if service_name not in cls._instances:
                    cls._instances[service_name] = cls(service_name, config)
        return cls._instances[service_name]

    @classmethod
    def reset_all(cls) -> None:
        """Forget every breaker (tests)"""
        with cls._instances_lock:
            cls._instances.clear()

    @classmethod
    def snapshot(cls) -> dict[str, str]:
        """{service: state} for the readiness probe"""
        with cls._instances_lock:
            return {name: cb.state.value for name, cb in cls._instances.items()}

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def _move_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
            self._successes = 0
        elif new_state == CircuitState.CLOSED:
            self._failures = 0
            self._successes = 0
        elif new_state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
            },
        )

    def retry_after(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.timeout_seconds - (time.monotonic() - self._opened_at))

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if time.monotonic() - self._opened_at < self.config.timeout_seconds:
                    return False
                self._move_to(CircuitState.HALF_OPEN)
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    return False
                self._half_open_calls += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED)
            else:
                self._failures = 0

    def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            self._failures += 1
            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failures,
                    "threshold": self.config.failure_threshold,
                    "error": type(error).__name__ if error else None,
                },
            )
            if self._state == CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
                self._move_to(CircuitState.OPEN)

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        counts_as_failure: Callable[[Exception], bool] = _always,
        **kwargs,
    ) -> T:
        """
        Await `func(*args, **kwargs)` under breaker protection.

        Raises:
            CircuitBreakerOpenError: the breaker is open (or half-open and saturated)
        """
        if not self.allow_request():
            raise CircuitBreakerOpenError(self.service_name, self.retry_after())
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if counts_as_failure(e):
                self.record_failure(e)
            else:
                self.record_success()
            raise
        self.record_success()
        return result


def get_mpesa_circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker.get_instance(
        "mpesa",
        CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=30.0),
    )


def get_equity_circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker.get_instance(
        "equity",
        CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=30.0),
    )
