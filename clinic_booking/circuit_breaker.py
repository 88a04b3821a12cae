"""Circuit breaker guarding the SMS provider.

Purpose: when the provider is down, stop waiting on it for every OTP or
booking notice and fail the delivery immediately instead.

States:
- CLOSED: Normal operation, sends pass through
- OPEN: Provider failing, sends fail immediately
- HALF_OPEN: Cool-down elapsed, one trial send decides the next state;
  other sends fail immediately until it finishes
"""
import threading
import time
from enum import Enum
from typing import Any, Callable

from clinic_booking.logging_config import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """Raised when the circuit is open and the call was not attempted."""
    pass


class CircuitBreaker:
    """Thread-safe circuit breaker for one external provider."""

    def __init__(self, name: str = "sms", failure_threshold: int = 5, timeout: int = 60):
        """
        Args:
            name: Provider name used in log events
            failure_threshold: Consecutive failures before opening the circuit
            timeout: Seconds to stay open before allowing a trial call
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.failure_count = 0
        self.last_failure_time = None
        self._state = CircuitState.CLOSED
        self._lock = threading.Lock()

    @property
    def state(self) -> str:
        return self._state.value

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute ``func`` unless the circuit is open.

        Raises:
            CircuitBreakerOpen: If the circuit is open (call not attempted)
            Exception: Whatever ``func`` raises
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._time_until_retry() > 0:
                    raise CircuitBreakerOpen(
                        f"{self.name} circuit is OPEN. "
                        f"Retry after {self._time_until_retry():.1f}s"
                    )
                self._state = CircuitState.HALF_OPEN
                logger.info("circuit_half_open", provider=self.name)
            elif self._state == CircuitState.HALF_OPEN:
                # Only the caller that moved the circuit to HALF_OPEN runs the trial
                raise CircuitBreakerOpen(f"{self.name} circuit is HALF_OPEN, trial send in progress")

        try:
            result = func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _time_until_retry(self) -> float:
        if self.last_failure_time is None:
            return 0
        elapsed = time.time() - self.last_failure_time
        return max(0, self.timeout - elapsed)

    def _on_success(self):
        with self._lock:
            self.failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                logger.info("circuit_closed", provider=self.name)

    def _on_failure(self):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                logger.warning("circuit_reopened", provider=self.name)
            elif self.failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.error(
                    "circuit_opened",
                    provider=self.name,
                    failures=self.failure_count,
                    timeout=self.timeout,
                )
