"""Rate limiting for login attempts by identifier."""
import time
from typing import Callable, Dict, List
import threading

from clinic_booking import config
from clinic_booking.errors import RateLimitError


class RateLimiter:
    """
    In-memory rate limiter using sliding window algorithm.

    Pattern: Sliding window keyed by an arbitrary string (phone or email).
    Good for: Single-process deployments.
    NOT for: Multiple API workers (each keeps its own window).

    Only keys with attempts inside the window are kept; once per window
    every idle key is dropped, so unknown identifiers do not accumulate.
    """

    def __init__(
        self,
        max_attempts: int = config.LOGIN_ATTEMPTS_PER_WINDOW,
        window_seconds: int = config.LOGIN_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.clock = clock

        # {key: [timestamp1, timestamp2, ...]}
        self.request_log: Dict[str, List[float]] = {}
        self._last_sweep = clock()

        self.lock = threading.Lock()

    def check_rate_limit(self, key: str):
        """
        Record one attempt for ``key``.

        Raises:
            RateLimitError: If the window already holds ``max_attempts``
        """
        with self.lock:
            now = self.clock()
            self._sweep(now)
            attempts = self._prune(key, now)

            if len(attempts) >= self.max_attempts:
                retry_after = int(self.window_seconds - (now - min(attempts))) + 1
                raise RateLimitError(
                    "Too many login attempts. Please try again later.",
                    retry_after=retry_after
                )

            attempts.append(now)
            self.request_log[key] = attempts

    def reset(self, key: str):
        """Forget recorded attempts (after a successful login)."""
        with self.lock:
            self.request_log.pop(key, None)

    def _prune(self, key: str, now: float) -> List[float]:
        cutoff = now - self.window_seconds
        attempts = [ts for ts in self.request_log.get(key, ()) if ts > cutoff]
        if attempts:
            self.request_log[key] = attempts
        else:
            self.request_log.pop(key, None)
        return attempts

    def _sweep(self, now: float):
        if now - self._last_sweep < self.window_seconds:
            return
        for key in list(self.request_log):
            self._prune(key, now)
        self._last_sweep = now
