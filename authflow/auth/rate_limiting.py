"""
Client-side rate limiting for authflow.

Fixed-window attempt counting per key (e.g. ``login:user@example.com``).
The limiter is an ordinary object: create one per process and pass it to
whatever needs it.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitOptions:
    max_attempts: int
    window_seconds: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    reset_time: Optional[float] = None


DEFAULT_RATE_LIMITS: Dict[str, RateLimitOptions] = {
    'login': RateLimitOptions(max_attempts=5, window_seconds=15 * 60),
    'otpRequest': RateLimitOptions(max_attempts=3, window_seconds=5 * 60),
    'registration': RateLimitOptions(max_attempts=10, window_seconds=60 * 60),
}


@dataclass
class _Window:
    count: int
    reset_time: float


class RateLimiter:
    """
    Fixed-window rate limiter.

    The first attempt for a key opens a window of ``window_seconds``. Up to
    ``max_attempts`` attempts are allowed inside it; later attempts are
    refused until the window ends. Expired windows are dropped on the next
    ``check``.

    Args:
        clock: Returns the current time in seconds (defaults to ``time.time``)
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._windows: Dict[str, _Window] = {}

    def check(self, key: str, options: RateLimitOptions) -> RateLimitResult:
        """
        Count an attempt for ``key``.

        Returns:
            RateLimitResult; when refused, ``reset_time`` is the time the
            current window ends
        """
        now = self._clock()
        self._cleanup(now)

        window = self._windows.get(key)
        if window is None or now >= window.reset_time:
            window = _Window(count=1, reset_time=now + options.window_seconds)
            self._windows[key] = window
            return RateLimitResult(allowed=True, reset_time=window.reset_time)

        if window.count >= options.max_attempts:
            logger.warning(f"Rate limit exceeded for {key.split(':', 1)[0]}")
            return RateLimitResult(allowed=False, reset_time=window.reset_time)

        window.count += 1
        return RateLimitResult(allowed=True, reset_time=window.reset_time)

    def reset(self, key: str) -> None:
        self._windows.pop(key, None)

    def attempts(self, key: str) -> int:
        """Attempts counted in the current window of ``key``."""
        window = self._windows.get(key)
        if window is None or self._clock() >= window.reset_time:
            return 0
        return window.count

    def _cleanup(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if now >= window.reset_time]
        for key in expired:
            del self._windows[key]
