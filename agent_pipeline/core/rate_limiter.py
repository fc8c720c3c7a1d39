"""Fixed-window request limiting for calls to the reasoning provider."""

import math
import threading
import time
from typing import Callable, Dict, NamedTuple, Optional

from .logging import get_logger

logger = get_logger(__name__)


class RateLimitDecision(NamedTuple):
    allowed: bool
    remaining: int
    reset_in: int  # seconds until the current window ends


class _Window:
    __slots__ = ("count", "reset_at")

    def __init__(self, reset_at: float):
        self.count = 0
        self.reset_at = reset_at


class FixedWindowRateLimiter:
    """Counts requests per identifier in fixed time windows.

    A window starts with the first request for an identifier and lasts
    ``window_seconds``; the count resets once it expires. Expired windows are
    evicted every ``evict_every`` checks so the table stays bounded by the
    number of identifiers active within one window.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
        evict_every: int = 1000
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._evict_every = max(1, evict_every)
        self._windows: Dict[str, _Window] = {}
        self._checks = 0
        self._lock = threading.Lock()

    def check(self, identifier: str) -> RateLimitDecision:
        """Count one request for ``identifier`` and decide whether it may proceed."""
        with self._lock:
            now = self._clock()

            self._checks += 1
            if self._checks % self._evict_every == 0:
                self._evict_expired(now)

            window = self._windows.get(identifier)
            if window is None or now >= window.reset_at:
                window = _Window(now + self.window_seconds)
                self._windows[identifier] = window

            window.count += 1
            reset_in = max(0, math.ceil(window.reset_at - now))

            if window.count > self.max_requests:
                logger.warning(f"Rate limit exceeded for {identifier} ({window.count} requests)")
                return RateLimitDecision(False, 0, reset_in)

            return RateLimitDecision(True, self.max_requests - window.count, reset_in)

    def reset(self, identifier: Optional[str] = None) -> None:
        """Forget the window of one identifier, or of all identifiers."""
        with self._lock:
            if identifier is None:
                self._windows.clear()
            else:
                self._windows.pop(identifier, None)

    def evict_expired(self) -> int:
        """Drop expired windows and return how many were removed."""
        with self._lock:
            return self._evict_expired(self._clock())

    def tracked_identifiers(self) -> int:
        with self._lock:
            return len(self._windows)

    def _evict_expired(self, now: float) -> int:
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)
