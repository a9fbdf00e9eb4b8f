"""In-memory limiter for failed sign-in attempts."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque


class LoginRateLimiter:
    """Sliding window of failed attempts per client key.

    Only failures are counted; a successful sign-in clears the key. Limits
    are passed on every call so they follow the current settings.
    """

    def __init__(self, clock=time.monotonic):
        self._failures: dict[str, deque] = defaultdict(deque)
        self._lock = threading.Lock()
        self._clock = clock

    def _prune(self, key: str, window_seconds: int) -> deque:
        failures = self._failures[key]
        cutoff = self._clock() - window_seconds
        while failures and failures[0] <= cutoff:
            failures.popleft()
        return failures

    def check(self, key: str, max_failures: int, window_seconds: int) -> int:
        """Return 0 when `key` may try again, else the seconds to wait."""
        with self._lock:
            failures = self._prune(key, window_seconds)
            if len(failures) < max_failures:
                return 0
            return max(1, int(window_seconds - (self._clock() - failures[0])))

    def record_failure(self, key: str) -> None:
        with self._lock:
            self._failures[key].append(self._clock())

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._failures.clear()
            else:
                self._failures.pop(key, None)
