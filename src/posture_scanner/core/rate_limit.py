"""
Fixed-window request throttling keyed by caller identity.

One RateLimiter instance lives for the life of the application and is
shared by request handlers; nothing is persisted across restarts.
"""

import time
import threading
from typing import Callable, Dict, Tuple


CODE_SCAN_LIMIT = 5
SITE_SCAN_LIMIT = 10
DEFAULT_WINDOW = 60  # seconds


class RateLimiter:
    """
    Allows at most `limit` calls per identity in each window.

    A window starts at an identity's first call and lasts
    `window_seconds`. Expired entries are evicted on access.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = DEFAULT_WINDOW,
        clock: Callable[[], float] = time.monotonic
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._entries: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def _evict_expired(self, now: float):
        expired = [key for key, (_, reset_at) in self._entries.items() if now >= reset_at]
        for key in expired:
            del self._entries[key]

    def allow(self, identity: str) -> bool:
        """Record a call for `identity` and report whether it is within the limit."""
        with self._lock:
            now = self.clock()
            self._evict_expired(now)

            count, reset_at = self._entries.get(identity, (0, now + self.window_seconds))
            if count >= self.limit:
                return False

            self._entries[identity] = (count + 1, reset_at)
            return True

    def reset(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
