import math
import threading
import time
from typing import Callable, Dict, Hashable, Optional, Tuple

from .errors import RateLimited


class RateLimiter:
    """
    Fixed-window request budget per key.

    ``hit`` either counts the request or raises RateLimited with the number
    of seconds until the current window ends. Nothing is queued.
    """

    def __init__(self, limit: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[Hashable, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: Hashable, now: Optional[float] = None):
        now = self._clock() if now is None else now
        with self._lock:
            start, count = self._windows.get(key, (now, 0))
            if now - start >= self.window_seconds:
                start, count = now, 0

            if count >= self.limit:
                retry_after = max(1, math.ceil(start + self.window_seconds - now))
                raise RateLimited(
                    f"Rate limit of {self.limit} per {self.window_seconds}s exceeded",
                    retry_after=retry_after
                )

            self._windows[key] = (start, count + 1)
            self._prune(now)

    def remaining(self, key: Hashable, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        with self._lock:
            start, count = self._windows.get(key, (now, 0))
            if now - start >= self.window_seconds:
                return self.limit
            return max(0, self.limit - count)

    def reset(self):
        with self._lock:
            self._windows.clear()

    def configure(self, limit: Optional[int] = None, window_seconds: Optional[int] = None):
        with self._lock:
            if limit is not None:
                self.limit = limit
            if window_seconds is not None:
                self.window_seconds = window_seconds

    def _prune(self, now: float):
        # Drop expired windows once the table grows
        if len(self._windows) < 1024:
            return
        expired = [k for k, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for key in expired:
            del self._windows[key]
