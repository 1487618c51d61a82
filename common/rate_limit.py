"""
Fixed-window request counting per client and endpoint, kept in process memory.
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Tuple

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._counts: Dict[Tuple[str, str, int], int] = {}

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def check(self, client_id: str, endpoint: str) -> Dict[str, Any]:
        """Count one request for client_id on endpoint and report whether it may proceed."""
        now = int(self.clock())
        window_start = now // self.window_seconds * self.window_seconds
        reset_time = window_start + self.window_seconds
        key = (client_id, endpoint, window_start)

        with self._lock:
            self._evict(window_start)
            count = self._counts.get(key, 0)
            if count >= self.max_requests:
                return {
                    "allowed": False,
                    "count": count,
                    "remaining": 0,
                    "reset_time": reset_time,
                    "retry_after": reset_time - now,
                }
            count += 1
            self._counts[key] = count

        logger.debug(f"Rate limit check for {client_id}:{endpoint} - count: {count}/{self.max_requests}")
        return {
            "allowed": True,
            "count": count,
            "remaining": self.max_requests - count,
            "reset_time": reset_time,
            "retry_after": 0,
        }

    def _evict(self, window_start: int):
        stale = [key for key in self._counts if key[2] < window_start]
        for key in stale:
            del self._counts[key]
