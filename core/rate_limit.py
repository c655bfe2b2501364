from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from typing import Callable, Dict, Optional

from core.errors import RateLimited


class SlidingWindowLimiter:
    def __init__(
        self,
        max_events: int,
        window_seconds: int = 60,
        operation_limits: Optional[Dict[str, int]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_events = max_events
        self.window_seconds = window_seconds
        self.operation_limits = operation_limits or {}
        self._clock = clock
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, key: str, limit: Optional[int] = None) -> bool:
        return self._retry_after(key, limit or self.max_events) is None

    def check(self, identifier: str, operation: str) -> None:
        limit = self.operation_limits.get(operation, self.max_events)
        retry_after = self._retry_after(f"{operation}:{identifier}", limit)
        if retry_after is not None:
            raise RateLimited(operation, retry_after=retry_after)

    def _retry_after(self, key: str, limit: int) -> Optional[float]:
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            q = self._events[key]
            while q and q[0] < cutoff:
                q.popleft()
            if len(q) >= limit:
                return max(0.0, q[0] + self.window_seconds - now)
            q.append(now)
            return None
