from __future__ import annotations

from collections import defaultdict, deque
import threading
import time
from typing import Callable


class SlidingWindowLimiter:
    """Per-key request budget over a trailing window (the plain 429 limiter)."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._clock = clock

    def allow(self, key: str, max_events: int, period_seconds: int) -> bool:
        now = self._clock()
        window_start = now - period_seconds
        with self._lock:
            events = self._events[key]
            while events and events[0] <= window_start:
                events.popleft()

            if len(events) >= max_events:
                return False

            events.append(now)
            return True

    def prune(self, period_seconds: int) -> int:
        """Drop keys with no events inside the window."""
        window_start = self._clock() - period_seconds
        with self._lock:
            idle = [key for key, events in self._events.items() if not events or events[-1] <= window_start]
            for key in idle:
                del self._events[key]
        return len(idle)

    def __len__(self) -> int:
        return len(self._events)
