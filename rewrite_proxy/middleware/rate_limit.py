from abc import ABC, abstractmethod
from collections import deque
import threading
from typing import Deque, Dict, Optional


class RateLimitStoreBase(ABC):
    """Per-key request timestamps for sliding-window limiting."""

    @abstractmethod
    def hit(self, key: str, now: float, window: float, limit: int) -> Optional[float]:
        """
        Record a request for ``key`` unless ``limit`` requests already fall
        inside ``(now - window, now]``.

        Returns None when the request is allowed, otherwise the number of
        seconds until the oldest request leaves the window.
        """
        pass

    @abstractmethod
    def reset(self, key: Optional[str] = None) -> None:
        pass


class InMemoryRateLimitStore(RateLimitStoreBase):
    """
    Timestamps kept in one deque per key. Every ``sweep_interval`` seconds a
    hit also drops the keys whose newest request has left the window, so
    addresses that stop sending do not accumulate.
    """

    def __init__(self, sweep_interval: float = 60.0):
        self.sweep_interval = sweep_interval
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep: Optional[float] = None

    def hit(self, key: str, now: float, window: float, limit: int) -> Optional[float]:
        with self._lock:
            if self._last_sweep is None:
                self._last_sweep = now
            elif now - self._last_sweep >= self.sweep_interval:
                self._sweep(now, window)

            timestamps = self._hits.setdefault(key, deque())
            while timestamps and timestamps[0] <= now - window:
                timestamps.popleft()
            if len(timestamps) >= limit:
                if not timestamps:
                    del self._hits[key]
                    return window
                return max(timestamps[0] + window - now, 0.0)
            timestamps.append(now)
            return None

    def sweep(self, now: float, window: float) -> int:
        """Drop keys with no request inside ``(now - window, now]``; returns how many."""
        with self._lock:
            return self._sweep(now, window)

    def _sweep(self, now: float, window: float) -> int:
        stale = [
            key
            for key, timestamps in self._hits.items()
            if not timestamps or timestamps[-1] <= now - window
        ]
        for key in stale:
            del self._hits[key]
        self._last_sweep = now
        return len(stale)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)

    def __len__(self) -> int:
        return len(self._hits)
