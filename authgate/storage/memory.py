from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

from authgate.logging import get_logger
from authgate.storage.common import retry_after_seconds

logger = get_logger(__name__)

# Expired keys are swept at most this often, on the next write
SWEEP_INTERVAL_SECONDS = 60


class MemoryBackend:
    """In-process key-value backend used in tests and local development.

    Every operation runs under a single ``RLock`` so compare-and-swap and the
    sliding-window check are atomic even when called from a thread pool.
    Expiry is evaluated lazily against the injected clock, and writes
    periodically sweep every expired key and rate window.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data_lock = threading.RLock()
        self._values: Dict[str, str] = {}
        self._expiry: Dict[str, float] = {}
        self._windows: Dict[str, Deque[float]] = {}
        self._window_expiry: Dict[str, float] = {}
        self._next_sweep_at = clock() + SWEEP_INTERVAL_SECONDS

    def _purge_if_expired(self, key: str) -> None:
        expires_at = self._expiry.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now < self._next_sweep_at:
            return
        self._next_sweep_at = now + SWEEP_INTERVAL_SECONDS
        expired = [key for key, expires_at in self._expiry.items() if expires_at <= now]
        for key in expired:
            self._values.pop(key, None)
            self._expiry.pop(key, None)
        stale = [key for key, expires_at in self._window_expiry.items() if expires_at <= now]
        for key in stale:
            self._windows.pop(key, None)
            self._window_expiry.pop(key, None)
        if expired or stale:
            logger.debug("memory_backend_swept", keys=len(expired), windows=len(stale))

    def _put(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        self._maybe_sweep()
        self._values[key] = value
        if ttl_seconds is not None and ttl_seconds > 0:
            self._expiry[key] = self._clock() + ttl_seconds
        else:
            self._expiry.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            self._purge_if_expired(key)
            return self._values.get(key)

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None:
        with self._data_lock:
            self._put(key, value, ttl_seconds)

    async def get_and_set(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> Optional[str]:
        with self._data_lock:
            self._purge_if_expired(key)
            previous = self._values.get(key)
            self._put(key, value, ttl_seconds)
            return previous

    async def delete(self, key: str) -> None:
        with self._data_lock:
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            self._windows.pop(key, None)
            self._window_expiry.pop(key, None)

    async def incr(self, key: str) -> int:
        with self._data_lock:
            self._maybe_sweep()
            self._purge_if_expired(key)
            value = int(self._values.get(key) or 0) + 1
            self._values[key] = str(value)
            return value

    async def compare_and_swap(
        self, key: str, expected: str, new: str, *, ttl_seconds: Optional[int] = None
    ) -> bool:
        with self._data_lock:
            self._purge_if_expired(key)
            if self._values.get(key) != expected:
                return False
            self._put(key, new, ttl_seconds)
            return True

    async def sliding_window_hit(
        self, key: str, *, now: float, window_seconds: int, limit: int
    ) -> Tuple[bool, int, int]:
        with self._data_lock:
            self._maybe_sweep()
            hits = self._windows.get(key)
            if hits is None or self._window_expiry.get(key, now + 1) <= now:
                hits = deque()
                self._windows[key] = hits
            cutoff = now - window_seconds
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                return False, len(hits), retry_after_seconds(hits[0], window_seconds, now)
            hits.append(now)
            self._window_expiry[key] = now + window_seconds
            return True, len(hits), 0

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._data_lock:
            self._values.clear()
            self._expiry.clear()
            self._windows.clear()
            self._window_expiry.clear()
