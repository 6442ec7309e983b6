"""Key-value contract shared by the memory and Redis backends.

Session records, subject generation floors and rate-limit logs all live in a
small key-value store. Both backends implement :class:`KeyValueBackend`; the
compare-and-swap and sliding-window operations are atomic in each.
"""

from __future__ import annotations

import hashlib
import math
from typing import Optional, Protocol, Tuple, runtime_checkable

SESSION_PREFIX = "session:"
SUBJECT_FLOOR_PREFIX = "subject:floor:"
SUBJECT_DEVICE_PREFIX = "subject:device:"
RATE_PREFIX = "rate:"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def subject_floor_key(subject_id: str) -> str:
    return f"{SUBJECT_FLOOR_PREFIX}{subject_id}"


def subject_device_key(subject_id: str, device_id: str) -> str:
    return f"{SUBJECT_DEVICE_PREFIX}{subject_id}:{device_id}"


def rate_key(policy_class: str, client_key: str) -> str:
    """Hash the client component so keys cannot collide through delimiters."""
    digest = hashlib.sha256(client_key.encode()).hexdigest()
    return f"{RATE_PREFIX}{policy_class}:{digest}"


def retry_after_seconds(oldest: float, window_seconds: float, now: float) -> int:
    return max(1, math.ceil(oldest + window_seconds - now))


@runtime_checkable
class KeyValueBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None: ...

    async def get_and_set(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> Optional[str]:
        """Atomically store ``value`` and return what ``key`` held before."""
        ...

    async def delete(self, key: str) -> None: ...

    async def incr(self, key: str) -> int: ...

    async def compare_and_swap(
        self, key: str, expected: str, new: str, *, ttl_seconds: Optional[int] = None
    ) -> bool:
        """Replace ``key`` with ``new`` only when it currently holds ``expected``."""
        ...

    async def sliding_window_hit(
        self, key: str, *, now: float, window_seconds: int, limit: int
    ) -> Tuple[bool, int, int]:
        """Record a hit unless the window is full.

        Returns ``(allowed, count, retry_after)`` where ``count`` includes the
        recorded hit. Denied hits are not recorded.
        """
        ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...
