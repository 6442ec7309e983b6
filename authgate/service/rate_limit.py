from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import RateLimited
from authgate.storage.common import KeyValueBackend, rate_key
from authgate.storage.models import RateLimitDecision

logger = get_logger(__name__)

GLOBAL_POLICY = "global"
AUTH_POLICY = "auth"
DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: int


class RateLimiter:
    """Sliding-window request limits keyed by policy class and client key.

    Only admitted requests are recorded, so a client hammering a closed
    window does not extend its own lockout.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        policies: Dict[str, RateLimitPolicy],
        *,
        allowlist: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.policies = dict(policies)
        self.allowlist = frozenset(allowlist)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        backend: KeyValueBackend,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "RateLimiter":
        return cls(
            backend,
            {
                GLOBAL_POLICY: RateLimitPolicy(
                    settings.global_rate_limit, settings.global_rate_limit_window_seconds
                ),
                AUTH_POLICY: RateLimitPolicy(
                    settings.auth_rate_limit, settings.auth_rate_limit_window_seconds
                ),
            },
            allowlist=settings.rate_limit_allowlist,
            clock=clock,
        )

    async def check(self, policy_class: str, client_key: str) -> RateLimitDecision:
        policy = self.policies.get(policy_class)
        if policy is None:
            raise KeyError(f"unknown rate limit policy: {policy_class}")
        limit = policy.limit
        if client_key in self.allowlist or limit <= 0:
            return RateLimitDecision(
                allowed=True, limit=limit, remaining=max(limit, 0), policy_class=policy_class
            )
        window_seconds = policy.window_seconds
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                policy_class=policy_class,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS

        allowed, count, retry_after = await self.backend.sliding_window_hit(
            rate_key(policy_class, client_key),
            now=self._clock(),
            window_seconds=window_seconds,
            limit=limit,
        )
        decision = RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            retry_after=retry_after,
            policy_class=policy_class,
        )
        if not allowed:
            logger.info(
                "rate_limited",
                policy_class=policy_class,
                client_key=client_key,
                retry_after=retry_after,
            )
        return decision

    async def enforce(self, policy_class: str, client_key: str) -> RateLimitDecision:
        decision = await self.check(policy_class, client_key)
        if not decision.allowed:
            raise RateLimited(decision.retry_after)
        return decision


def client_key_from(
    remote_addr: Optional[str],
    forwarded_for: Optional[str] = None,
    *,
    trust_forwarded_for: bool = False,
) -> str:
    """Pick the key requests are limited by: the peer address, or the first forwarded hop."""
    if trust_forwarded_for and forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return remote_addr or "unknown"
