from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authgate.config import IdentityProviderKind, Settings, get_settings, reset_settings_cache
from authgate.logging import get_logger
from authgate.service.auth import AuthService
from authgate.service.identity import (
    HttpIdentityProvider,
    IdentityProviderClient,
    MemoryIdentityProvider,
)
from authgate.service.rate_limit import RateLimiter
from authgate.service.refresh import RefreshCoordinator
from authgate.service.revocation import RevocationService
from authgate.service.signing import SigningKeyProvider
from authgate.service.tokens import TokenIssuer, TokenVerifier
from authgate.storage.common import KeyValueBackend
from authgate.storage.memory import MemoryBackend
from authgate.storage.redis_cache import RedisBackend
from authgate.storage.sessions import SessionStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def _build_backend(settings: Settings) -> KeyValueBackend:
    if settings.use_memory_store:
        logger.info("runtime_backend_initialized", backend="memory")
        return MemoryBackend()

    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            backend = RedisBackend(settings.redis_url)
            backend.verify_connection()
            logger.info(
                "runtime_backend_initialized",
                backend="redis",
                redis_url=_mask_url_password(settings.redis_url),
            )
            return backend
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for sessions and rate limits; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; sessions and rate limits "
            "are in-memory only and not shared between processes."
        ),
        mode=fallback_mode,
    )
    return MemoryBackend()


def _build_provider(settings: Settings) -> IdentityProviderClient:
    if settings.identity_provider == IdentityProviderKind.MEMORY or (
        settings.test_mode and not settings.identity_provider_url
    ):
        if not settings.test_mode:
            logger.warning("identity_provider_memory_in_use")
        return MemoryIdentityProvider()
    return HttpIdentityProvider.from_settings(settings)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.backend = _build_backend(self.settings)
        self.provider = _build_provider(self.settings)
        self.keys = SigningKeyProvider.from_settings(self.settings)
        self.sessions = SessionStore(self.backend, self.settings)
        self.issuer = TokenIssuer(self.settings, self.keys)
        self.verifier = TokenVerifier(self.settings, self.keys, sessions=self.sessions)
        self.refresher = RefreshCoordinator(
            self.sessions,
            self.issuer,
            self.verifier,
            self.provider,
            reuse_grace_seconds=self.settings.refresh_reuse_grace_seconds,
        )
        self.revocation = RevocationService(
            self.sessions,
            self.provider,
            revoke_provider_grants=self.settings.revoke_provider_grants,
        )
        self.rate_limiter = RateLimiter.from_settings(self.backend, self.settings)
        self.auth = AuthService(
            self.settings,
            self.provider,
            self.sessions,
            self.keys,
            self.issuer,
            self.verifier,
            self.refresher,
            self.revocation,
        )
        logger.info(
            "runtime_initialized",
            backend=type(self.backend).__name__,
            identity_provider=type(self.provider).__name__,
            signing_key_loaded=self.keys.loaded,
        )

    async def close(self) -> None:
        await self.provider.close()
        await self.backend.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; the locked re-check prevents two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        previous = runtime
        runtime = Runtime(settings)
    # Memory backends and providers hold no connections worth closing
    if previous is not None and (
        isinstance(previous.provider, HttpIdentityProvider)
        or isinstance(previous.backend, RedisBackend)
    ):
        try:
            try:
                asyncio.get_running_loop().create_task(previous.close())
            except RuntimeError:
                asyncio.run(previous.close())
        except Exception as exc:
            # Connection may already be closed or bound to a finished loop
            logger.warning("runtime_close_failed", error=str(exc))
    return runtime
