from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authgate.api.error_handling import error_response, register_exception_handlers
from authgate.api.routes import RateLimitInfo, client_key, router
from authgate.config import Settings
from authgate.logging import get_logger, set_correlation_id
from authgate.service.errors import RateLimited
from authgate.service.rate_limit import GLOBAL_POLICY
from authgate.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = _settings.app_version

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0
# Liveness probes must keep working while a client is being throttled
_RATE_LIMIT_EXEMPT_PATHS = frozenset({"/healthz"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; release connections on shutdown."""
    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="authgate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


@app.middleware("http")
async def enforce_global_rate_limit(request: Request, call_next):
    """Apply the ``global`` policy to every request before routing."""
    if request.url.path in _RATE_LIMIT_EXEMPT_PATHS or request.method == "OPTIONS":
        return await call_next(request)
    runtime = get_runtime()
    try:
        decision = await runtime.rate_limiter.enforce(
            GLOBAL_POLICY, client_key(request, runtime.settings)
        )
    except RateLimited as exc:
        logger.warning("global_rate_limited", path=request.url.path, retry_after=exc.retry_after)
        return error_response(
            429,
            exc.message,
            exc.detail,
            code=exc.error_code,
            headers={"Retry-After": str(exc.retry_after)},
        )
    response = await call_next(request)
    # The auth policy, when applied, is the tighter one; keep its headers
    if "X-RateLimit-Limit" not in response.headers:
        RateLimitInfo.from_decision(
            decision, runtime.settings.global_rate_limit_window_seconds
        ).apply_headers(response)
    return response


# Wraps the global limiter so throttled responses still carry CORS headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Device-ID"],
    expose_headers=["X-Request-ID", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    max_age=3600,
)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


# Registered last so it wraps everything else and the id is set for all logs
@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID, taken from the client or generated."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report backend reachability and whether signing material is loaded."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        backend_ok = await asyncio.wait_for(
            runtime.backend.ping(), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="backend")
        backend_ok = False
    checks["backend"] = {
        "status": "healthy" if backend_ok else "unhealthy",
        "type": type(runtime.backend).__name__,
    }
    keys_ok = runtime.keys.loaded
    checks["signing_key"] = {"status": "healthy" if keys_ok else "unhealthy"}

    healthy = backend_ok and keys_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    return app
