from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from authgate.api.schemas import (
    AssertionLoginRequest,
    AuthResponse,
    EmailVerificationConfirm,
    Envelope,
    LoginRequest,
    PasswordResetRequest,
    ProfileResponse,
    RegisterRequest,
    RevokeResponse,
    SetClaimsRequest,
    SigningKeyReloadResponse,
)
from authgate.config import Settings
from authgate.logging import get_correlation_id, get_logger
from authgate.service.auth import AuthContext, LoginResult, RequestContext
from authgate.service.errors import AuthenticationError, ForbiddenError
from authgate.service.rate_limit import AUTH_POLICY, client_key_from
from authgate.service.runtime import get_runtime
from authgate.storage.models import RateLimitDecision, Session, Subject, TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ADMIN_ROLE = "admin"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: RateLimitDecision, window_seconds: int) -> "RateLimitInfo":
        reset = decision.retry_after if not decision.allowed else window_seconds
        return cls(decision.limit, decision.remaining, reset)

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers per IETF draft-polli-ratelimit-headers."""
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _ok(data: Any = None) -> Envelope:
    return Envelope(success=True, data=data, request_id=get_correlation_id() or str(uuid4()))


def client_key(request: Request, settings: Settings) -> str:
    return client_key_from(
        request.client.host if request.client else None,
        request.headers.get("x-forwarded-for"),
        trust_forwarded_for=settings.trust_forwarded_for,
    )


def _request_context(request: Request, device_id: Optional[str] = None) -> RequestContext:
    settings = get_runtime().settings
    return RequestContext(
        client_key=client_key(request, settings),
        ip_addr=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        device_id=device_id or request.headers.get("x-device-id"),
        request_id=get_correlation_id(),
    )


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def enforce_auth_rate_limit(request: Request, response: Response) -> None:
    """Apply the ``auth`` policy before any credential reaches the provider."""
    runtime = get_runtime()
    decision = await runtime.rate_limiter.enforce(
        AUTH_POLICY, client_key(request, runtime.settings)
    )
    RateLimitInfo.from_decision(
        decision, runtime.settings.auth_rate_limit_window_seconds
    ).apply_headers(response)


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(_extract_bearer(authorization))


async def get_admin_principal(
    principal: AuthContext = Depends(get_principal),
) -> AuthContext:
    if not principal.has_role(ADMIN_ROLE):
        raise ForbiddenError("admin access required")
    return principal


def _set_refresh_cookie(response: Response, tokens: TokenPair, settings: Settings) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        tokens.refresh_token,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite=settings.refresh_cookie_samesite.value,
        max_age=settings.refresh_token_ttl_seconds,
        path=settings.refresh_cookie_path,
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=settings.refresh_cookie_secure,
        httponly=True,
        samesite=settings.refresh_cookie_samesite.value,
    )


def _auth_response(session: Session, tokens: TokenPair) -> AuthResponse:
    return AuthResponse(
        subject_id=session.subject_id,
        session_id=session.id,
        access_token=tokens.access_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _session_established(response: Response, result: LoginResult) -> Envelope:
    _set_refresh_cookie(response, result.tokens, get_runtime().settings)
    return _ok(_auth_response(result.session, result.tokens))


def _profile(subject: Subject) -> ProfileResponse:
    return ProfileResponse(
        id=subject.id,
        email=subject.email,
        display_name=subject.display_name,
        email_verified=subject.email_verified,
        role=subject.claims.role,
        permissions=list(subject.claims.permissions),
    )


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a subject at the identity provider and start a session.

    Duplicate addresses get the same generic rejection as any other
    failed registration.
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        _request_context(request, body.device_id),
        display_name=body.display_name,
    )
    return _session_established(response, result)


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, _request_context(request, body.device_id)
    )
    return _session_established(response, result)


@router.post(
    "/auth/login/assertion",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def login_with_assertion(
    body: AssertionLoginRequest, request: Request, response: Response
):
    """Exchange a provider-minted assertion for a session."""
    runtime = get_runtime()
    result = await runtime.auth.login_with_assertion(
        body.assertion, _request_context(request, body.device_id)
    )
    return _session_established(response, result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(request: Request, response: Response):
    runtime = get_runtime()
    refresh_token = request.cookies.get(runtime.settings.refresh_cookie_name)
    if not refresh_token:
        raise AuthenticationError("missing refresh token")
    result = await runtime.auth.refresh(refresh_token, _request_context(request))
    _set_refresh_cookie(response, result.tokens, runtime.settings)
    return _ok(_auth_response(result.session, result.tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    revoked = await runtime.auth.logout(
        access_token=_extract_bearer(authorization),
        refresh_token=request.cookies.get(runtime.settings.refresh_cookie_name),
    )
    _clear_refresh_cookie(response, runtime.settings)
    return _ok({"revoked": revoked})


@router.post(
    "/auth/password-reset",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def request_password_reset(body: PasswordResetRequest):
    """Ask the provider to email a reset link.

    The response is identical whether or not the address is registered.
    """
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    return _ok({"status": "sent"})


@router.post("/auth/verify-email/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.auth.request_email_verification(principal.subject_id)
    return _ok({"status": "sent"})


@router.post(
    "/auth/verify-email/confirm",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def confirm_email_verification(body: EmailVerificationConfirm):
    runtime = get_runtime()
    subject = await runtime.auth.confirm_email_verification(body.code)
    return _ok(_profile(subject))


@router.post("/auth/revoke-all", response_model=Envelope, tags=["auth"])
async def revoke_all_sessions(
    response: Response, principal: AuthContext = Depends(get_principal)
):
    """Log out everywhere, including the calling session."""
    runtime = get_runtime()
    floor = await runtime.auth.revoke_all(principal.subject_id)
    _clear_refresh_cookie(response, runtime.settings)
    return _ok(RevokeResponse(subject_id=principal.subject_id, floor=floor))


@router.get("/me", response_model=Envelope, tags=["account"])
async def get_me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    subject = await runtime.auth.get_profile(principal.subject_id)
    return _ok(_profile(subject))


@router.delete("/me", response_model=Envelope, tags=["account"])
async def delete_me(response: Response, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.auth.delete_account(principal.subject_id)
    _clear_refresh_cookie(response, runtime.settings)
    return _ok({"deleted": True})


@router.post("/admin/subjects/{subject_id}/revoke", response_model=Envelope, tags=["admin"])
async def admin_revoke_subject(
    subject_id: str = Path(..., min_length=1, max_length=128),
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    floor = await runtime.auth.revoke_all(subject_id)
    logger.info(
        "admin_subject_revoked", subject_id=subject_id, admin_id=principal.subject_id
    )
    return _ok(RevokeResponse(subject_id=subject_id, floor=floor))


@router.put("/admin/subjects/{subject_id}/claims", response_model=Envelope, tags=["admin"])
async def admin_set_claims(
    body: SetClaimsRequest,
    subject_id: str = Path(..., min_length=1, max_length=128),
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    claims = await runtime.auth.set_claims(subject_id, body.claims)
    logger.info(
        "admin_claims_set", subject_id=subject_id, admin_id=principal.subject_id
    )
    return _ok({"subject_id": subject_id, "claims": claims.to_payload()})


@router.post("/admin/signing-keys/reload", response_model=Envelope, tags=["admin"])
async def admin_reload_signing_keys(
    principal: AuthContext = Depends(get_admin_principal),
):
    runtime = get_runtime()
    kid = runtime.auth.reload_signing_keys()
    logger.info("admin_signing_keys_reloaded", kid=kid, admin_id=principal.subject_id)
    return _ok(SigningKeyReloadResponse(kid=kid))
