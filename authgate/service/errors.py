from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` rendered into the response envelope. Messages for
    credential and token failures stay generic so responses never reveal
    whether an account exists.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


class InvalidCredentials(AuthenticationError):
    error_code = "invalid_credentials"
    default_message = "invalid credentials"


class TokenExpired(AuthenticationError):
    error_code = "token_expired"
    default_message = "token expired"


class TokenInvalid(AuthenticationError):
    error_code = "token_invalid"
    default_message = "invalid token"


class TokenRevoked(AuthenticationError):
    error_code = "token_revoked"
    default_message = "token revoked"


class SessionNotFound(AuthenticationError):
    error_code = "session_not_found"
    default_message = "session not found"


class SessionRevoked(AuthenticationError):
    error_code = "session_revoked"
    default_message = "session revoked"


class ReplayDetected(AuthenticationError):
    """A rotated refresh token was presented again; the session is torn down."""
    error_code = "replay_detected"
    default_message = "refresh token reuse detected"


class RefreshSuperseded(AuthenticationError):
    """The immediately prior refresh token was retried inside the grace window."""
    error_code = "refresh_superseded"
    default_message = "refresh token superseded"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class RateLimited(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "rate limit exceeded"

    def __init__(self, retry_after: int, message: Optional[str] = None) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(message, detail={"retry_after": self.retry_after})


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


class SigningError(ServerError):
    error_code = "signing_error"
    default_message = "signing material unavailable"


class ProviderUnavailable(ServiceError):
    """The identity provider failed transiently; callers own any retry policy."""
    status_code = 503
    error_code = "provider_unavailable"
    default_message = "identity provider unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "TokenExpired",
    "TokenInvalid",
    "TokenRevoked",
    "SessionNotFound",
    "SessionRevoked",
    "ReplayDetected",
    "RefreshSuperseded",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimited",
    "ServerError",
    "SigningError",
    "ProviderUnavailable",
]
