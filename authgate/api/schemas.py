from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authgate.service.claims import MAX_CLAIMS_DEPTH

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthorized",
    "invalid_credentials",
    "token_expired",
    "token_invalid",
    "token_revoked",
    "session_not_found",
    "session_revoked",
    "replay_detected",
    "refresh_superseded",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "signing_error",
    "provider_unavailable",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    success: bool
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_json_depth(obj: Any, max_depth: int, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class RegisterRequest(BaseModel):
    email: str
    password: str
    display_name: Optional[str] = Field(default=None, max_length=128)
    device_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("display_name")
    @classmethod
    def _normalize_display_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = _normalize_unicode(value).strip()
        return normalized or None


class LoginRequest(BaseModel):
    email: str
    # Length-capped only; strength rules apply at registration
    password: str = Field(..., min_length=1, max_length=128)
    device_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class AssertionLoginRequest(BaseModel):
    assertion: str = Field(..., min_length=1, max_length=8192)
    device_id: Optional[str] = Field(default=None, max_length=128)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class EmailVerificationConfirm(BaseModel):
    code: str = Field(..., min_length=1, max_length=256)


class SetClaimsRequest(BaseModel):
    claims: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("claims")
    @classmethod
    def _validate_claims_depth(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value, MAX_CLAIMS_DEPTH)
        return value


class AuthResponse(BaseModel):
    subject_id: str
    session_id: str
    access_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class ProfileResponse(BaseModel):
    id: str
    email: str
    display_name: Optional[str] = None
    email_verified: bool = False
    role: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)


class RevokeResponse(BaseModel):
    subject_id: str
    floor: int


class SigningKeyReloadResponse(BaseModel):
    kid: Optional[str] = None
