"""Identity provider clients.

The provider owns subjects, passwords, email delivery and custom claims.
This service only consumes it through :class:`IdentityProviderClient`.
Responses are validated at this boundary; nothing loosely typed leaks past it.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.claims import CustomClaims
from authgate.service.errors import (
    ConflictError,
    InvalidCredentials,
    NotFoundError,
    ProviderUnavailable,
    TokenExpired,
    TokenInvalid,
    ValidationError,
)
from authgate.storage.models import Subject

logger = get_logger(__name__)


@runtime_checkable
class IdentityProviderClient(Protocol):
    async def verify_credentials(self, email: str, password: str) -> Subject: ...

    async def mint_assertion(self, subject: Subject) -> str: ...

    async def verify_assertion(self, token: str) -> Subject: ...

    async def set_claims(self, subject_id: str, claims: CustomClaims) -> None: ...

    async def revoke_grants(self, subject_id: str) -> None: ...

    async def create_subject(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> Subject: ...

    async def get_subject(self, subject_id: str) -> Subject: ...

    async def delete_subject(self, subject_id: str) -> None: ...

    async def send_password_reset(self, email: str) -> None: ...

    async def send_email_verification(self, subject_id: str) -> None: ...

    async def confirm_email_verification(self, code: str) -> Subject: ...

    async def close(self) -> None: ...


class SubjectPayload(BaseModel):
    """Wire shape of a subject as returned by the provider."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    display_name: Optional[str] = None
    email_verified: bool = False
    claims: Dict[str, Any] = Field(default_factory=dict)

    def to_subject(self) -> Subject:
        return Subject(
            id=self.id,
            email=self.email,
            display_name=self.display_name,
            email_verified=self.email_verified,
            claims=CustomClaims.from_provider(self.claims),
        )


def _parse_subject(data: Any) -> Subject:
    if isinstance(data, dict) and isinstance(data.get("subject"), dict):
        data = data["subject"]
    try:
        return SubjectPayload.model_validate(data).to_subject()
    except (PydanticValidationError, ValidationError) as exc:
        logger.error("identity_provider_invalid_subject", error=str(exc))
        raise ProviderUnavailable("identity provider returned an invalid subject") from exc


class HttpIdentityProvider:
    """REST client for an external identity provider.

    Transport failures, timeouts and 5xx responses surface as
    :class:`ProviderUnavailable`; retry policy belongs to the caller.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpIdentityProvider":
        return cls(
            settings.identity_provider_url or "",
            api_key=settings.identity_provider_api_key,
            timeout_seconds=settings.identity_provider_timeout_seconds,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds, connect=min(self.timeout_seconds, 5.0)),
                headers=headers,
                follow_redirects=False,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: Optional[dict] = None,
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=json_body)
        except httpx.TimeoutException as exc:
            logger.error("identity_provider_timeout", operation=operation, error=str(exc))
            raise ProviderUnavailable("identity provider timed out") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "identity_provider_transport_error",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ProviderUnavailable() from exc
        if response.status_code >= 500:
            logger.error(
                "identity_provider_server_error",
                operation=operation,
                status_code=response.status_code,
            )
            raise ProviderUnavailable()
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderUnavailable("identity provider returned invalid JSON") from exc

    @staticmethod
    def _error_code(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict):
                return error.get("code")
            if isinstance(error, str):
                return error
        return None

    def _unexpected(self, response: httpx.Response, operation: str) -> ProviderUnavailable:
        logger.error(
            "identity_provider_unexpected_status",
            operation=operation,
            status_code=response.status_code,
        )
        return ProviderUnavailable()

    async def verify_credentials(self, email: str, password: str) -> Subject:
        response = await self._request(
            "POST",
            "/v1/credentials:verify",
            operation="verify_credentials",
            json_body={"email": email, "password": password},
        )
        if response.status_code in (400, 401, 403, 404):
            raise InvalidCredentials()
        if response.status_code != 200:
            raise self._unexpected(response, "verify_credentials")
        return _parse_subject(self._json(response))

    async def create_subject(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> Subject:
        response = await self._request(
            "POST",
            "/v1/subjects",
            operation="create_subject",
            json_body={"email": email, "password": password, "display_name": display_name},
        )
        if response.status_code == 409:
            raise ConflictError()
        if response.status_code in (400, 422):
            raise ValidationError(detail={"provider_code": self._error_code(response)})
        if response.status_code not in (200, 201):
            raise self._unexpected(response, "create_subject")
        return _parse_subject(self._json(response))

    async def get_subject(self, subject_id: str) -> Subject:
        response = await self._request(
            "GET", f"/v1/subjects/{subject_id}", operation="get_subject"
        )
        if response.status_code == 404:
            raise NotFoundError("subject not found")
        if response.status_code != 200:
            raise self._unexpected(response, "get_subject")
        return _parse_subject(self._json(response))

    async def delete_subject(self, subject_id: str) -> None:
        response = await self._request(
            "DELETE", f"/v1/subjects/{subject_id}", operation="delete_subject"
        )
        if response.status_code == 404:
            raise NotFoundError("subject not found")
        if response.status_code not in (200, 202, 204):
            raise self._unexpected(response, "delete_subject")

    async def mint_assertion(self, subject: Subject) -> str:
        response = await self._request(
            "POST",
            "/v1/assertions",
            operation="mint_assertion",
            json_body={"subject_id": subject.id},
        )
        if response.status_code not in (200, 201):
            raise self._unexpected(response, "mint_assertion")
        body = self._json(response)
        assertion = body.get("assertion") if isinstance(body, dict) else None
        if not isinstance(assertion, str) or not assertion:
            raise ProviderUnavailable("identity provider returned no assertion")
        return assertion

    async def verify_assertion(self, token: str) -> Subject:
        response = await self._request(
            "POST",
            "/v1/assertions:verify",
            operation="verify_assertion",
            json_body={"assertion": token},
        )
        if response.status_code in (400, 401, 403):
            if self._error_code(response) in ("assertion_expired", "token_expired"):
                raise TokenExpired()
            raise TokenInvalid()
        if response.status_code != 200:
            raise self._unexpected(response, "verify_assertion")
        return _parse_subject(self._json(response))

    async def set_claims(self, subject_id: str, claims: CustomClaims) -> None:
        response = await self._request(
            "PUT",
            f"/v1/subjects/{subject_id}/claims",
            operation="set_claims",
            json_body={"claims": claims.to_payload()},
        )
        if response.status_code == 404:
            raise NotFoundError("subject not found")
        if response.status_code in (400, 422):
            raise ValidationError("claims rejected by identity provider")
        if response.status_code not in (200, 204):
            raise self._unexpected(response, "set_claims")

    async def revoke_grants(self, subject_id: str) -> None:
        response = await self._request(
            "POST",
            f"/v1/subjects/{subject_id}:revokeGrants",
            operation="revoke_grants",
        )
        # Already gone is as good as revoked
        if response.status_code not in (200, 202, 204, 404):
            raise self._unexpected(response, "revoke_grants")

    async def send_password_reset(self, email: str) -> None:
        response = await self._request(
            "POST",
            "/v1/password-reset",
            operation="send_password_reset",
            json_body={"email": email},
        )
        # Unknown addresses are not an error; callers must not reveal them
        if response.status_code not in (200, 202, 204, 404):
            raise self._unexpected(response, "send_password_reset")

    async def send_email_verification(self, subject_id: str) -> None:
        response = await self._request(
            "POST",
            f"/v1/subjects/{subject_id}/email-verification",
            operation="send_email_verification",
        )
        if response.status_code == 404:
            raise NotFoundError("subject not found")
        if response.status_code not in (200, 202, 204):
            raise self._unexpected(response, "send_email_verification")

    async def confirm_email_verification(self, code: str) -> Subject:
        response = await self._request(
            "POST",
            "/v1/email-verification:confirm",
            operation="confirm_email_verification",
            json_body={"code": code},
        )
        if response.status_code in (400, 404, 410):
            raise ValidationError("invalid or expired verification code")
        if response.status_code != 200:
            raise self._unexpected(response, "confirm_email_verification")
        return _parse_subject(self._json(response))


class MemoryIdentityProvider:
    """In-process identity provider for development and tests.

    Passwords are hashed with argon2id. Assertions are short-lived HMAC-signed
    blobs, and verification or reset codes are single use. Outgoing "emails"
    are appended to :attr:`outbox` instead of being sent.
    """

    ASSERTION_TTL_SECONDS = 300
    CODE_TTL_SECONDS = 24 * 60 * 60

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self._assertion_secret = os.urandom(32)
        self._lock = threading.RLock()
        self._subjects: Dict[str, Subject] = {}
        self._password_hashes: Dict[str, str] = {}
        self._email_index: Dict[str, str] = {}
        self._grants_revoked: Dict[str, int] = {}
        self._codes: Dict[str, Tuple[str, str, float]] = {}
        self.outbox: List[Tuple[str, str, str]] = []
        # Callers can simulate an outage by setting this flag
        self.unavailable = False

    def _check_available(self) -> None:
        if self.unavailable:
            raise ProviderUnavailable()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def _issue_code(self, kind: str, subject_id: str) -> str:
        code = secrets.token_urlsafe(24)
        self._codes[code] = (kind, subject_id, self._clock() + self.CODE_TTL_SECONDS)
        return code

    def _consume_code(self, kind: str, code: str) -> Optional[str]:
        entry = self._codes.pop(code, None)
        if entry is None:
            return None
        entry_kind, subject_id, expires_at = entry
        if entry_kind != kind or expires_at <= self._clock():
            return None
        return subject_id

    async def create_subject(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> Subject:
        self._check_available()
        normalized = self._normalize_email(email)
        password_hash = self._hasher.hash(password)
        with self._lock:
            if normalized in self._email_index:
                raise ConflictError()
            subject = Subject(id=str(uuid.uuid4()), email=normalized, display_name=display_name)
            self._subjects[subject.id] = subject
            self._password_hashes[subject.id] = password_hash
            self._email_index[normalized] = subject.id
        logger.info("memory_provider_subject_created", subject_id=subject.id)
        return subject

    def _burn_verify(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(os.urandom(16).hex())
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    async def verify_credentials(self, email: str, password: str) -> Subject:
        self._check_available()
        with self._lock:
            subject_id = self._email_index.get(self._normalize_email(email))
            stored = self._password_hashes.get(subject_id) if subject_id else None
        if not subject_id or not stored:
            # Unknown emails still cost one argon2 verify
            self._burn_verify(password)
            raise InvalidCredentials()
        try:
            self._hasher.verify(stored, password)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            raise InvalidCredentials() from None
        with self._lock:
            return self._subjects[subject_id]

    async def get_subject(self, subject_id: str) -> Subject:
        self._check_available()
        with self._lock:
            subject = self._subjects.get(subject_id)
        if subject is None:
            raise NotFoundError("subject not found")
        return subject

    async def delete_subject(self, subject_id: str) -> None:
        self._check_available()
        with self._lock:
            subject = self._subjects.pop(subject_id, None)
            if subject is None:
                raise NotFoundError("subject not found")
            self._password_hashes.pop(subject_id, None)
            self._email_index.pop(subject.email, None)

    def _sign(self, payload: bytes) -> str:
        digest = hmac.new(self._assertion_secret, payload, hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).decode().rstrip("=")

    async def mint_assertion(self, subject: Subject) -> str:
        self._check_available()
        payload = json.dumps(
            {"sub": subject.id, "exp": self._clock() + self.ASSERTION_TTL_SECONDS},
            separators=(",", ":"),
        ).encode()
        body = base64.urlsafe_b64encode(payload).decode().rstrip("=")
        return f"{body}.{self._sign(payload)}"

    async def verify_assertion(self, token: str) -> Subject:
        self._check_available()
        try:
            body, signature = token.split(".")
            payload = base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
            data = json.loads(payload)
        except (ValueError, TypeError):
            raise TokenInvalid() from None
        if not hmac.compare_digest(self._sign(payload), signature):
            raise TokenInvalid()
        if not isinstance(data, dict) or not isinstance(data.get("exp"), (int, float)):
            raise TokenInvalid()
        if data["exp"] <= self._clock():
            raise TokenExpired()
        with self._lock:
            subject = self._subjects.get(data.get("sub"))
        if subject is None:
            raise TokenInvalid()
        return subject

    async def set_claims(self, subject_id: str, claims: CustomClaims) -> None:
        self._check_available()
        with self._lock:
            subject = self._subjects.get(subject_id)
            if subject is None:
                raise NotFoundError("subject not found")
            self._subjects[subject_id] = replace(subject, claims=claims)

    async def revoke_grants(self, subject_id: str) -> None:
        self._check_available()
        with self._lock:
            self._grants_revoked[subject_id] = self._grants_revoked.get(subject_id, 0) + 1

    def grants_revoked(self, subject_id: str) -> int:
        return self._grants_revoked.get(subject_id, 0)

    async def send_password_reset(self, email: str) -> None:
        self._check_available()
        normalized = self._normalize_email(email)
        with self._lock:
            subject_id = self._email_index.get(normalized)
            if subject_id is None:
                return
            code = self._issue_code("password_reset", subject_id)
            self.outbox.append(("password_reset", normalized, code))

    async def complete_password_reset(self, code: str, new_password: str) -> Subject:
        """Provider-side completion of a reset link; not part of the client protocol."""
        self._check_available()
        password_hash = self._hasher.hash(new_password)
        with self._lock:
            subject_id = self._consume_code("password_reset", code)
            if subject_id is None or subject_id not in self._subjects:
                raise ValidationError("invalid or expired reset code")
            self._password_hashes[subject_id] = password_hash
            return self._subjects[subject_id]

    async def send_email_verification(self, subject_id: str) -> None:
        self._check_available()
        with self._lock:
            subject = self._subjects.get(subject_id)
            if subject is None:
                raise NotFoundError("subject not found")
            code = self._issue_code("email_verification", subject_id)
            self.outbox.append(("email_verification", subject.email, code))

    async def confirm_email_verification(self, code: str) -> Subject:
        self._check_available()
        with self._lock:
            subject_id = self._consume_code("email_verification", code)
            subject = self._subjects.get(subject_id) if subject_id else None
            if subject is None:
                raise ValidationError("invalid or expired verification code")
            subject = replace(subject, email_verified=True)
            self._subjects[subject_id] = subject
            return subject

    async def close(self) -> None:
        return None
