"""JWT minting and verification.

Tokens are compact HS256 JWTs built with :mod:`hmac`. Access tokens are
stateless and verified locally; refresh tokens carry the session id and
generation they were minted for so the refresh flow can detect reuse.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Optional, Union

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.claims import CustomClaims
from authgate.service.errors import (
    SessionRevoked,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
)
from authgate.service.signing import SigningKeyProvider
from authgate.storage.models import (
    AccessClaims,
    RefreshClaims,
    Session,
    Subject,
    TokenPair,
    utc_from_timestamp,
)

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: bytes, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
    )


def encode_jwt(payload: dict[str, Any], *, kid: str, secret: bytes) -> str:
    header = {"alg": "HS256", "typ": "JWT", "kid": kid}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(secret, signing_input)}"


class TokenIssuer:
    """Mints access/refresh pairs for a live session. Writes nothing."""

    def __init__(
        self,
        settings: Settings,
        keys: SigningKeyProvider,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.keys = keys
        self._clock = clock

    def issue(
        self,
        subject: Union[Subject, CustomClaims, dict, None],
        session: Session,
    ) -> TokenPair:
        if session.revoked:
            raise SessionRevoked()
        if isinstance(subject, Subject):
            claims = subject.claims.to_payload()
        elif isinstance(subject, CustomClaims):
            claims = subject.to_payload()
        elif subject is None:
            claims = dict(session.claims)
        else:
            claims = CustomClaims.from_provider(subject).to_payload()
        key = self.keys.current()

        now = int(self._clock())
        access_exp = now + self.settings.access_token_ttl_seconds
        refresh_exp = now + self.settings.refresh_token_ttl_seconds
        common = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": session.subject_id,
            "sid": session.id,
            "sep": session.subject_epoch,
            "iat": now,
        }
        access_payload = {
            **common,
            "exp": access_exp,
            "jti": str(uuid.uuid4()),
            "typ": ACCESS_TOKEN_TYPE,
            "claims": claims,
        }
        refresh_payload = {
            **common,
            "gen": session.generation,
            "exp": refresh_exp,
            "jti": str(uuid.uuid4()),
            "typ": REFRESH_TOKEN_TYPE,
        }
        return TokenPair(
            access_token=encode_jwt(access_payload, kid=key.kid, secret=key.secret),
            refresh_token=encode_jwt(refresh_payload, kid=key.kid, secret=key.secret),
            access_expires_at=utc_from_timestamp(access_exp),
            refresh_expires_at=utc_from_timestamp(refresh_exp),
        )


class TokenVerifier:
    """Validates tokens minted by :class:`TokenIssuer`.

    Checks run in a fixed order: structure, expiry, key id and signature,
    then issuer, audience, type and claim shape. An expired token is always
    reported as :class:`TokenExpired`, whether or not its signature is valid.
    """

    def __init__(
        self,
        settings: Settings,
        keys: SigningKeyProvider,
        *,
        sessions=None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.keys = keys
        self.sessions = sessions
        self._clock = clock
        self._leeway = timedelta(seconds=settings.clock_skew_seconds)

    def _decode(self, token: str, expected_type: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenInvalid()
        # Headers and cookies arrive latin-1 decoded; a valid JWT is pure ASCII
        if not token.isascii():
            raise TokenInvalid()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid() from None
        try:
            header = json.loads(_decode_segment(header_b64))
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_decode_failed", token_type=expected_type)
            raise TokenInvalid() from None
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise TokenInvalid()

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise TokenInvalid()
        if exp <= self._clock() - self._leeway.total_seconds():
            raise TokenExpired()

        # Reject anything but HS256 to avoid algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalid()
        key = self.keys.get(header.get("kid"))
        if key is None:
            logger.warning("jwt_unknown_kid", kid=header.get("kid"))
            raise TokenInvalid()
        expected_sig = _sign(key.secret, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalid()

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalid()
        if payload.get("typ") != expected_type:
            raise TokenInvalid()
        for name in ("sub", "sid", "jti"):
            if not isinstance(payload.get(name), str) or not payload[name]:
                raise TokenInvalid()
        for name in ("sep", "iat"):
            value = payload.get(name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise TokenInvalid()
        return payload

    def verify(self, token: str) -> AccessClaims:
        payload = self._decode(token, ACCESS_TOKEN_TYPE)
        claims = payload.get("claims") or {}
        if not isinstance(claims, dict):
            raise TokenInvalid()
        return AccessClaims(
            subject_id=payload["sub"],
            session_id=payload["sid"],
            subject_epoch=payload["sep"],
            issued_at=payload["iat"],
            expires_at=int(payload["exp"]),
            token_id=payload["jti"],
            claims=claims,
        )

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode(token, REFRESH_TOKEN_TYPE)
        generation = payload.get("gen")
        if isinstance(generation, bool) or not isinstance(generation, int) or generation < 0:
            raise TokenInvalid()
        return RefreshClaims(
            subject_id=payload["sub"],
            session_id=payload["sid"],
            generation=generation,
            subject_epoch=payload["sep"],
            issued_at=payload["iat"],
            expires_at=int(payload["exp"]),
            token_id=payload["jti"],
        )

    async def authenticate(self, token: str) -> AccessClaims:
        """Verify an access token and, when enabled, consult revocation state."""
        claims = self.verify(token)
        if not self.settings.check_revocation_on_verify or self.sessions is None:
            return claims
        floor = await self.sessions.subject_floor(claims.subject_id)
        if claims.subject_epoch < floor:
            logger.info(
                "access_token_revoked",
                reason="subject_floor",
                session_id=claims.session_id,
            )
            raise TokenRevoked()
        session = await self.sessions.get(claims.session_id)
        if session is None or session.revoked or session.subject_id != claims.subject_id:
            logger.info(
                "access_token_revoked",
                reason="session",
                session_id=claims.session_id,
            )
            raise TokenRevoked()
        return claims
