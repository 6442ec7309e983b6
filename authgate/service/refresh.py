"""Refresh-token rotation.

Each exchange walks PRESENTED -> VALIDATED -> ROTATED, or ends in REJECTED.
The session generation is the single-use guard: ``SessionStore.rotate`` lets
exactly one caller advance a given generation, and a refresh token minted
for an older generation is treated as stolen.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional

from authgate.logging import get_logger
from authgate.service.errors import (
    AuthenticationError,
    NotFoundError,
    RefreshSuperseded,
    ReplayDetected,
    SessionNotFound,
    SessionRevoked,
)
from authgate.service.identity import IdentityProviderClient
from authgate.service.tokens import TokenIssuer, TokenVerifier
from authgate.storage.errors import GenerationMismatch
from authgate.storage.models import RefreshClaims, Session, TokenPair, utc_from_timestamp
from authgate.storage.sessions import SessionStore

logger = get_logger(__name__)


class RefreshState(str, Enum):
    PRESENTED = "presented"
    VALIDATED = "validated"
    ROTATED = "rotated"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RefreshResult:
    session: Session
    tokens: TokenPair


class RefreshCoordinator:
    def __init__(
        self,
        sessions: SessionStore,
        issuer: TokenIssuer,
        verifier: TokenVerifier,
        provider: Optional[IdentityProviderClient] = None,
        *,
        reuse_grace_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sessions = sessions
        self.issuer = issuer
        self.verifier = verifier
        self.provider = provider
        self.reuse_grace = timedelta(seconds=max(0, reuse_grace_seconds))
        self._clock = clock

    def _log_state(self, state: RefreshState, **fields) -> None:
        log = logger.warning if state == RefreshState.REJECTED else logger.info
        log("refresh_state", state=state.value, **fields)

    async def _subject_claims(self, session: Session) -> Optional[dict]:
        """Fresh claims from the provider; None means keep the session snapshot."""
        if self.provider is None:
            return None
        try:
            subject = await self.provider.get_subject(session.subject_id)
        except NotFoundError:
            await self.sessions.revoke(session.id, reason="subject_deleted")
            raise SessionRevoked() from None
        return subject.claims.to_payload()

    def _within_grace(self, claims: RefreshClaims, current: Optional[Session]) -> bool:
        if not self.reuse_grace or current is None or current.revoked:
            return False
        if claims.generation != current.generation - 1:
            return False
        elapsed = utc_from_timestamp(self._clock()) - current.last_rotated_at
        return elapsed <= self.reuse_grace

    async def _handle_stale_generation(
        self, claims: RefreshClaims, exc: GenerationMismatch
    ) -> None:
        current = await self.sessions.get(claims.session_id)
        if self._within_grace(claims, current):
            self._log_state(
                RefreshState.REJECTED,
                reason="superseded",
                session_id=claims.session_id,
                presented_generation=claims.generation,
            )
            raise RefreshSuperseded()
        await self.sessions.revoke(claims.session_id, reason="replay")
        logger.warning(
            "refresh_replay_detected",
            session_id=claims.session_id,
            subject_id=claims.subject_id,
            presented_generation=exc.expected,
            current_generation=exc.actual,
        )
        self._log_state(RefreshState.REJECTED, reason="replay", session_id=claims.session_id)
        raise ReplayDetected()

    async def refresh(self, refresh_token: str, context=None) -> RefreshResult:
        request_id = getattr(context, "request_id", None)
        self._log_state(RefreshState.PRESENTED, request_id=request_id)
        try:
            claims = self.verifier.verify_refresh(refresh_token)
            session = await self.sessions.get(claims.session_id)
            if session is None:
                raise SessionNotFound()
            if session.subject_id != claims.subject_id:
                raise SessionNotFound()
            if session.revoked or claims.subject_epoch < session.subject_epoch:
                raise SessionRevoked()
            if claims.subject_epoch < await self.sessions.subject_floor(claims.subject_id):
                raise SessionRevoked()
            self._log_state(
                RefreshState.VALIDATED,
                session_id=session.id,
                generation=claims.generation,
                request_id=request_id,
            )
            fresh_claims = await self._subject_claims(session)

            try:
                rotated = await self.sessions.rotate(claims.session_id, claims.generation)
            except GenerationMismatch as exc:
                await self._handle_stale_generation(claims, exc)
                raise  # pragma: no cover - the handler always raises
        except AuthenticationError as exc:
            if not isinstance(exc, (ReplayDetected, RefreshSuperseded)):
                self._log_state(
                    RefreshState.REJECTED,
                    reason=exc.error_code,
                    request_id=request_id,
                )
            raise

        # Committed: everything below is synchronous
        tokens = self.issuer.issue(fresh_claims, rotated)
        self._log_state(
            RefreshState.ROTATED,
            session_id=rotated.id,
            generation=rotated.generation,
            request_id=request_id,
        )
        return RefreshResult(session=rotated, tokens=tokens)
