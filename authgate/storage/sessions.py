from __future__ import annotations

import json
import math
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import SessionNotFound, SessionRevoked
from authgate.storage.common import (
    KeyValueBackend,
    session_key,
    subject_device_key,
    subject_floor_key,
)
from authgate.storage.errors import GenerationMismatch
from authgate.storage.models import Session, utc_from_timestamp

logger = get_logger(__name__)

# A lost compare-and-swap means another writer committed; the re-read settles it
MAX_CAS_ATTEMPTS = 8


class SessionStore:
    """Authoritative session records on top of a key-value backend.

    Mass revocation never enumerates sessions: each subject has a generation
    floor that only ever increases, and a session created below the current
    floor reads back as revoked.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        return utc_from_timestamp(self._clock())

    def _ttl_seconds(self, session: Session) -> int:
        remaining = (session.expires_at - self._now()).total_seconds()
        return max(1, math.ceil(remaining))

    @staticmethod
    def _dump(session: Session) -> str:
        return json.dumps(session.to_dict(), separators=(",", ":"), sort_keys=True)

    @staticmethod
    def _load(raw: str) -> Session:
        return Session.from_dict(json.loads(raw))

    async def subject_floor(self, subject_id: str) -> int:
        raw = await self.backend.get(subject_floor_key(subject_id))
        return int(raw) if raw else 0

    async def create(
        self,
        subject_id: str,
        *,
        device_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        claims: Optional[Dict[str, Any]] = None,
    ) -> Session:
        now = self._now()
        floor = await self.subject_floor(subject_id)
        session = Session.new(
            subject_id,
            now=now,
            expires_at=now + timedelta(seconds=self.settings.session_max_lifetime_seconds),
            subject_epoch=floor,
            device_id=device_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
            claims=claims,
        )
        ttl = self._ttl_seconds(session)
        await self.backend.set(session_key(session.id), self._dump(session), ttl_seconds=ttl)

        # One live session per (subject, device)
        if device_id:
            pointer = subject_device_key(subject_id, device_id)
            previous_id = await self.backend.get_and_set(pointer, session.id, ttl_seconds=ttl)
            if previous_id and previous_id != session.id:
                await self.revoke(previous_id, reason="device_replaced")

        logger.info(
            "session_created",
            session_id=session.id,
            subject_id=subject_id,
            device_id=device_id,
            subject_epoch=floor,
        )
        return session

    async def _read(self, session_id: str) -> tuple[Optional[str], Optional[Session]]:
        raw = await self.backend.get(session_key(session_id))
        if raw is None:
            return None, None
        session = self._load(raw)
        if session.expires_at <= self._now():
            return None, None
        return raw, session

    async def get(self, session_id: str) -> Optional[Session]:
        _, session = await self._read(session_id)
        if session is None:
            return None
        if not session.revoked:
            floor = await self.subject_floor(session.subject_id)
            if session.subject_epoch < floor:
                return session.revoke(self._now())
        return session

    async def rotate(self, session_id: str, expected_generation: int) -> Session:
        """Advance the session generation if it still equals ``expected_generation``.

        Exactly one caller wins for any given generation; the losers see
        :class:`GenerationMismatch`.
        """
        for _ in range(MAX_CAS_ATTEMPTS):
            raw, session = await self._read(session_id)
            if session is None:
                raise SessionNotFound()
            if session.revoked:
                raise SessionRevoked()
            if session.subject_epoch < await self.subject_floor(session.subject_id):
                raise SessionRevoked()
            if session.generation != expected_generation:
                raise GenerationMismatch(session_id, expected_generation, session.generation)
            rotated = session.rotated(self._now())
            if await self.backend.compare_and_swap(
                session_key(session_id),
                raw,
                self._dump(rotated),
                ttl_seconds=self._ttl_seconds(rotated),
            ):
                logger.info(
                    "session_rotated",
                    session_id=session_id,
                    generation=rotated.generation,
                )
                return rotated
        logger.warning("session_rotate_contention", session_id=session_id)
        raise GenerationMismatch(session_id, expected_generation, -1)

    async def revoke(self, session_id: str, *, reason: str = "logout") -> bool:
        """Mark a session revoked. Returns False when it does not exist."""
        for _ in range(MAX_CAS_ATTEMPTS):
            raw, session = await self._read(session_id)
            if session is None:
                return False
            if session.revoked:
                return True
            revoked = session.revoke(self._now())
            if await self.backend.compare_and_swap(
                session_key(session_id),
                raw,
                self._dump(revoked),
                ttl_seconds=self._ttl_seconds(revoked),
            ):
                logger.info(
                    "session_revoked",
                    session_id=session_id,
                    subject_id=session.subject_id,
                    reason=reason,
                )
                return True
        logger.warning("session_revoke_contention", session_id=session_id)
        return False

    async def revoke_all_for_subject(self, subject_id: str) -> int:
        """Raise the subject floor above every existing session; returns the new floor."""
        floor = await self.backend.incr(subject_floor_key(subject_id))
        logger.info("subject_floor_advanced", subject_id=subject_id, floor=floor)
        return floor
