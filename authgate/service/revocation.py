from __future__ import annotations

from typing import Optional

from authgate.logging import get_logger
from authgate.service.identity import IdentityProviderClient
from authgate.storage.sessions import SessionStore

logger = get_logger(__name__)


class RevocationService:
    """Single-session and whole-subject revocation."""

    def __init__(
        self,
        sessions: SessionStore,
        provider: IdentityProviderClient,
        *,
        revoke_provider_grants: bool = True,
    ) -> None:
        self.sessions = sessions
        self.provider = provider
        self.revoke_provider_grants = revoke_provider_grants

    async def revoke_session(self, session_id: str) -> bool:
        return await self.sessions.revoke(session_id, reason="logout")

    async def revoke_all(
        self, subject_id: str, *, revoke_provider_grants: Optional[bool] = None
    ) -> int:
        """Invalidate every session of ``subject_id``; returns the new floor.

        Each call advances the floor, so repeating it is harmless. The local
        floor is raised before the provider is contacted: a provider outage
        still leaves this service's sessions revoked.
        """
        floor = await self.sessions.revoke_all_for_subject(subject_id)
        also_provider = (
            self.revoke_provider_grants
            if revoke_provider_grants is None
            else revoke_provider_grants
        )
        if also_provider:
            await self.provider.revoke_grants(subject_id)
        logger.info(
            "subject_sessions_revoked",
            subject_id=subject_id,
            floor=floor,
            provider_grants_revoked=also_provider,
        )
        return floor
