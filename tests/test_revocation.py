"""Single-session and whole-subject revocation."""

import pytest

from authgate.service.errors import ProviderUnavailable, TokenRevoked
from authgate.service.revocation import RevocationService


class TestRevokeAll:
    async def test_revoke_all_is_idempotent_and_floor_increases(self, stack):
        session = await stack.sessions.create("subject-1")

        first = await stack.revocation.revoke_all("subject-1")
        second = await stack.revocation.revoke_all("subject-1")

        assert second > first
        assert (await stack.sessions.get(session.id)).revoked

    async def test_provider_grants_are_revoked_by_default(self, stack):
        await stack.revocation.revoke_all("subject-1")
        await stack.revocation.revoke_all("subject-1")
        assert stack.provider.grants_revoked("subject-1") == 2

    async def test_provider_grants_can_be_skipped_per_call(self, stack):
        await stack.revocation.revoke_all("subject-1", revoke_provider_grants=False)
        assert stack.provider.grants_revoked("subject-1") == 0

    async def test_provider_grants_disabled_by_setting(self, stack):
        revocation = RevocationService(
            stack.sessions, stack.provider, revoke_provider_grants=False
        )
        await revocation.revoke_all("subject-1")
        assert stack.provider.grants_revoked("subject-1") == 0

    async def test_local_floor_survives_provider_outage(self, stack):
        session = await stack.sessions.create("subject-1")
        stack.provider.unavailable = True

        with pytest.raises(ProviderUnavailable):
            await stack.revocation.revoke_all("subject-1")

        assert (await stack.sessions.get(session.id)).revoked

    async def test_outstanding_access_tokens_are_rejected(self, stack):
        first = await stack.sessions.create("subject-1")
        second = await stack.sessions.create("subject-1")
        tokens = [stack.issuer.issue(None, s).access_token for s in (first, second)]

        await stack.revocation.revoke_all("subject-1")

        for token in tokens:
            with pytest.raises(TokenRevoked):
                await stack.verifier.authenticate(token)


class TestRevokeSession:
    async def test_revoke_session_leaves_siblings_alone(self, stack):
        first = await stack.sessions.create("subject-1")
        second = await stack.sessions.create("subject-1")

        assert await stack.revocation.revoke_session(first.id)

        assert (await stack.sessions.get(first.id)).revoked
        assert not (await stack.sessions.get(second.id)).revoked

    async def test_revoke_unknown_session(self, stack):
        assert not await stack.revocation.revoke_session("missing")
