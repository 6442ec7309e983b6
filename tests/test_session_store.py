"""Session store: creation, rotation, revocation and the subject floor."""

import asyncio

import pytest

from authgate.service.errors import SessionNotFound, SessionRevoked
from authgate.service.rate_limit import AUTH_POLICY
from authgate.storage.common import session_key
from authgate.storage.errors import GenerationMismatch


class TestCreate:
    async def test_new_session_starts_at_generation_zero(self, stack, clock):
        session = await stack.sessions.create(
            "subject-1", user_agent="pytest", ip_addr="10.0.0.1", claims={"role": "user"}
        )
        stored = await stack.sessions.get(session.id)

        assert stored.generation == 0
        assert stored.subject_epoch == 0
        assert not stored.revoked
        assert stored.user_agent == "pytest"
        assert stored.claims == {"role": "user"}
        lifetime = (stored.expires_at - stored.created_at).total_seconds()
        assert lifetime == stack.settings.session_max_lifetime_seconds

    async def test_unknown_session_is_none(self, stack):
        assert await stack.sessions.get("missing") is None

    async def test_session_expires_after_max_lifetime(self, stack, clock):
        session = await stack.sessions.create("subject-1")
        clock.advance(stack.settings.session_max_lifetime_seconds)
        assert await stack.sessions.get(session.id) is None

    async def test_same_device_replaces_previous_session(self, stack):
        first = await stack.sessions.create("subject-1", device_id="phone")
        second = await stack.sessions.create("subject-1", device_id="phone")
        other_device = await stack.sessions.create("subject-1", device_id="laptop")

        assert (await stack.sessions.get(first.id)).revoked
        assert not (await stack.sessions.get(second.id)).revoked
        assert not (await stack.sessions.get(other_device.id)).revoked

    async def test_concurrent_logins_on_one_device_leave_one_live_session(self, yielding_stack):
        sessions = yielding_stack.sessions

        created = await asyncio.gather(
            sessions.create("subject-1", device_id="phone"),
            sessions.create("subject-1", device_id="phone"),
        )

        stored = [await sessions.get(s.id) for s in created]
        assert sum(1 for s in stored if not s.revoked) == 1

    async def test_device_ids_are_scoped_per_subject(self, stack):
        mine = await stack.sessions.create("subject-1", device_id="phone")
        await stack.sessions.create("subject-2", device_id="phone")
        assert not (await stack.sessions.get(mine.id)).revoked


class TestRotate:
    async def test_rotate_advances_generation(self, stack, clock):
        session = await stack.sessions.create("subject-1")
        clock.advance(5)
        rotated = await stack.sessions.rotate(session.id, 0)

        assert rotated.generation == 1
        assert rotated.last_rotated_at > session.last_rotated_at
        assert (await stack.sessions.get(session.id)).generation == 1

    async def test_stale_generation_is_rejected(self, stack):
        session = await stack.sessions.create("subject-1")
        await stack.sessions.rotate(session.id, 0)

        with pytest.raises(GenerationMismatch) as excinfo:
            await stack.sessions.rotate(session.id, 0)
        assert excinfo.value.expected == 0
        assert excinfo.value.actual == 1

    async def test_concurrent_rotations_have_exactly_one_winner(self, yielding_stack):
        stack = yielding_stack
        session = await stack.sessions.create("subject-1")

        results = await asyncio.gather(
            *(stack.sessions.rotate(session.id, 0) for _ in range(10)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, GenerationMismatch)]
        assert len(winners) == 1
        assert len(losers) == 9
        assert (await stack.sessions.get(session.id)).generation == 1

    async def test_rotate_missing_session(self, stack):
        with pytest.raises(SessionNotFound):
            await stack.sessions.rotate("missing", 0)

    async def test_rotate_revoked_session(self, stack):
        session = await stack.sessions.create("subject-1")
        await stack.sessions.revoke(session.id)
        with pytest.raises(SessionRevoked):
            await stack.sessions.rotate(session.id, 0)

    async def test_rotate_below_floor_is_revoked(self, stack):
        session = await stack.sessions.create("subject-1")
        await stack.sessions.revoke_all_for_subject("subject-1")
        with pytest.raises(SessionRevoked):
            await stack.sessions.rotate(session.id, 0)

    async def test_lost_compare_and_swap_rereads_record(self, stack):
        session = await stack.sessions.create("subject-1")
        original_cas = stack.backend.compare_and_swap
        calls = []

        async def racing_cas(key, expected, new, *, ttl_seconds=None):
            # Another writer rotates between our read and our swap
            if not calls:
                calls.append(key)
                await original_cas(
                    key,
                    expected,
                    stack.sessions._dump(session.rotated(session.created_at)),
                    ttl_seconds=ttl_seconds,
                )
            return await original_cas(key, expected, new, ttl_seconds=ttl_seconds)

        stack.backend.compare_and_swap = racing_cas
        with pytest.raises(GenerationMismatch):
            await stack.sessions.rotate(session.id, 0)
        assert calls == [session_key(session.id)]


class TestRevoke:
    async def test_revoke_is_idempotent(self, stack, clock):
        session = await stack.sessions.create("subject-1")
        assert await stack.sessions.revoke(session.id)
        first = await stack.sessions.get(session.id)
        clock.advance(10)
        assert await stack.sessions.revoke(session.id)
        second = await stack.sessions.get(session.id)
        assert first.revoked_at == second.revoked_at

    async def test_revoke_missing_session_returns_false(self, stack):
        assert not await stack.sessions.revoke("missing")

    async def test_floor_revokes_every_existing_session(self, stack):
        sessions = [await stack.sessions.create("subject-1") for _ in range(3)]
        other = await stack.sessions.create("subject-2")

        floor = await stack.sessions.revoke_all_for_subject("subject-1")

        assert floor == 1
        for session in sessions:
            assert (await stack.sessions.get(session.id)).revoked
        assert not (await stack.sessions.get(other.id)).revoked

    async def test_sessions_created_after_floor_are_live(self, stack):
        await stack.sessions.revoke_all_for_subject("subject-1")
        fresh = await stack.sessions.create("subject-1")
        assert fresh.subject_epoch == 1
        assert not (await stack.sessions.get(fresh.id)).revoked

    async def test_floor_strictly_increases(self, stack):
        floors = [await stack.sessions.revoke_all_for_subject("subject-1") for _ in range(3)]
        assert floors == [1, 2, 3]
        assert await stack.sessions.subject_floor("subject-1") == 3


class TestMemoryBackendSweep:
    async def test_expired_sessions_and_rate_windows_are_swept(self, stack, clock):
        for i in range(100):
            await stack.sessions.create(f"subject-{i}", device_id="phone")
            await stack.rate_limiter.check(AUTH_POLICY, f"198.51.100.{i}")

        clock.advance(stack.settings.session_max_lifetime_seconds + 3600)
        await stack.sessions.create("subject-new")
        await stack.rate_limiter.check(AUTH_POLICY, "203.0.113.1")

        assert len(stack.backend._values) == 1
        assert len(stack.backend._expiry) == 1
        assert len(stack.backend._windows) == 1
        assert len(stack.backend._window_expiry) == 1

    async def test_unexpired_keys_survive_a_sweep(self, stack, clock):
        session = await stack.sessions.create("subject-1")
        clock.advance(120)
        await stack.sessions.create("subject-2")
        assert await stack.sessions.get(session.id) is not None
