"""Unit tests for token minting, verification and signing keys."""

import json

import pytest

from authgate.service.errors import (
    SessionRevoked,
    SigningError,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
)
from authgate.service.signing import SigningKeyProvider
from authgate.service.tokens import (
    TokenIssuer,
    TokenVerifier,
    _decode_segment,
    _encode_segment,
    encode_jwt,
)
from authgate.storage.models import Subject
from authgate.service.claims import CustomClaims


def _payload(token: str) -> dict:
    return json.loads(_decode_segment(token.split(".")[1]))


def _header(token: str) -> dict:
    return json.loads(_decode_segment(token.split(".")[0]))


class TestIssue:
    """TokenIssuer.issue"""

    async def test_access_token_round_trips_claims(self, stack):
        session = await stack.sessions.create("subject-1")
        subject = Subject(
            id="subject-1",
            email="a@example.com",
            claims=CustomClaims.from_provider({"role": "admin", "tier": "gold"}),
        )
        pair = stack.issuer.issue(subject, session)

        claims = stack.verifier.verify(pair.access_token)
        assert claims.subject_id == "subject-1"
        assert claims.session_id == session.id
        assert claims.subject_epoch == 0
        assert claims.custom_claims.role == "admin"
        assert claims.custom_claims.extra == {"tier": "gold"}

    async def test_expiries_follow_configured_ttls(self, stack, clock):
        session = await stack.sessions.create("subject-1")
        pair = stack.issuer.issue(None, session)

        access = _payload(pair.access_token)
        refresh = _payload(pair.refresh_token)
        assert access["exp"] - access["iat"] == stack.settings.access_token_ttl_seconds
        assert refresh["exp"] - refresh["iat"] == stack.settings.refresh_token_ttl_seconds
        assert access["iat"] == int(clock.now)
        assert pair.token_type == "bearer"

    async def test_refresh_token_binds_session_generation(self, stack):
        session = await stack.sessions.create("subject-1")
        pair = stack.issuer.issue(None, session)

        refresh = stack.verifier.verify_refresh(pair.refresh_token)
        assert refresh.session_id == session.id
        assert refresh.generation == session.generation == 0
        assert refresh.subject_epoch == session.subject_epoch

    async def test_each_token_has_unique_jti(self, stack):
        session = await stack.sessions.create("subject-1")
        first = stack.issuer.issue(None, session)
        second = stack.issuer.issue(None, session)
        assert _payload(first.access_token)["jti"] != _payload(second.access_token)["jti"]

    async def test_revoked_session_cannot_be_issued(self, stack):
        session = await stack.sessions.create("subject-1")
        with pytest.raises(SessionRevoked):
            stack.issuer.issue(None, session.revoke(session.created_at))

    async def test_missing_signing_key_raises(self, stack, settings, clock):
        session = await stack.sessions.create("subject-1")
        issuer = TokenIssuer(settings, SigningKeyProvider(secret=None), clock=clock)
        with pytest.raises(SigningError):
            issuer.issue(None, session)

    async def test_header_carries_key_id(self, stack):
        session = await stack.sessions.create("subject-1")
        pair = stack.issuer.issue(None, session)
        header = _header(pair.access_token)
        assert header["alg"] == "HS256"
        assert header["kid"] == stack.keys.current().kid


class TestVerify:
    """TokenVerifier.verify and verify_refresh"""

    async def test_expired_token_reports_expired(self, stack, clock):
        session = await stack.sessions.create("subject-1")
        pair = stack.issuer.issue(None, session)
        clock.advance(stack.settings.access_token_ttl_seconds + 1)
        with pytest.raises(TokenExpired):
            stack.verifier.verify(pair.access_token)

    async def test_expired_token_with_bad_signature_still_reports_expired(self, stack, clock):
        session = await stack.sessions.create("subject-1")
        pair = stack.issuer.issue(None, session)
        header, payload, _ = pair.access_token.split(".")
        forged = f"{header}.{payload}.{_encode_segment(b'not-a-signature')}"
        clock.advance(stack.settings.access_token_ttl_seconds + 1)
        with pytest.raises(TokenExpired):
            stack.verifier.verify(forged)

    async def test_tampered_payload_is_invalid(self, stack):
        session = await stack.sessions.create("subject-1")
        pair = stack.issuer.issue(None, session)
        header, payload, sig = pair.access_token.split(".")
        data = json.loads(_decode_segment(payload))
        data["sub"] = "someone-else"
        tampered = _encode_segment(json.dumps(data).encode())
        with pytest.raises(TokenInvalid):
            stack.verifier.verify(f"{header}.{tampered}.{sig}")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.@@@.###"])
    def test_malformed_tokens_are_invalid(self, stack, token):
        with pytest.raises(TokenInvalid):
            stack.verifier.verify(token)

    async def test_non_ascii_signature_is_invalid(self, stack):
        session = await stack.sessions.create("subject-1")
        pair = stack.issuer.issue(None, session)
        header, payload, _ = pair.access_token.split(".")
        forged = f"{header}.{payload}.éé"

        with pytest.raises(TokenInvalid):
            stack.verifier.verify(forged)
        with pytest.raises(TokenInvalid):
            stack.verifier.verify_refresh(forged)
        assert not await stack.auth.logout(access_token=forged, refresh_token=forged)

    def test_wrong_audience_is_invalid(self, stack, clock):
        key = stack.keys.current()
        token = encode_jwt(
            {
                "iss": stack.settings.jwt_issuer,
                "aud": "another-service",
                "sub": "s",
                "sid": "x",
                "sep": 0,
                "iat": int(clock.now),
                "exp": int(clock.now) + 60,
                "jti": "j",
                "typ": "access",
            },
            kid=key.kid,
            secret=key.secret,
        )
        with pytest.raises(TokenInvalid):
            stack.verifier.verify(token)

    def test_unsigned_algorithm_is_rejected(self, stack, clock):
        header = _encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        payload = _encode_segment(
            json.dumps(
                {
                    "iss": stack.settings.jwt_issuer,
                    "aud": stack.settings.jwt_audience,
                    "sub": "s",
                    "sid": "x",
                    "sep": 0,
                    "iat": int(clock.now),
                    "exp": int(clock.now) + 60,
                    "jti": "j",
                    "typ": "access",
                }
            ).encode()
        )
        with pytest.raises(TokenInvalid):
            stack.verifier.verify(f"{header}.{payload}.")

    async def test_token_types_are_not_interchangeable(self, stack):
        session = await stack.sessions.create("subject-1")
        pair = stack.issuer.issue(None, session)
        with pytest.raises(TokenInvalid):
            stack.verifier.verify(pair.refresh_token)
        with pytest.raises(TokenInvalid):
            stack.verifier.verify_refresh(pair.access_token)

    async def test_token_signed_with_other_secret_is_invalid(self, stack, clock, make_settings):
        session = await stack.sessions.create("subject-1")
        other = make_settings(jwt_secret="another-secret-that-is-long-enough-000000")
        foreign = TokenIssuer(other, SigningKeyProvider.from_settings(other), clock=clock)
        pair = foreign.issue(None, session)
        with pytest.raises(TokenInvalid):
            stack.verifier.verify(pair.access_token)

    async def test_clock_skew_leeway_accepts_just_expired_token(self, clock, make_settings, make_stack):
        settings = make_settings(clock_skew_seconds=30)
        stack = make_stack(settings)
        session = await stack.sessions.create("subject-1")
        pair = stack.issuer.issue(None, session)
        clock.advance(settings.access_token_ttl_seconds + 10)
        assert stack.verifier.verify(pair.access_token).session_id == session.id
        clock.advance(30)
        with pytest.raises(TokenExpired):
            stack.verifier.verify(pair.access_token)


class TestAuthenticate:
    """TokenVerifier.authenticate with revocation checks"""

    async def test_revoke_all_rejects_outstanding_access_token(self, stack):
        session = await stack.sessions.create("subject-1")
        pair = stack.issuer.issue(None, session)
        assert (await stack.verifier.authenticate(pair.access_token)).session_id == session.id

        await stack.sessions.revoke_all_for_subject("subject-1")
        with pytest.raises(TokenRevoked):
            await stack.verifier.authenticate(pair.access_token)

    async def test_logged_out_session_rejects_access_token(self, stack):
        session = await stack.sessions.create("subject-1")
        pair = stack.issuer.issue(None, session)
        await stack.sessions.revoke(session.id)
        with pytest.raises(TokenRevoked):
            await stack.verifier.authenticate(pair.access_token)

    async def test_without_revocation_checks_token_lives_until_expiry(
        self, clock, make_settings, make_stack
    ):
        settings = make_settings(check_revocation_on_verify=False)
        stack = make_stack(settings)
        session = await stack.sessions.create("subject-1")
        pair = stack.issuer.issue(None, session)
        await stack.sessions.revoke_all_for_subject("subject-1")

        assert (await stack.verifier.authenticate(pair.access_token)).subject_id == "subject-1"
        clock.advance(settings.access_token_ttl_seconds)
        with pytest.raises(TokenExpired):
            await stack.verifier.authenticate(pair.access_token)


class TestSigningKeyProvider:
    """Signing material loading and rotation"""

    def test_secret_file_wins_over_env_secret(self, tmp_path):
        secret_file = tmp_path / "jwt.key"
        secret_file.write_text("file-secret-value-that-is-long-enough-1234\n")
        keys = SigningKeyProvider(secret="env-secret", secret_file=str(secret_file))
        assert keys.current().secret == b"file-secret-value-that-is-long-enough-1234"

    def test_unreadable_secret_file_leaves_no_key(self, tmp_path):
        keys = SigningKeyProvider(secret_file=str(tmp_path / "missing.key"))
        assert not keys.loaded
        with pytest.raises(SigningError):
            keys.current()

    async def test_reload_keeps_previous_key_for_verification(
        self, stack, settings, clock, tmp_path
    ):
        secret_file = tmp_path / "jwt.key"
        secret_file.write_text("first-secret-value-that-is-long-enough-00")
        keys = SigningKeyProvider(secret_file=str(secret_file))
        
        issuer = TokenIssuer(settings, keys, clock=clock)
        verifier = TokenVerifier(settings, keys, clock=clock)
        session = await stack.sessions.create("subject-1")
        old_pair = issuer.issue(None, session)
        old_kid = keys.current().kid

        secret_file.write_text("second-secret-value-that-is-long-enough-0")
        new_kid = keys.reload()

        assert new_kid != old_kid
        assert verifier.verify(old_pair.access_token).session_id == session.id
        new_pair = issuer.issue(None, session)
        assert _header(new_pair.access_token)["kid"] == new_kid

    async def test_keys_beyond_retention_stop_verifying(self, stack, settings, clock, tmp_path):
        secret_file = tmp_path / "jwt.key"
        secret_file.write_text("secret-0-value-that-is-long-enough-0000000")
        keys = SigningKeyProvider(secret_file=str(secret_file), max_previous_keys=1)
        issuer = TokenIssuer(settings, keys, clock=clock)
        verifier = TokenVerifier(settings, keys, clock=clock)
        session = await stack.sessions.create("subject-1")
        oldest = issuer.issue(None, session)

        for index in (1, 2):
            secret_file.write_text(f"secret-{index}-value-that-is-long-enough-0000000")
            keys.reload()

        with pytest.raises(TokenInvalid):
            verifier.verify(oldest.access_token)

    def test_reload_with_empty_file_keeps_current_key(self, tmp_path):
        secret_file = tmp_path / "jwt.key"
        secret_file.write_text("stable-secret-value-that-is-long-enough-0")
        keys = SigningKeyProvider(secret_file=str(secret_file))
        kid = keys.current().kid
        secret_file.write_text("")
        assert keys.reload() == kid
        assert keys.current().kid == kid
