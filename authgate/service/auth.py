from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.claims import CustomClaims
from authgate.service.errors import (
    AuthenticationError,
    ConflictError,
    ValidationError,
)
from authgate.service.identity import IdentityProviderClient
from authgate.service.refresh import RefreshCoordinator, RefreshResult
from authgate.service.revocation import RevocationService
from authgate.service.signing import SigningKeyProvider
from authgate.service.tokens import TokenIssuer, TokenVerifier
from authgate.storage.models import Session, Subject, TokenPair
from authgate.storage.sessions import SessionStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Per-request facts gathered by the HTTP layer and passed down explicitly."""

    client_key: str
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None
    request_id: Optional[str] = None


@dataclass
class AuthContext:
    subject_id: str
    session_id: str
    token_id: str
    claims: CustomClaims = field(default_factory=CustomClaims)

    @property
    def role(self) -> Optional[str]:
        return self.claims.role

    def has_role(self, role: str) -> bool:
        return self.claims.has_role(role)


@dataclass(frozen=True)
class LoginResult:
    subject: Subject
    session: Session
    tokens: TokenPair


class AuthService:
    """Use-case façade the HTTP layer talks to.

    Credential checks are delegated to the identity provider; this service
    owns sessions, tokens and revocation.
    """

    def __init__(
        self,
        settings: Settings,
        provider: IdentityProviderClient,
        sessions: SessionStore,
        keys: SigningKeyProvider,
        issuer: TokenIssuer,
        verifier: TokenVerifier,
        refresher: RefreshCoordinator,
        revocation: RevocationService,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.sessions = sessions
        self.keys = keys
        self.issuer = issuer
        self.verifier = verifier
        self.refresher = refresher
        self.revocation = revocation

    async def _start_session(self, subject: Subject, context: RequestContext) -> LoginResult:
        session = await self.sessions.create(
            subject.id,
            device_id=context.device_id,
            user_agent=context.user_agent,
            ip_addr=context.ip_addr,
            claims=subject.claims.to_payload(),
        )
        tokens = self.issuer.issue(subject, session)
        return LoginResult(subject=subject, session=session, tokens=tokens)

    async def register(
        self,
        email: str,
        password: str,
        context: RequestContext,
        *,
        display_name: Optional[str] = None,
    ) -> LoginResult:
        try:
            subject = await self.provider.create_subject(email, password, display_name)
        except ConflictError:
            # Same response as any other rejected registration; no enumeration
            logger.info("register_rejected", reason="duplicate", request_id=context.request_id)
            raise ValidationError("registration failed") from None
        logger.info("subject_registered", subject_id=subject.id, request_id=context.request_id)
        return await self._start_session(subject, context)

    async def login(self, email: str, password: str, context: RequestContext) -> LoginResult:
        try:
            subject = await self.provider.verify_credentials(email, password)
        except AuthenticationError:
            logger.warning(
                "login_failed",
                client_key=context.client_key,
                request_id=context.request_id,
            )
            raise
        result = await self._start_session(subject, context)
        logger.info(
            "login_succeeded",
            subject_id=subject.id,
            session_id=result.session.id,
            request_id=context.request_id,
        )
        return result

    async def login_with_assertion(self, assertion: str, context: RequestContext) -> LoginResult:
        subject = await self.provider.verify_assertion(assertion)
        result = await self._start_session(subject, context)
        logger.info(
            "assertion_login_succeeded",
            subject_id=subject.id,
            session_id=result.session.id,
            request_id=context.request_id,
        )
        return result

    async def refresh(self, refresh_token: str, context: RequestContext) -> RefreshResult:
        return await self.refresher.refresh(refresh_token, context)

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise AuthenticationError()
        claims = await self.verifier.authenticate(access_token)
        return AuthContext(
            subject_id=claims.subject_id,
            session_id=claims.session_id,
            token_id=claims.token_id,
            claims=CustomClaims.from_provider(claims.claims),
        )

    async def logout(
        self,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> bool:
        """Revoke the session named by either credential.

        An expired or unusable credential is not an error here: logging out
        twice, or with a stale cookie, still succeeds.
        """
        session_id = None
        if access_token:
            try:
                session_id = self.verifier.verify(access_token).session_id
            except AuthenticationError:
                session_id = None
        if session_id is None and refresh_token:
            try:
                session_id = self.verifier.verify_refresh(refresh_token).session_id
            except AuthenticationError:
                session_id = None
        if session_id is None:
            return False
        return await self.revocation.revoke_session(session_id)

    async def revoke_all(
        self, subject_id: str, *, revoke_provider_grants: Optional[bool] = None
    ) -> int:
        return await self.revocation.revoke_all(
            subject_id, revoke_provider_grants=revoke_provider_grants
        )

    async def request_password_reset(self, email: str) -> None:
        await self.provider.send_password_reset(email)
        logger.info("password_reset_requested")

    async def request_email_verification(self, subject_id: str) -> None:
        await self.provider.send_email_verification(subject_id)
        logger.info("email_verification_requested", subject_id=subject_id)

    async def confirm_email_verification(self, code: str) -> Subject:
        subject = await self.provider.confirm_email_verification(code)
        logger.info("email_verified", subject_id=subject.id)
        return subject

    async def get_profile(self, subject_id: str) -> Subject:
        return await self.provider.get_subject(subject_id)

    async def delete_account(self, subject_id: str) -> None:
        await self.revocation.revoke_all(subject_id)
        await self.provider.delete_subject(subject_id)
        logger.info("subject_deleted", subject_id=subject_id)

    async def set_claims(self, subject_id: str, raw_claims: Mapping[str, Any]) -> CustomClaims:
        """Push new custom claims to the provider and end the subject's sessions.

        Outstanding access tokens carry the old claims; revoking forces a
        fresh login that picks the new ones up.
        """
        claims = CustomClaims.from_provider(raw_claims)
        await self.provider.set_claims(subject_id, claims)
        await self.revocation.revoke_all(subject_id, revoke_provider_grants=False)
        logger.info("subject_claims_updated", subject_id=subject_id)
        return claims

    def reload_signing_keys(self) -> Optional[str]:
        return self.keys.reload()
