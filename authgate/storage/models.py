from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from authgate.service.claims import CustomClaims


def utc_from_timestamp(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _deserialize_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Subject:
    """An identity owned by the provider; referenced, never created, here."""

    id: str
    email: str
    display_name: Optional[str] = None
    email_verified: bool = False
    claims: CustomClaims = field(default_factory=CustomClaims)


@dataclass
class Session:
    id: str
    subject_id: str
    created_at: datetime
    last_rotated_at: datetime
    expires_at: datetime
    generation: int = 0
    # Subject generation floor captured at creation time
    subject_epoch: int = 0
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    device_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        subject_id: str,
        *,
        now: datetime,
        expires_at: datetime,
        subject_epoch: int,
        device_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
        claims: Optional[Dict[str, Any]] = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            subject_id=subject_id,
            created_at=now,
            last_rotated_at=now,
            expires_at=expires_at,
            subject_epoch=subject_epoch,
            device_id=device_id,
            user_agent=user_agent,
            ip_addr=ip_addr,
            claims=dict(claims or {}),
        )

    def rotated(self, now: datetime) -> "Session":
        return replace(self, generation=self.generation + 1, last_rotated_at=now)

    def revoke(self, now: datetime) -> "Session":
        return replace(self, revoked=True, revoked_at=self.revoked_at or now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "generation": self.generation,
            "subject_epoch": self.subject_epoch,
            "created_at": _serialize_datetime(self.created_at),
            "last_rotated_at": _serialize_datetime(self.last_rotated_at),
            "expires_at": _serialize_datetime(self.expires_at),
            "revoked": self.revoked,
            "revoked_at": _serialize_datetime(self.revoked_at),
            "device_id": self.device_id,
            "user_agent": self.user_agent,
            "ip_addr": self.ip_addr,
            "claims": self.claims,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            id=data["id"],
            subject_id=data["subject_id"],
            generation=int(data.get("generation", 0)),
            subject_epoch=int(data.get("subject_epoch", 0)),
            created_at=_deserialize_datetime(data["created_at"]),
            last_rotated_at=_deserialize_datetime(
                data.get("last_rotated_at") or data["created_at"]
            ),
            expires_at=_deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            revoked_at=_deserialize_datetime(data.get("revoked_at")),
            device_id=data.get("device_id"),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            claims=data.get("claims") or {},
        )


@dataclass(frozen=True)
class AccessClaims:
    subject_id: str
    session_id: str
    subject_epoch: int
    issued_at: int
    expires_at: int
    token_id: str
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def custom_claims(self) -> CustomClaims:
        return CustomClaims.from_provider(self.claims)


@dataclass(frozen=True)
class RefreshClaims:
    subject_id: str
    session_id: str
    generation: int
    subject_epoch: int
    issued_at: int
    expires_at: int
    token_id: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0
    policy_class: str = "global"
