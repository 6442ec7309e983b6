"""Custom claims carried in access tokens.

Provider payloads are loosely typed maps. They are parsed once, at the
provider boundary, into :class:`CustomClaims`: known claim shapes get typed
fields and anything else lands in ``extra`` after a JSON-compatibility check.
"""

from __future__ import annotations

import json
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from authgate.service.errors import ValidationError

# Names owned by the token format; a provider may not override them.
RESERVED_CLAIMS = frozenset(
    {"iss", "aud", "sub", "sid", "sep", "gen", "iat", "exp", "nbf", "jti", "typ", "claims"}
)
MAX_CLAIMS_BYTES = 1000
MAX_CLAIMS_DEPTH = 10


def _check_json_value(value: Any, path: str, depth: int = 0) -> None:
    if depth > MAX_CLAIMS_DEPTH:
        raise ValidationError(
            f"claim nesting exceeds maximum depth of {MAX_CLAIMS_DEPTH}",
            detail={"path": path},
        )
    if value is None or isinstance(value, (str, bool, int, float)):
        return
    if isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _check_json_value(item, f"{path}[{index}]", depth + 1)
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError("claim keys must be strings", detail={"path": path})
            _check_json_value(item, f"{path}.{key}", depth + 1)
        return
    raise ValidationError(
        "claim values must be JSON-compatible",
        detail={"path": path, "type": type(value).__name__},
    )


class CustomClaims(BaseModel):
    """Validated custom claims: typed known shapes plus an opaque extension map."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    role: Optional[str] = Field(default=None, max_length=64)
    permissions: tuple[str, ...] = ()
    extra: dict[str, Any] = Field(default_factory=dict)

    @field_validator("permissions", mode="before")
    @classmethod
    def _coerce_permissions(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError("permissions must be a list of strings")
        items = []
        for item in value:
            if not isinstance(item, str):
                raise ValueError("permissions must be a list of strings")
            items.append(item)
        return tuple(sorted(set(items)))

    @classmethod
    def from_provider(cls, raw: Optional[Mapping[str, Any]]) -> "CustomClaims":
        """Parse a provider claims map, rejecting reserved or non-JSON values."""
        if not raw:
            return cls()
        if not isinstance(raw, Mapping):
            raise ValidationError("claims must be an object")
        reserved = sorted(RESERVED_CLAIMS.intersection(raw))
        if reserved:
            raise ValidationError("reserved claim names", detail={"claims": reserved})
        _check_json_value(raw, "claims")
        encoded = json.dumps(raw, separators=(",", ":"), default=str)
        if len(encoded.encode()) > MAX_CLAIMS_BYTES:
            raise ValidationError(
                f"claims exceed {MAX_CLAIMS_BYTES} bytes", detail={"size": len(encoded)}
            )
        known = {k: raw[k] for k in ("role", "permissions") if k in raw}
        extra = {k: v for k, v in raw.items() if k not in known}
        try:
            return cls(**known, extra=extra)
        except ValueError as exc:
            raise ValidationError("invalid claims", detail={"error": str(exc)}) from exc

    def to_payload(self) -> dict[str, Any]:
        """Flatten back into the provider/JWT representation."""
        payload: dict[str, Any] = dict(self.extra)
        if self.role is not None:
            payload["role"] = self.role
        if self.permissions:
            payload["permissions"] = list(self.permissions)
        return payload

    def has_role(self, role: str) -> bool:
        return self.role == role
