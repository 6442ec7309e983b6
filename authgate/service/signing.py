from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.errors import SigningError

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


@dataclass(frozen=True)
class SigningKey:
    kid: str
    secret: bytes


def _key_id(secret: bytes) -> str:
    return hashlib.sha256(secret).hexdigest()[:8]


class SigningKeyProvider:
    """Read-shared handle on HMAC signing material.

    The current key signs new tokens. Keys replaced by :meth:`reload` are
    kept for verification so tokens minted before a rotation stay valid until
    they expire.
    """

    def __init__(
        self,
        *,
        secret: Optional[str] = None,
        secret_file: Optional[str] = None,
        max_previous_keys: int = 3,
    ) -> None:
        self._secret = secret
        self._secret_file = secret_file
        self._max_previous_keys = max(0, max_previous_keys)
        self._lock = threading.Lock()
        self._current: Optional[SigningKey] = None
        self._previous: Dict[str, SigningKey] = {}
        self.reload()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningKeyProvider":
        return cls(secret=settings.jwt_secret, secret_file=settings.jwt_secret_file)

    def _read_secret(self) -> Optional[str]:
        if self._secret_file:
            try:
                value = Path(self._secret_file).read_text().strip()
            except OSError as exc:
                logger.error(
                    "signing_secret_file_unreadable",
                    path=self._secret_file,
                    error=str(exc),
                )
                return None
            return value or None
        return self._secret

    def reload(self) -> Optional[str]:
        """Re-read signing material; returns the active key id, if any."""
        raw = self._read_secret()
        with self._lock:
            if not raw:
                if self._current is None:
                    logger.error("signing_key_missing")
                else:
                    logger.warning(
                        "signing_key_reload_empty", kept_kid=self._current.kid
                    )
                return self._current.kid if self._current else None
            if len(raw) < MIN_SECRET_LENGTH:
                logger.warning("signing_secret_short", length=len(raw))
            secret = raw.encode()
            new_key = SigningKey(kid=_key_id(secret), secret=secret)
            if self._current is not None and self._current.kid != new_key.kid:
                self._previous[self._current.kid] = self._current
                while len(self._previous) > self._max_previous_keys:
                    oldest = next(iter(self._previous))
                    self._previous.pop(oldest)
                logger.info(
                    "signing_key_rotated",
                    kid=new_key.kid,
                    previous_kid=self._current.kid,
                )
            elif self._current is None:
                logger.info("signing_key_loaded", kid=new_key.kid)
            self._previous.pop(new_key.kid, None)
            self._current = new_key
            return new_key.kid

    def current(self) -> SigningKey:
        key = self._current
        if key is None:
            raise SigningError()
        return key

    def get(self, kid: Optional[str]) -> Optional[SigningKey]:
        """Look up a verification key by id; unknown ids return None."""
        current = self._current
        if current is not None and (kid is None or kid == current.kid):
            return current
        if kid is None:
            return None
        with self._lock:
            return self._previous.get(kid)

    @property
    def loaded(self) -> bool:
        return self._current is not None
