"""Common storage utilities shared between memory and postgres implementations.

Both backends must agree on how logins are folded, how opaque tokens are
digested and how MFA secrets are sealed, otherwise switching stores would
silently invalidate existing accounts.
"""

from __future__ import annotations

import base64
import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from procauth.logging import get_logger
from procauth.storage.models import LockoutState

logger = get_logger(__name__)


def normalize_login(value: str) -> str:
    """Fold a username or email for case-insensitive lookups."""
    return value.strip().casefold()


def hash_opaque_token(token: str) -> str:
    """Digest a single-use token so raw values are never persisted."""
    return hashlib.sha256(token.encode()).hexdigest()


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    return ensure_utc(datetime.fromisoformat(str(raw)))


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a JSON column that may come back as text or as a dict."""
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except json.JSONDecodeError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


class SecretCipher:
    """Fernet wrapper used to seal MFA secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, sealed: Optional[str]) -> Optional[str]:
        if not sealed:
            return sealed
        try:
            return self._fernet.decrypt(sealed.encode()).decode()
        except InvalidToken:
            # A secret sealed under a rotated key cannot be used; treat as absent
            logger.warning("mfa_secret_decrypt_failed")
            return None


def next_lockout_state(
    failed_attempts: int,
    locked_until: Optional[datetime],
    *,
    max_attempts: int,
    lockout_duration: timedelta,
    now: datetime,
) -> LockoutState:
    """Compute the counter after one more failure.

    An elapsed lock starts a fresh counting cycle. ``newly_locked`` is only set
    on the failure that crosses the threshold.
    """
    if locked_until is not None and locked_until <= now:
        failed_attempts = 0
        locked_until = None
    failed_attempts += 1
    newly_locked = False
    if failed_attempts >= max_attempts and locked_until is None:
        locked_until = now + lockout_duration
        newly_locked = True
    return LockoutState(
        failed_attempts=failed_attempts,
        locked_until=locked_until,
        newly_locked=newly_locked,
    )
