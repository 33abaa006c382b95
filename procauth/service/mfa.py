from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
from urllib.parse import quote, urlencode

from procauth.config import Settings
from procauth.logging import get_logger
from procauth.service.errors import (
    InvalidMFACode,
    MFAAlreadyEnabled,
    MFANotEnabled,
    MFASetupInvalid,
    TokenExpired,
    TokenInvalid,
    ValidationError,
)
from procauth.service.tokens import TokenCodec, TokenType
from procauth.storage.models import Account, Clock, MFAMethod, utcnow

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


@dataclass
class Enrollment:
    enrollment_id: str
    method: MFAMethod
    setup_token: str
    expires_at: datetime
    secret: Optional[str] = None
    provisioning_uri: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)


def normalize_code(code: str) -> str:
    return "".join(ch for ch in (code or "") if ch not in " -").upper()


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_code(code).encode()).hexdigest()


class MFAEngine:
    """TOTP (RFC 6238, SHA-1) and single-use backup codes.

    Enrollment is two-phase: ``begin_enrollment`` stores a pending secret and
    returns a setup token; nothing gates login until ``complete_enrollment``
    verifies a code against the pending secret.
    """

    def __init__(
        self,
        store,
        codec: TokenCodec,
        settings: Settings,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.issuer = settings.mfa_issuer
        self.window = settings.totp_window_steps
        self.backup_code_count = settings.mfa_backup_code_count
        self.setup_ttl = timedelta(minutes=settings.mfa_setup_token_ttl_minutes)
        self.clock = clock

    @staticmethod
    def generate_secret() -> str:
        return base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        label = quote(f"{self.issuer}:{account_name}")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{label}?{params}"

    @staticmethod
    def generate_totp(secret: str, timestamp: float) -> str:
        return MFAEngine._totp_for_step(secret, int(timestamp // TOTP_INTERVAL))

    @staticmethod
    def _totp_for_step(secret: str, step: int) -> str:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        digest = hmac.new(key, step.to_bytes(8, "big"), hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**TOTP_DIGITS
        )
        return str(code_int).zfill(TOTP_DIGITS)

    def _match_totp_step(self, secret: str, code: str) -> Optional[int]:
        """Return the time step whose code matches, within the drift window."""
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return None
        current = int(self.clock().timestamp() // TOTP_INTERVAL)
        for step in range(current - self.window, current + self.window + 1):
            generated = self._totp_for_step(secret, step)
            if generated and hmac.compare_digest(generated, code):
                return step
        return None

    def generate_backup_codes(self) -> List[str]:
        return [secrets.token_hex(4).upper() for _ in range(self.backup_code_count)]

    def begin_enrollment(
        self, account: Account, method: MFAMethod = MFAMethod.TOTP
    ) -> Enrollment:
        if account.mfa_enabled:
            raise MFAAlreadyEnabled()
        if method == MFAMethod.NONE:
            raise ValidationError("Unsupported MFA method", detail={"method": method.value})
        enrollment_id = str(uuid.uuid4())
        secret = self.generate_secret() if method == MFAMethod.TOTP else None
        backup_codes = self.generate_backup_codes()
        started = self.store.begin_mfa_enrollment(
            account.id,
            enrollment_id=enrollment_id,
            method=method,
            secret=secret,
            backup_code_hashes=[hash_backup_code(c) for c in backup_codes],
        )
        if not started:
            # Enabled concurrently between the read and the write
            raise MFAAlreadyEnabled()
        expires_at = self.clock() + self.setup_ttl
        setup_token = self.codec.issue(
            TokenType.MFA_SETUP,
            account.id,
            expires_at=expires_at,
            claims={"eid": enrollment_id, "method": method.value},
        )
        logger.info("mfa_enrollment_started", account_id=account.id, method=method.value)
        return Enrollment(
            enrollment_id=enrollment_id,
            method=method,
            setup_token=setup_token,
            expires_at=expires_at,
            secret=secret,
            provisioning_uri=self.provisioning_uri(secret, account.email) if secret else None,
            backup_codes=backup_codes,
        )

    def complete_enrollment(self, account_id: str, setup_token: str, code: str) -> MFAMethod:
        try:
            payload = self.codec.decode(setup_token, TokenType.MFA_SETUP)
        except (TokenInvalid, TokenExpired):
            raise MFASetupInvalid()
        if payload.get("sub") != account_id:
            raise MFASetupInvalid()
        enrollment_id = payload.get("eid")
        account = self.store.get_account(account_id)
        if not account:
            raise MFASetupInvalid()
        if account.mfa_enabled:
            raise MFAAlreadyEnabled()
        if not enrollment_id or account.mfa_enrollment_id != enrollment_id:
            # Superseded by a newer enrollment attempt
            raise MFASetupInvalid()
        method = account.mfa_pending_method or MFAMethod.TOTP
        normalized = normalize_code(code)
        if method == MFAMethod.TOTP:
            secret = self.store.get_mfa_secret(account_id, pending=True)
            step = self._match_totp_step(secret, normalized) if secret else None
            if step is None or not self.store.claim_totp_step(account_id, step):
                raise InvalidMFACode()
        elif not self.store.consume_backup_code(
            account_id, hash_backup_code(normalized), pending=True
        ):
            raise InvalidMFACode()
        if not self.store.complete_mfa_enrollment(account_id, enrollment_id):
            raise MFASetupInvalid()
        logger.info("mfa_enrollment_completed", account_id=account_id, method=method.value)
        return method

    def verify(self, account: Account, code: Optional[str]) -> bool:
        """Verify a login-time code; each TOTP step and backup code works once."""
        if not account.mfa_enabled or not code:
            return False
        normalized = normalize_code(code)
        if account.mfa_method == MFAMethod.TOTP and normalized.isdigit():
            secret = self.store.get_mfa_secret(account.id)
            step = self._match_totp_step(secret, normalized) if secret else None
            if step is not None:
                if self.store.claim_totp_step(account.id, step):
                    return True
                logger.warning("totp_replay_rejected", account_id=account.id)
                return False
        if self.store.consume_backup_code(account.id, hash_backup_code(normalized)):
            logger.info("backup_code_consumed", account_id=account.id)
            return True
        return False

    def available_methods(self, account: Account) -> List[str]:
        methods = []
        if account.mfa_method == MFAMethod.TOTP:
            methods.append(MFAMethod.TOTP.value)
        if account.backup_code_hashes:
            methods.append(MFAMethod.BACKUP_CODES.value)
        return methods

    def disable(self, account_id: str) -> None:
        if not self.store.disable_mfa(account_id):
            raise MFANotEnabled()
        logger.info("mfa_disabled", account_id=account_id)

    def regenerate_backup_codes(self, account: Account) -> List[str]:
        if not account.mfa_enabled:
            raise MFANotEnabled()
        codes = self.generate_backup_codes()
        if not self.store.replace_backup_codes(
            account.id, [hash_backup_code(c) for c in codes]
        ):
            raise MFANotEnabled()
        return codes
