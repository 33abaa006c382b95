from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    """Persisted account states. ``LOCKED`` is only ever a derived view."""

    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    LOCKED = "locked"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class MFAMethod(str, Enum):
    TOTP = "totp"
    BACKUP_CODES = "backup_codes"
    NONE = "none"


class TokenPurpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


class RateLimitScope(str, Enum):
    """Rate-limited auth actions; each scope keeps its own buckets per subject."""

    SIGNUP = "signup"
    LOGIN = "login"
    MFA_LOGIN = "mfa_login"
    RESET_REQUEST = "reset_request"
    RESET_CONFIRM = "reset_confirm"
    VERIFY_RESEND = "verify_resend"
    MFA_MANAGE = "mfa_manage"

    @property
    def limit_setting(self) -> str:
        """Name of the ``Settings`` field holding the per-minute limit."""
        return _SCOPE_LIMIT_SETTINGS[self]


_SCOPE_LIMIT_SETTINGS = {
    RateLimitScope.SIGNUP: "signup_rate_limit_per_minute",
    RateLimitScope.LOGIN: "login_rate_limit_per_minute",
    RateLimitScope.MFA_LOGIN: "mfa_rate_limit_per_minute",
    RateLimitScope.RESET_REQUEST: "reset_rate_limit_per_minute",
    RateLimitScope.RESET_CONFIRM: "reset_rate_limit_per_minute",
    RateLimitScope.VERIFY_RESEND: "reset_rate_limit_per_minute",
    RateLimitScope.MFA_MANAGE: "mfa_rate_limit_per_minute",
}


@dataclass
class Account:
    id: str
    username: str
    email: str
    credential_hash: str
    status: AccountStatus = AccountStatus.PENDING_VERIFICATION
    roles: List[str] = field(default_factory=lambda: ["user"])
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    # lockout
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_failed_at: Optional[datetime] = None
    # mfa; secrets live in the store and are read through get_mfa_secret
    mfa_enabled: bool = False
    mfa_method: MFAMethod = MFAMethod.NONE
    backup_code_hashes: List[str] = field(default_factory=list)
    mfa_enrollment_id: Optional[str] = None
    mfa_pending_method: Optional[MFAMethod] = None
    mfa_pending_backup_hashes: List[str] = field(default_factory=list)
    totp_last_step: Optional[int] = None
    # device trust and bookkeeping
    trusted_devices: List[str] = field(default_factory=list)
    last_login_at: Optional[datetime] = None
    login_count: int = 0
    email_verified_at: Optional[datetime] = None
    profile: Dict = field(default_factory=dict)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def effective_status(self, now: datetime) -> AccountStatus:
        if self.status == AccountStatus.ACTIVE and self.is_locked(now):
            return AccountStatus.LOCKED
        return self.status


@dataclass
class Session:
    id: str
    account_id: str
    refresh_jti: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        ttl: timedelta,
        now: datetime,
        *,
        device_fingerprint: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        remember_me: bool = False,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            refresh_jti=str(uuid.uuid4()),
            created_at=now,
            last_activity_at=now,
            expires_at=now + ttl,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
            remember_me=remember_me,
        )

    def is_live(self, now: datetime) -> bool:
        return self.status == SessionStatus.ACTIVE and now < self.expires_at


@dataclass
class LoginAttempt:
    login: str
    success: bool
    timestamp: datetime
    account_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    reason: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class OneTimeToken:
    """Single-use opaque token; only its digest is stored."""

    token_hash: str
    purpose: TokenPurpose
    account_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used: bool = False
    used_at: Optional[datetime] = None

    def is_usable(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at


@dataclass
class LockoutState:
    """Counter state returned by the atomic failure increment."""

    failed_attempts: int
    locked_until: Optional[datetime]
    newly_locked: bool = False
