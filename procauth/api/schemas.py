from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Maximum nested JSON depth accepted in free-form profile fields
MAX_JSON_DEPTH = 10
MAX_ARRAY_ITEMS = 100
MAX_PASSWORD_LENGTH = 256


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON values.

    Raises:
        ValueError: If depth or array length exceeds the maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "unauthorized",
        "forbidden",
        "not_found",
        "conflict",
        "rate_limited",
        "server_error",
        "invalid_credentials",
        "account_locked",
        "account_not_active",
        "invalid_mfa_code",
        "token_invalid",
        "token_expired",
        "session_revoked",
        "weak_password",
        "duplicate_account",
        "reset_token_invalid",
        "mfa_already_enabled",
        "mfa_not_enabled",
        "mfa_setup_invalid",
        "transient_failure",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: str
    # Strength rules are reported together by the service, not here
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    profile: Optional[Dict[str, Any]] = None

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        normalized = _normalize_unicode(value.strip())
        if not _USERNAME_PATTERN.match(normalized):
            raise ValueError(
                "username must contain only letters, digits, '.', '_' and '-'"
            )
        return normalized

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("profile")
    @classmethod
    def _validate_profile(cls, value: Optional[dict]) -> Optional[dict]:
        if value is not None:
            _validate_json_depth(value)
        return value


class RegisterResponse(BaseModel):
    account_id: str
    username: str
    email: str
    status: str
    verification_required: bool = True


class LoginRequest(BaseModel):
    login: str = Field(..., min_length=1, max_length=254, description="Username or email")
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    mfa_code: Optional[str] = Field(default=None, max_length=32)
    remember_me: bool = False

    @field_validator("login")
    @classmethod
    def _normalize_login(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    session_id: str
    access_expires_at: datetime
    refresh_expires_at: datetime


class LoginResponse(BaseModel):
    mfa_required: bool = False
    account_id: Optional[str] = None
    tokens: Optional[TokenPairResponse] = None
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    new_device: bool = False
    mfa_token: Optional[str] = None
    mfa_methods: List[str] = Field(default_factory=list)
    mfa_expires_at: Optional[datetime] = None


class MFALoginRequest(BaseModel):
    mfa_token: str = Field(..., max_length=4096)
    code: str = Field(..., min_length=1, max_length=32)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class LogoutRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, max_length=128)
    all_sessions: bool = False


class LogoutResponse(BaseModel):
    revoked_sessions: int


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class PasswordChangeResponse(BaseModel):
    requires_reauth: bool = True
    revoked_sessions: int = 0


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class EmailVerificationResendRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class MFAEnableRequest(BaseModel):
    method: Literal["totp"] = "totp"


class MFAEnrollmentResponse(BaseModel):
    method: str
    setup_token: str
    expires_at: datetime
    secret: Optional[str] = None
    provisioning_uri: Optional[str] = None
    backup_codes: List[str] = Field(default_factory=list)


class MFAVerifyRequest(BaseModel):
    setup_token: str = Field(..., max_length=4096)
    code: str = Field(..., min_length=1, max_length=32)


class MFAVerifyResponse(BaseModel):
    mfa_enabled: bool = True
    method: str


class PasswordConfirmRequest(BaseModel):
    """Body for actions that re-authenticate with the current password."""

    current_password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class AccountResponse(BaseModel):
    id: str
    username: str
    email: str
    status: str
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    mfa_enabled: bool = False
    email_verified: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None
    login_count: int = 0
    profile: Dict[str, Any] = Field(default_factory=dict)


class AccountStatusRequest(BaseModel):
    status: Literal["active", "inactive", "suspended"]
