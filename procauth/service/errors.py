from __future__ import annotations

import math
from typing import Dict, List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class carries both an HTTP ``status_code`` and a stable
    ``error_code`` that clients switch on:
    - invalid_credentials, invalid_mfa_code, token_invalid, token_expired,
      session_revoked, unauthorized (401)
    - account_not_active, forbidden (403)
    - account_locked (423)
    - duplicate_account, conflict (409)
    - weak_password, reset_token_invalid, mfa_* , validation_error (400)
    - rate_limited (429)
    - transient_failure (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers: Dict[str, str] = {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class InvalidCredentials(AuthenticationError):
    """Unknown login or wrong password; the two are indistinguishable."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid username or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(ServiceError):
    """Login refused while a lockout is in force (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, remaining_seconds: float, message: Optional[str] = None) -> None:
        seconds = max(0, math.ceil(remaining_seconds))
        minutes = max(1, math.ceil(seconds / 60)) if seconds else 0
        super().__init__(
            message or f"Account is locked. Try again in {minutes} minute(s).",
            detail={"retry_after_seconds": seconds, "retry_after_minutes": minutes},
        )
        self.retry_after_seconds = seconds
        self.retry_after_minutes = minutes
        self.headers = {"Retry-After": str(seconds)}


class AccountNotActive(ForbiddenError):
    """Account exists but is pending verification, inactive or suspended."""
    error_code = "account_not_active"

    def __init__(self, status: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or "Account is not active",
            detail={"status": status},
        )
        self.account_status = status


class InvalidMFACode(AuthenticationError):
    error_code = "invalid_mfa_code"

    def __init__(self, message: str = "Invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalid(AuthenticationError):
    error_code = "token_invalid"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpired(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "Token has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionRevoked(AuthenticationError):
    error_code = "session_revoked"

    def __init__(self, message: str = "Session has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class WeakPassword(ValidationError):
    error_code = "weak_password"

    def __init__(self, violations: List[str], message: str = "Password does not meet requirements") -> None:
        super().__init__(message, detail={"violations": list(violations)})
        self.violations = list(violations)


class DuplicateAccount(ConflictError):
    error_code = "duplicate_account"

    def __init__(self, field: str = "account", message: Optional[str] = None) -> None:
        super().__init__(
            message or f"An account with this {field} already exists",
            detail={"field": field},
        )
        self.field = field


class ResetTokenInvalid(ValidationError):
    """Reset or verification token is unknown, expired or already used."""
    error_code = "reset_token_invalid"

    def __init__(self, message: str = "Token is invalid or has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MFAAlreadyEnabled(ValidationError):
    error_code = "mfa_already_enabled"

    def __init__(self, message: str = "MFA is already enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MFANotEnabled(ValidationError):
    error_code = "mfa_not_enabled"

    def __init__(self, message: str = "MFA is not enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MFASetupInvalid(ValidationError):
    """Setup token is bad or stale, or the enrollment was superseded."""
    error_code = "mfa_setup_invalid"

    def __init__(self, message: str = "MFA setup is invalid or has expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TransientFailure(ServiceError):
    """Backing store unreachable or timed out; safe to retry (503)."""
    status_code = 503
    error_code = "transient_failure"

    def __init__(self, message: str = "Service temporarily unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.headers = {"Retry-After": "1"}


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "InvalidCredentials",
    "AccountLocked",
    "AccountNotActive",
    "InvalidMFACode",
    "TokenInvalid",
    "TokenExpired",
    "SessionRevoked",
    "WeakPassword",
    "DuplicateAccount",
    "ResetTokenInvalid",
    "MFAAlreadyEnabled",
    "MFANotEnabled",
    "MFASetupInvalid",
    "TransientFailure",
]
