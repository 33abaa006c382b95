from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from procauth.api.schemas import (
    AccountResponse,
    AccountStatusRequest,
    BackupCodesResponse,
    EmailVerificationRequest,
    EmailVerificationResendRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    LogoutResponse,
    MFAEnableRequest,
    MFAEnrollmentResponse,
    MFALoginRequest,
    MFAVerifyRequest,
    MFAVerifyResponse,
    PasswordChangeRequest,
    PasswordChangeResponse,
    PasswordConfirmRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    RegisterResponse,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
    TokenRefreshRequest,
)
from procauth.logging import get_logger
from procauth.service.auth import AuthContext, LoginResult, MFAChallenge, RequestMeta
from procauth.service.errors import ForbiddenError, RateLimitedError
from procauth.service.permissions import ACCOUNT_MANAGE, effective_permissions, has_permission
from procauth.service.runtime import check_rate_limit, get_runtime
from procauth.service.sessions import TokenPair
from procauth.storage.models import Account, AccountStatus, MFAMethod, RateLimitScope

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime,
    scope: RateLimitScope,
    subject: str,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one request from ``subject``'s per-minute bucket in ``scope``.

    Raises:
        RateLimitedError: with a ``Retry-After`` header when the bucket is empty
    """
    limit = getattr(runtime.settings, scope.limit_setting)
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, scope, subject, limit, 60, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        error = RateLimitedError("rate limit exceeded", detail={"retry_after_seconds": reset_seconds})
        error.headers = {"Retry-After": str(max(1, reset_seconds))}
        raise error
    return info


def _request_meta(request: Request, device_id: Optional[str]) -> RequestMeta:
    return RequestMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        device_id=device_id,
    )


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not has_permission(principal.roles, ACCOUNT_MANAGE):
        raise ForbiddenError("admin access required")
    return principal


def _token_pair_response(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        session_id=tokens.session_id,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _login_response(result: LoginResult | MFAChallenge) -> LoginResponse:
    if isinstance(result, MFAChallenge):
        return LoginResponse(
            mfa_required=True,
            mfa_token=result.mfa_token,
            mfa_methods=result.methods,
            mfa_expires_at=result.expires_at,
        )
    return LoginResponse(
        account_id=result.account.id,
        tokens=_token_pair_response(result.tokens),
        roles=list(result.account.roles),
        permissions=result.permissions,
        new_device=result.new_device,
    )


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        username=account.username,
        email=account.email,
        status=account.status.value,
        roles=list(account.roles),
        permissions=effective_permissions(account.roles),
        mfa_enabled=account.mfa_enabled,
        email_verified=account.email_verified_at is not None,
        created_at=account.created_at,
        last_login_at=account.last_login_at,
        login_count=account.login_count,
        profile=dict(account.profile or {}),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account in ``pending_verification`` and send a verification email.

    Raises:
        403: If signup is disabled in settings
        409: If the username or email is taken
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("signup disabled")
    await _enforce_rate_limit(runtime, RateLimitScope.SIGNUP, _client_key(request))
    result = await runtime.auth.register(
        body.username, body.email, body.password, profile=body.profile
    )
    account = result.account
    return Envelope(
        status="ok",
        data=RegisterResponse(
            account_id=account.id,
            username=account.username,
            email=account.email,
            status=account.status.value,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    x_device_id: Optional[str] = Header(None, alias="X-Device-ID"),
):
    """Authenticate with username or email and password.

    Returns a token pair, or an MFA challenge when the account has MFA
    enabled and no code was supplied.

    Raises:
        401: If credentials or the MFA code are invalid
        423: If the account is locked (``Retry-After`` header set)
        429: If rate limit exceeded for this login
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, RateLimitScope.LOGIN, body.login, response=response)
    result = await runtime.auth.login(
        body.login,
        body.password,
        mfa_code=body.mfa_code,
        remember_me=body.remember_me,
        meta=_request_meta(request, x_device_id),
    )
    return Envelope(status="ok", data=_login_response(result))


@router.post("/auth/login/mfa", response_model=Envelope, tags=["auth"])
async def login_mfa(
    body: MFALoginRequest,
    request: Request,
    x_device_id: Optional[str] = Header(None, alias="X-Device-ID"),
):
    """Answer an MFA challenge with a TOTP or backup code."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, RateLimitScope.MFA_LOGIN, _client_key(request))
    result = await runtime.auth.complete_mfa_login(
        body.mfa_token, body.code, meta=_request_meta(request, x_device_id)
    )
    return Envelope(status="ok", data=_login_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    issued = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_pair_response(issued.tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    body = body or LogoutRequest()
    revoked = await runtime.auth.logout(
        principal, session_id=body.session_id, all_sessions=body.all_sessions
    )
    return Envelope(status="ok", data=LogoutResponse(revoked_sessions=revoked))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    """Change the password; every session, this one included, is signed out."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal, body.current_password, body.new_password
    )
    return Envelope(
        status="ok",
        data=PasswordChangeResponse(requires_reauth=True, revoked_sessions=revoked),
    )


@router.post("/auth/password/reset-request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, RateLimitScope.RESET_REQUEST, body.email)
    await runtime.auth.request_password_reset(body.email, meta=_request_meta(request, None))
    # Same answer whether or not the email exists
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, RateLimitScope.RESET_CONFIRM, _client_key(request))
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    account = await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data={"status": account.status.value})


@router.post("/auth/verify-email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailVerificationResendRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, RateLimitScope.VERIFY_RESEND, body.email)
    await runtime.auth.resend_verification(body.email)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/mfa/enable", response_model=Envelope, tags=["auth"])
async def enable_mfa(
    body: Optional[MFAEnableRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    """Start MFA enrollment; returns the secret, provisioning URI, backup codes and setup token."""
    runtime = get_runtime()
    body = body or MFAEnableRequest()
    await _enforce_rate_limit(runtime, RateLimitScope.MFA_MANAGE, principal.account_id)
    enrollment = await runtime.auth.enable_mfa(principal, MFAMethod(body.method))
    return Envelope(
        status="ok",
        data=MFAEnrollmentResponse(
            method=enrollment.method.value,
            setup_token=enrollment.setup_token,
            expires_at=enrollment.expires_at,
            secret=enrollment.secret,
            provisioning_uri=enrollment.provisioning_uri,
            backup_codes=enrollment.backup_codes,
        ),
    )


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["auth"])
async def verify_mfa_setup(body: MFAVerifyRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, RateLimitScope.MFA_MANAGE, principal.account_id)
    method = await runtime.auth.verify_mfa_setup(principal, body.setup_token, body.code)
    return Envelope(status="ok", data=MFAVerifyResponse(mfa_enabled=True, method=method.value))


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["auth"])
async def disable_mfa(body: PasswordConfirmRequest, principal: AuthContext = Depends(get_user)):
    """Disable MFA after re-checking the password; other sessions are revoked."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, RateLimitScope.MFA_MANAGE, principal.account_id)
    revoked = await runtime.auth.disable_mfa(principal, body.current_password)
    return Envelope(status="ok", data={"status": "disabled", "revoked_sessions": revoked})


@router.post("/auth/mfa/backup-codes", response_model=Envelope, tags=["auth"])
async def regenerate_backup_codes(
    body: PasswordConfirmRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, RateLimitScope.MFA_MANAGE, principal.account_id)
    codes = await runtime.auth.regenerate_backup_codes(principal, body.current_password)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal)
    items = [
        SessionResponse(
            id=s.id,
            created_at=s.created_at,
            last_activity_at=s.last_activity_at,
            expires_at=s.expires_at,
            device_fingerprint=s.device_fingerprint,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            remember_me=s.remember_me,
            current=s.id == principal.session_id,
        )
        for s in sessions
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    revoked = await runtime.auth.revoke_own_session(principal, session_id)
    return Envelope(status="ok", data=LogoutResponse(revoked_sessions=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_account(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    account = await runtime.auth.get_account(principal)
    return Envelope(status="ok", data=_account_response(account))


@router.post("/admin/accounts/{account_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_status(
    body: AccountStatusRequest,
    account_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await runtime.auth.set_account_status(
        account_id, AccountStatus(body.status), actor_id=principal.account_id
    )
    return Envelope(status="ok", data=_account_response(account))


@router.post("/admin/accounts/{account_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock(
    account_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = await runtime.auth.unlock_account(account_id, actor_id=principal.account_id)
    return Envelope(status="ok", data=_account_response(account))
