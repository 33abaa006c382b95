from __future__ import annotations

import asyncio
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from procauth.config import Settings
from procauth.logging import get_logger
from procauth.service.anomaly import AnomalyDetector
from procauth.service.devices import DeviceTrustEngine
from procauth.service.errors import (
    AccountLocked,
    AccountNotActive,
    AuthenticationError,
    DuplicateAccount,
    InvalidCredentials,
    InvalidMFACode,
    NotFoundError,
    ResetTokenInvalid,
    ServiceError,
    TokenInvalid,
    TransientFailure,
    ValidationError,
    WeakPassword,
)
from procauth.service.events import AuthEvent, EventDispatcher
from procauth.service.lockout import LockoutTracker
from procauth.service.mfa import Enrollment, MFAEngine
from procauth.service.passwords import CredentialStore
from procauth.service.permissions import effective_permissions
from procauth.service.sessions import (
    IssuedSession,
    SessionContext,
    SessionManager,
    TokenPair,
)
from procauth.service.tokens import TokenCodec, TokenType
from procauth.storage.common import hash_opaque_token, normalize_login, parse_datetime
from procauth.storage.errors import ConstraintViolation, StorageUnavailable
from procauth.storage.models import (
    Account,
    AccountStatus,
    Clock,
    LockoutState,
    LoginAttempt,
    MFAMethod,
    OneTimeToken,
    Session,
    SessionStatus,
    TokenPurpose,
    utcnow,
)

logger = get_logger(__name__)

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,50}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
ADMIN_SETTABLE_STATUSES = {
    AccountStatus.ACTIVE,
    AccountStatus.INACTIVE,
    AccountStatus.SUSPENDED,
}


def _credential_marker(account: Account) -> str:
    """Short digest of the stored password hash, bound into MFA challenges."""
    return hashlib.sha256(account.credential_hash.encode()).hexdigest()[:16]


class AuthStore(Protocol):
    def create_account(
        self,
        username: str,
        email: str,
        credential_hash: str,
        *,
        status: AccountStatus = AccountStatus.PENDING_VERIFICATION,
        roles: Optional[List[str]] = None,
        profile: Optional[Dict] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_login(self, login: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_credential(self, account_id: str, credential_hash: str) -> bool: ...

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]: ...

    def mark_email_verified(self, account_id: str, now: datetime) -> Optional[Account]: ...

    def record_login(self, account_id: str, now: datetime) -> None: ...

    def increment_failed_attempts(
        self,
        account_id: str,
        *,
        max_attempts: int,
        lockout_duration: timedelta,
        now: datetime,
    ) -> LockoutState: ...

    def reset_lockout(self, account_id: str) -> None: ...

    def begin_mfa_enrollment(
        self,
        account_id: str,
        *,
        enrollment_id: str,
        method: MFAMethod,
        secret: Optional[str],
        backup_code_hashes: List[str],
    ) -> bool: ...

    def complete_mfa_enrollment(self, account_id: str, enrollment_id: str) -> bool: ...

    def get_mfa_secret(self, account_id: str, *, pending: bool = False) -> Optional[str]: ...

    def disable_mfa(self, account_id: str) -> bool: ...

    def replace_backup_codes(self, account_id: str, code_hashes: List[str]) -> bool: ...

    def consume_backup_code(
        self, account_id: str, code_hash: str, *, pending: bool = False
    ) -> bool: ...

    def claim_totp_step(self, account_id: str, step: int) -> bool: ...

    def add_trusted_device(self, account_id: str, digest: str) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_jti: str,
        new_refresh_jti: str,
        now: datetime,
    ) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def revoke_session(self, session_id: str, *, reason: str, now: datetime) -> bool: ...

    def revoke_account_sessions(
        self,
        account_id: str,
        *,
        except_session_id: Optional[str] = None,
        reason: str,
        now: datetime,
    ) -> int: ...

    def list_sessions(
        self, account_id: str, *, status: Optional[SessionStatus] = SessionStatus.ACTIVE
    ) -> List[Session]: ...

    def expire_sessions(self, now: datetime) -> int: ...

    def append_login_attempt(self, attempt: LoginAttempt) -> None: ...

    def list_login_attempts(self, account_id: str, *, since: datetime) -> List[LoginAttempt]: ...

    def purge_login_attempts(self, before: datetime) -> int: ...

    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken: ...

    def consume_one_time_token(
        self, purpose: TokenPurpose, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]: ...

    def invalidate_one_time_tokens(
        self, account_id: str, purpose: TokenPurpose, now: datetime
    ) -> int: ...

    def purge_one_time_tokens(self, now: datetime) -> int: ...


@dataclass
class RequestMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None


@dataclass
class AuthContext:
    account_id: str
    session_id: str
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)


@dataclass
class RegistrationResult:
    account: Account
    verification_token: str


@dataclass
class LoginResult:
    account: Account
    session: Session
    tokens: TokenPair
    permissions: List[str]
    new_device: bool = False


@dataclass
class MFAChallenge:
    mfa_token: str
    methods: List[str]
    expires_at: datetime


@dataclass
class SweepResult:
    expired_sessions: int = 0
    purged_tokens: int = 0
    purged_attempts: int = 0


class AuthService:
    """Composes credential, lockout, MFA, device and session components into
    the account flows callers invoke.

    Every store call runs in a worker thread under the storage timeout; a
    timeout or storage outage surfaces as ``TransientFailure`` and is never
    reported as a credential problem.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        events: Optional[EventDispatcher] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.clock: Clock = clock or utcnow
        self.events = events or EventDispatcher(
            max_pending=settings.event_queue_size, clock=self.clock
        )
        self.codec = TokenCodec(settings, clock=self.clock)
        self.credentials = CredentialStore(settings)
        self.lockout = LockoutTracker(store, settings, clock=self.clock, events=self.events)
        self.devices = DeviceTrustEngine(store)
        self.mfa = MFAEngine(store, self.codec, settings, clock=self.clock)
        self.sessions = SessionManager(store, self.codec, settings, clock=self.clock)
        self.anomalies = AnomalyDetector(store, settings, clock=self.clock)
        self.events.add_inspector("login_success", self._inspect_login)
        self.storage_timeout = settings.storage_timeout_seconds
        self.logger = logger

    async def _io(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        operation = getattr(fn, "__name__", repr(fn))
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs), timeout=self.storage_timeout
            )
        except asyncio.TimeoutError:
            self.logger.error(
                "storage_timeout", operation=operation, timeout=self.storage_timeout
            )
            raise TransientFailure()
        except StorageUnavailable as exc:
            self.logger.error(
                "storage_unavailable",
                operation=operation,
                error=exc.message,
                detail=exc.detail,
            )
            raise TransientFailure() from exc

    async def _require_account(self, account_id: str) -> Account:
        account = await self._io(self.store.get_account, account_id)
        if account is None:
            raise TokenInvalid()
        return account

    async def _verify_password(self, password: str, account: Account) -> bool:
        return await asyncio.to_thread(
            self.credentials.verify, password, account.credential_hash
        )

    async def _record_attempt(
        self,
        login: str,
        account_id: Optional[str],
        success: bool,
        meta: RequestMeta,
        reason: Optional[str] = None,
        *,
        at: Optional[datetime] = None,
    ) -> None:
        await self._io(
            self.store.append_login_attempt,
            LoginAttempt(
                login=login,
                success=success,
                timestamp=at or self.clock(),
                account_id=account_id,
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
                reason=reason,
            ),
        )

    def _check_strength(self, password: str) -> None:
        report = self.credentials.assess_strength(password)
        if not report.valid:
            raise WeakPassword(report.violations)

    async def _issue_one_time_token(
        self, account_id: str, purpose: TokenPurpose, ttl: timedelta
    ) -> str:
        now = self.clock()
        raw_token = secrets.token_urlsafe(32)
        await self._io(self.store.invalidate_one_time_tokens, account_id, purpose, now)
        await self._io(
            self.store.create_one_time_token,
            OneTimeToken(
                token_hash=hash_opaque_token(raw_token),
                purpose=purpose,
                account_id=account_id,
                expires_at=now + ttl,
                created_at=now,
            ),
        )
        return raw_token

    # registration and verification
    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        profile: Optional[Dict[str, Any]] = None,
        roles: Optional[List[str]] = None,
    ) -> RegistrationResult:
        problems: Dict[str, str] = {}
        if not USERNAME_PATTERN.match(username or ""):
            problems["username"] = "3-50 characters: letters, digits, '.', '_' or '-'"
        if not EMAIL_PATTERN.match(email or ""):
            problems["email"] = "invalid email address"
        if problems:
            raise ValidationError("Invalid registration details", detail=problems)
        self._check_strength(password)

        credential_hash = await asyncio.to_thread(self.credentials.hash, password)
        try:
            account = await self._io(
                self.store.create_account,
                username,
                email,
                credential_hash,
                status=AccountStatus.PENDING_VERIFICATION,
                roles=roles,
                profile=profile,
            )
        except ConstraintViolation as exc:
            raise DuplicateAccount(exc.detail.get("field", "account"))

        token = await self._issue_one_time_token(
            account.id,
            TokenPurpose.EMAIL_VERIFICATION,
            timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        self.events.notify(
            "verification_requested", account.id, {"email": account.email, "token": token}
        )
        self.events.audit("user_registered", account.id, {"username": account.username})
        self.logger.info("user_registered", account_id=account.id)
        return RegistrationResult(account=account, verification_token=token)

    async def verify_email(self, token: str) -> Account:
        record = await self._io(
            self.store.consume_one_time_token,
            TokenPurpose.EMAIL_VERIFICATION,
            hash_opaque_token(token or ""),
            self.clock(),
        )
        if record is None:
            raise ResetTokenInvalid("Verification token is invalid or has expired")
        account = await self._io(self.store.mark_email_verified, record.account_id, self.clock())
        if account is None:
            raise ResetTokenInvalid("Verification token is invalid or has expired")
        self.events.audit("email_verified", account.id, {})
        return account

    async def resend_verification(self, email: str) -> Optional[str]:
        """Issue a fresh verification token; silent for unknown or verified emails."""
        account = await self._io(self.store.get_account_by_email, email)
        if account is None or account.status != AccountStatus.PENDING_VERIFICATION:
            self.logger.info("verification_resend_skipped")
            return None
        token = await self._issue_one_time_token(
            account.id,
            TokenPurpose.EMAIL_VERIFICATION,
            timedelta(hours=self.settings.email_verification_ttl_hours),
        )
        self.events.notify(
            "verification_requested", account.id, {"email": account.email, "token": token}
        )
        return token

    # login
    async def login(
        self,
        login: str,
        password: str,
        *,
        mfa_code: Optional[str] = None,
        remember_me: bool = False,
        meta: Optional[RequestMeta] = None,
    ) -> Union[LoginResult, MFAChallenge]:
        meta = meta or RequestMeta()
        folded = normalize_login(login or "")
        account = await self._io(self.store.get_account_by_login, folded)
        if account is None:
            # Same hashing cost as a real check so timing does not reveal existence
            await asyncio.to_thread(self.credentials.verify_dummy, password)
            await self._record_attempt(folded, None, False, meta, "unknown_account")
            self.events.audit(
                "login_failed", None, {"reason": "unknown_account", "ip_address": meta.ip_address}
            )
            raise InvalidCredentials()

        gate = self.lockout.check_gate(account)
        if not gate.allowed:
            await self._record_attempt(folded, account.id, False, meta, "locked")
            self.events.audit(
                "login_failed", account.id, {"reason": "locked", "ip_address": meta.ip_address}
            )
            raise AccountLocked(gate.remaining_seconds)

        if not await self._verify_password(password, account):
            await self._fail_login(account, folded, meta, "invalid_password", InvalidCredentials)

        if account.status != AccountStatus.ACTIVE:
            await self._record_attempt(folded, account.id, False, meta, "account_not_active")
            self.events.audit(
                "login_failed",
                account.id,
                {"reason": "account_not_active", "status": account.status.value},
            )
            raise AccountNotActive(account.status.value)

        if account.mfa_enabled:
            if not mfa_code:
                return self._issue_mfa_challenge(account, remember_me)
            if not await self._io(self.mfa.verify, account, mfa_code):
                await self._fail_login(account, folded, meta, "invalid_mfa_code", InvalidMFACode)

        if self.credentials.needs_rehash(account.credential_hash):
            new_hash = await asyncio.to_thread(self.credentials.hash, password)
            await self._io(self.store.update_credential, account.id, new_hash)
        return await self._complete_login(account, folded, remember_me, meta)

    async def complete_mfa_login(
        self,
        mfa_token: str,
        code: str,
        *,
        meta: Optional[RequestMeta] = None,
    ) -> LoginResult:
        meta = meta or RequestMeta()
        payload = self.codec.decode(mfa_token, TokenType.MFA_CHALLENGE)
        account = await self._require_account(payload["sub"])
        folded = account.username
        gate = self.lockout.check_gate(account)
        if not gate.allowed:
            raise AccountLocked(gate.remaining_seconds)
        if account.status != AccountStatus.ACTIVE:
            raise AccountNotActive(account.status.value)
        if not account.mfa_enabled or not hmac.compare_digest(
            str(payload.get("cred", "")), _credential_marker(account)
        ):
            # Password changed or reset since the challenge was issued
            raise TokenInvalid()
        if not await self._io(self.mfa.verify, account, code):
            await self._fail_login(account, folded, meta, "invalid_mfa_code", InvalidMFACode)
        return await self._complete_login(account, folded, bool(payload.get("rme")), meta)

    def _issue_mfa_challenge(self, account: Account, remember_me: bool) -> MFAChallenge:
        expires_at = self.clock() + timedelta(minutes=self.settings.mfa_challenge_ttl_minutes)
        token = self.codec.issue(
            TokenType.MFA_CHALLENGE,
            account.id,
            expires_at=expires_at,
            claims={"rme": remember_me, "cred": _credential_marker(account)},
        )
        self.logger.info("mfa_challenge_issued", account_id=account.id)
        return MFAChallenge(
            mfa_token=token,
            methods=self.mfa.available_methods(account),
            expires_at=expires_at,
        )

    async def _fail_login(
        self,
        account: Account,
        login: str,
        meta: RequestMeta,
        reason: str,
        error: Callable[[], ServiceError],
    ) -> None:
        state = await self._io(self.lockout.record_failure, account)
        await self._record_attempt(login, account.id, False, meta, reason)
        self.events.audit(
            "login_failed",
            account.id,
            {
                "reason": reason,
                "failed_attempts": state.failed_attempts,
                "ip_address": meta.ip_address,
            },
        )
        now = self.clock()
        if state.locked_until is not None and now < state.locked_until:
            raise AccountLocked((state.locked_until - now).total_seconds())
        raise error()

    async def _complete_login(
        self, account: Account, login: str, remember_me: bool, meta: RequestMeta
    ) -> LoginResult:
        await self._io(self.lockout.record_success, account.id)
        now = self.clock()
        await self._io(self.store.record_login, account.id, now)

        digest = self.devices.fingerprint(meta.user_agent, meta.ip_address, meta.device_id)
        new_device = not self.devices.is_trusted(account, digest)
        if new_device:
            device_info = {
                "ip_address": meta.ip_address,
                "user_agent": meta.user_agent,
                "fingerprint": digest,
            }
            self.events.audit("new_device_login", account.id, device_info)
            self.events.notify(
                "new_device_login", account.id, {**device_info, "email": account.email}
            )
            await self._io(self.devices.trust, account.id, digest)

        issued: IssuedSession = await self._io(
            self.sessions.create_session,
            account,
            SessionContext(
                device_fingerprint=digest,
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
                remember_me=remember_me,
            ),
        )
        await self._record_attempt(login, account.id, True, meta, at=now)
        self.events.audit(
            "login_success",
            account.id,
            {
                "session_id": issued.session.id,
                "ip_address": meta.ip_address,
                "user_agent": meta.user_agent,
                "new_device": new_device,
                "remember_me": remember_me,
                "login_at": now.isoformat(),
            },
        )
        refreshed = await self._io(self.store.get_account, account.id) or account
        return LoginResult(
            account=refreshed,
            session=issued.session,
            tokens=issued.tokens,
            permissions=effective_permissions(refreshed.roles),
            new_device=new_device,
        )

    def _inspect_login(self, event: AuthEvent) -> None:
        if not event.account_id:
            return
        at = parse_datetime(event.payload.get("login_at")) or event.occurred_at
        for anomaly in self.anomalies.inspect(event.account_id, at):
            self.events.audit(
                "suspicious_activity",
                event.account_id,
                {
                    "type": anomaly.type,
                    "severity": anomaly.severity,
                    "description": anomaly.description,
                    "session_id": event.payload.get("session_id"),
                },
            )

    # session lifecycle
    async def refresh(self, refresh_token: str) -> IssuedSession:
        issued: IssuedSession = await self._io(self.sessions.rotate, refresh_token)
        account = await self._io(self.store.get_account, issued.session.account_id)
        if account is None or account.status != AccountStatus.ACTIVE:
            await self._io(self.sessions.revoke, issued.session.id, reason="account_not_active")
            raise AccountNotActive(account.status.value if account else "missing")
        self.events.audit("token_refresh", account.id, {"session_id": issued.session.id})
        return issued

    async def logout(
        self,
        ctx: AuthContext,
        *,
        session_id: Optional[str] = None,
        all_sessions: bool = False,
    ) -> int:
        if all_sessions:
            count = await self._io(
                self.sessions.revoke_all, ctx.account_id, reason="logout_all"
            )
        else:
            count = await self.revoke_own_session(ctx, session_id or ctx.session_id)
        self.events.audit(
            "logout",
            ctx.account_id,
            {"session_id": ctx.session_id, "all_sessions": all_sessions, "revoked": count},
        )
        return count

    async def revoke_own_session(self, ctx: AuthContext, session_id: str) -> int:
        session = await self._io(self.store.get_session, session_id)
        if session is None or session.account_id != ctx.account_id:
            raise NotFoundError("Session not found", detail={"session_id": session_id})
        revoked = await self._io(self.sessions.revoke, session_id, reason="logout")
        return 1 if revoked else 0

    async def list_sessions(self, ctx: AuthContext) -> List[Session]:
        return await self._io(self.sessions.list_active, ctx.account_id)

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Missing bearer token")
        verified = await self._io(self.sessions.verify, token, TokenType.ACCESS)
        account = await self._require_account(verified.session.account_id)
        if account.status != AccountStatus.ACTIVE:
            raise AccountNotActive(account.status.value)
        await self._io(self.sessions.touch, verified.session.id)
        return AuthContext(
            account_id=account.id,
            session_id=verified.session.id,
            roles=list(account.roles),
            permissions=effective_permissions(account.roles),
        )

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def get_account(self, ctx: AuthContext) -> Account:
        return await self._require_account(ctx.account_id)

    # passwords
    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> int:
        """Change the password and revoke every session, the caller's included."""
        account = await self._require_account(ctx.account_id)
        if not await self._verify_password(current_password, account):
            raise InvalidCredentials("Current password is incorrect")
        self._check_strength(new_password)
        if await self._verify_password(new_password, account):
            raise WeakPassword(["same_as_current"], "New password must differ from the current one")
        new_hash = await asyncio.to_thread(self.credentials.hash, new_password)
        await self._io(self.store.update_credential, account.id, new_hash)
        revoked = await self._io(
            self.sessions.revoke_all, account.id, reason="password_change"
        )
        self.events.audit("password_change", account.id, {"revoked_sessions": revoked})
        self.events.notify("password_changed", account.id, {"email": account.email})
        return revoked

    async def request_password_reset(
        self, email: str, *, meta: Optional[RequestMeta] = None
    ) -> Optional[str]:
        """Issue a reset token when the email is known; callers always answer the same."""
        meta = meta or RequestMeta()
        account = await self._io(self.store.get_account_by_email, email or "")
        if account is None or account.status in (
            AccountStatus.INACTIVE,
            AccountStatus.SUSPENDED,
        ):
            self.logger.info("password_reset_skipped")
            return None
        token = await self._issue_one_time_token(
            account.id,
            TokenPurpose.PASSWORD_RESET,
            timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        self.events.notify(
            "password_reset_requested", account.id, {"email": account.email, "token": token}
        )
        self.events.audit(
            "password_reset_requested", account.id, {"ip_address": meta.ip_address}
        )
        return token

    async def reset_password(self, token: str, new_password: str) -> None:
        self._check_strength(new_password)
        now = self.clock()
        record = await self._io(
            self.store.consume_one_time_token,
            TokenPurpose.PASSWORD_RESET,
            hash_opaque_token(token or ""),
            now,
        )
        if record is None:
            raise ResetTokenInvalid()
        new_hash = await asyncio.to_thread(self.credentials.hash, new_password)
        await self._io(self.store.update_credential, record.account_id, new_hash)
        await self._io(self.lockout.record_success, record.account_id)
        revoked = await self._io(
            self.sessions.revoke_all, record.account_id, reason="password_reset"
        )
        await self._io(
            self.store.invalidate_one_time_tokens,
            record.account_id,
            TokenPurpose.PASSWORD_RESET,
            now,
        )
        account = await self._io(self.store.get_account, record.account_id)
        self.events.audit("password_reset", record.account_id, {"revoked_sessions": revoked})
        if account is not None:
            self.events.notify(
                "password_reset_completed", account.id, {"email": account.email}
            )

    # mfa
    async def enable_mfa(
        self, ctx: AuthContext, method: MFAMethod = MFAMethod.TOTP
    ) -> Enrollment:
        account = await self._require_account(ctx.account_id)
        return await self._io(self.mfa.begin_enrollment, account, method)

    async def verify_mfa_setup(self, ctx: AuthContext, setup_token: str, code: str) -> MFAMethod:
        method = await self._io(self.mfa.complete_enrollment, ctx.account_id, setup_token, code)
        account = await self._require_account(ctx.account_id)
        self.events.audit("mfa_enabled", account.id, {"method": method.value})
        self.events.notify(
            "mfa_enabled", account.id, {"email": account.email, "method": method.value}
        )
        return method

    async def disable_mfa(self, ctx: AuthContext, current_password: str) -> int:
        """Disable MFA after password re-authentication; other sessions are revoked."""
        account = await self._require_account(ctx.account_id)
        if not await self._verify_password(current_password, account):
            raise InvalidCredentials("Current password is incorrect")
        await self._io(self.mfa.disable, account.id)
        revoked = await self._io(
            self.sessions.revoke_all,
            account.id,
            except_session_id=ctx.session_id,
            reason="mfa_disabled",
        )
        self.events.audit("mfa_disabled", account.id, {"revoked_sessions": revoked})
        self.events.notify("mfa_disabled", account.id, {"email": account.email})
        return revoked

    async def regenerate_backup_codes(self, ctx: AuthContext, current_password: str) -> List[str]:
        account = await self._require_account(ctx.account_id)
        if not await self._verify_password(current_password, account):
            raise InvalidCredentials("Current password is incorrect")
        codes = await self._io(self.mfa.regenerate_backup_codes, account)
        self.events.audit("backup_codes_regenerated", account.id, {"count": len(codes)})
        return codes

    # administration
    async def set_account_status(
        self, account_id: str, status: AccountStatus, *, actor_id: Optional[str] = None
    ) -> Account:
        if status not in ADMIN_SETTABLE_STATUSES:
            raise ValidationError(
                "Status cannot be set directly", detail={"status": status.value}
            )
        account = await self._io(self.store.set_account_status, account_id, status)
        if account is None:
            raise NotFoundError("Account not found", detail={"account_id": account_id})
        revoked = 0
        if status != AccountStatus.ACTIVE:
            revoked = await self._io(
                self.sessions.revoke_all, account_id, reason=f"account_{status.value}"
            )
        self.events.audit(
            "account_status_changed",
            account_id,
            {"status": status.value, "actor_id": actor_id, "revoked_sessions": revoked},
        )
        return account

    async def unlock_account(self, account_id: str, *, actor_id: Optional[str] = None) -> Account:
        account = await self._io(self.store.get_account, account_id)
        if account is None:
            raise NotFoundError("Account not found", detail={"account_id": account_id})
        await self._io(self.lockout.record_success, account_id)
        self.events.audit("account_unlocked", account_id, {"actor_id": actor_id})
        return await self._io(self.store.get_account, account_id) or account

    # maintenance
    async def sweep(self) -> SweepResult:
        now = self.clock()
        result = SweepResult(
            expired_sessions=await self._io(self.sessions.sweep),
            purged_tokens=await self._io(self.store.purge_one_time_tokens, now),
            purged_attempts=await self._io(
                self.store.purge_login_attempts,
                now - timedelta(days=self.settings.login_attempt_retention_days),
            ),
        )
        self.logger.info(
            "auth_sweep_completed",
            expired_sessions=result.expired_sessions,
            purged_tokens=result.purged_tokens,
            purged_attempts=result.purged_attempts,
        )
        return result
