from __future__ import annotations

import copy
import json
import os
import secrets
import threading
import uuid
from dataclasses import asdict
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from procauth.logging import get_logger
from procauth.storage.common import (
    SecretCipher,
    next_lockout_state,
    normalize_login,
    parse_datetime,
)
from procauth.storage.errors import ConstraintViolation, StorageUnavailable
from procauth.storage.models import (
    Account,
    AccountStatus,
    LockoutState,
    LoginAttempt,
    MFAMethod,
    OneTimeToken,
    Session,
    SessionStatus,
    TokenPurpose,
    utcnow,
)


class MemoryStore:
    """In-process store for accounts, sessions and the attempt log.

    Every public operation runs under one re-entrant lock, so each conditional
    update (counter increment, refresh rotation, backup-code removal) is
    indivisible with respect to concurrent callers. Returned records are copies;
    mutating them never changes stored state.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/procauth",
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._username_index: Dict[str, str] = {}
        self._email_index: Dict[str, str] = {}
        self.mfa_secrets: Dict[str, str] = {}
        self.mfa_pending_secrets: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.one_time_tokens: Dict[str, OneTimeToken] = {}
        # RLock so helpers can re-enter while a public operation holds it
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(self._resolve_key_material(mfa_encryption_key))
        if self.persist:
            self._load_state()
        # Last state known to be on disk; restored when a write fails
        self._committed: Dict[str, Any] = self._snapshot()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    def _resolve_key_material(self, key_material: str | None) -> str:
        material = (
            key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if material:
            return material
        key_path = self.fs_root / ".mfa_key"
        try:
            if key_path.exists():
                persisted = key_path.read_text().strip()
                if persisted:
                    return persisted
        except OSError as exc:
            self.logger.warning("mfa_key_read_failed", error=str(exc))
        generated = secrets.token_urlsafe(64)
        try:
            key_path.write_text(generated)
            os.chmod(key_path, 0o600)
        except OSError as exc:
            raise RuntimeError("Unable to persist MFA encryption key") from exc
        return generated

    # accounts
    def create_account(
        self,
        username: str,
        email: str,
        credential_hash: str,
        *,
        status: AccountStatus = AccountStatus.PENDING_VERIFICATION,
        roles: Optional[List[str]] = None,
        profile: Optional[Dict] = None,
    ) -> Account:
        username_key = normalize_login(username)
        email_key = normalize_login(email)
        with self._data_lock:
            if username_key in self._username_index:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if email_key in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            account = Account(
                id=str(uuid.uuid4()),
                username=username_key,
                email=email_key,
                credential_hash=credential_hash,
                status=status,
                roles=list(roles or ["user"]),
                created_at=now,
                updated_at=now,
                profile=dict(profile or {}),
            )
            self.accounts[account.id] = account
            self._username_index[username_key] = account.id
            self._email_index[email_key] = account.id
            self._persist_state()
            return copy.deepcopy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_login(self, login: str) -> Optional[Account]:
        key = normalize_login(login)
        with self._data_lock:
            account_id = self._username_index.get(key) or self._email_index.get(key)
            return self.get_account(account_id) if account_id else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(normalize_login(email))
            return self.get_account(account_id) if account_id else None

    def update_credential(self, account_id: str, credential_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.credential_hash = credential_hash
            account.updated_at = utcnow()
            self._persist_state()
            return True

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]:
        if status == AccountStatus.LOCKED:
            raise ValueError("locked is derived from lockout state and cannot be stored")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.status = status
            account.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(account)

    def mark_email_verified(self, account_id: str, now: datetime) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.email_verified_at = account.email_verified_at or now
            if account.status == AccountStatus.PENDING_VERIFICATION:
                account.status = AccountStatus.ACTIVE
            account.updated_at = now
            self._persist_state()
            return copy.deepcopy(account)

    def record_login(self, account_id: str, now: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.last_login_at = now
            account.login_count += 1
            self._persist_state()

    # lockout
    def increment_failed_attempts(
        self,
        account_id: str,
        *,
        max_attempts: int,
        lockout_duration: timedelta,
        now: datetime,
    ) -> LockoutState:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            state = next_lockout_state(
                account.failed_attempts,
                account.locked_until,
                max_attempts=max_attempts,
                lockout_duration=lockout_duration,
                now=now,
            )
            account.failed_attempts = state.failed_attempts
            account.locked_until = state.locked_until
            account.last_failed_at = now
            self._persist_state()
            return state

    def reset_lockout(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            if account.failed_attempts == 0 and account.locked_until is None:
                return
            account.failed_attempts = 0
            account.locked_until = None
            self._persist_state()

    # mfa
    def begin_mfa_enrollment(
        self,
        account_id: str,
        *,
        enrollment_id: str,
        method: MFAMethod,
        secret: Optional[str],
        backup_code_hashes: List[str],
    ) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.mfa_enabled:
                return False
            account.mfa_enrollment_id = enrollment_id
            account.mfa_pending_method = method
            account.mfa_pending_backup_hashes = list(backup_code_hashes)
            if secret:
                self.mfa_pending_secrets[account_id] = self._cipher.encrypt(secret)
            else:
                self.mfa_pending_secrets.pop(account_id, None)
            self._persist_state()
            return True

    def complete_mfa_enrollment(self, account_id: str, enrollment_id: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if (
                not account
                or account.mfa_enabled
                or account.mfa_enrollment_id != enrollment_id
            ):
                return False
            account.mfa_enabled = True
            account.mfa_method = account.mfa_pending_method or MFAMethod.TOTP
            account.backup_code_hashes = list(account.mfa_pending_backup_hashes)
            sealed = self.mfa_pending_secrets.pop(account_id, None)
            if sealed:
                self.mfa_secrets[account_id] = sealed
            else:
                self.mfa_secrets.pop(account_id, None)
            account.mfa_enrollment_id = None
            account.mfa_pending_method = None
            account.mfa_pending_backup_hashes = []
            account.updated_at = utcnow()
            self._persist_state()
            return True

    def get_mfa_secret(self, account_id: str, *, pending: bool = False) -> Optional[str]:
        with self._data_lock:
            source = self.mfa_pending_secrets if pending else self.mfa_secrets
            return self._cipher.decrypt(source.get(account_id))

    def disable_mfa(self, account_id: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or not account.mfa_enabled:
                return False
            account.mfa_enabled = False
            account.mfa_method = MFAMethod.NONE
            account.backup_code_hashes = []
            account.totp_last_step = None
            self.mfa_secrets.pop(account_id, None)
            account.updated_at = utcnow()
            self._persist_state()
            return True

    def replace_backup_codes(self, account_id: str, code_hashes: List[str]) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or not account.mfa_enabled:
                return False
            account.backup_code_hashes = list(code_hashes)
            self._persist_state()
            return True

    def consume_backup_code(
        self, account_id: str, code_hash: str, *, pending: bool = False
    ) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            codes = (
                account.mfa_pending_backup_hashes if pending else account.backup_code_hashes
            )
            if code_hash not in codes:
                return False
            codes.remove(code_hash)
            self._persist_state()
            return True

    def claim_totp_step(self, account_id: str, step: int) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            if account.totp_last_step is not None and step <= account.totp_last_step:
                return False
            account.totp_last_step = step
            self._persist_state()
            return True

    # device trust
    def add_trusted_device(self, account_id: str, digest: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or digest in account.trusted_devices:
                return False
            account.trusted_devices.append(digest)
            self._persist_state()
            return True

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": session.account_id}
                )
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            self.sessions[session.id] = copy.deepcopy(session)
            self._persist_state()
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_jti: str,
        new_refresh_jti: str,
        now: datetime,
    ) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if (
                not session
                or not session.is_live(now)
                or session.refresh_jti != expected_refresh_jti
            ):
                return None
            session.refresh_jti = new_refresh_jti
            session.last_activity_at = now
            self._persist_state()
            return copy.deepcopy(session)

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.status != SessionStatus.ACTIVE:
                return
            session.last_activity_at = now
            self._persist_state()

    def revoke_session(self, session_id: str, *, reason: str, now: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.status != SessionStatus.ACTIVE:
                return False
            session.status = SessionStatus.REVOKED
            session.revoked_at = now
            session.revoke_reason = reason
            self._persist_state()
            return True

    def revoke_account_sessions(
        self,
        account_id: str,
        *,
        except_session_id: Optional[str] = None,
        reason: str,
        now: datetime,
    ) -> int:
        with self._data_lock:
            revoked = 0
            for session in self.sessions.values():
                if session.account_id != account_id or session.id == except_session_id:
                    continue
                if session.status != SessionStatus.ACTIVE:
                    continue
                session.status = SessionStatus.REVOKED
                session.revoked_at = now
                session.revoke_reason = reason
                revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_sessions(
        self, account_id: str, *, status: Optional[SessionStatus] = SessionStatus.ACTIVE
    ) -> List[Session]:
        with self._data_lock:
            results = [
                copy.deepcopy(s)
                for s in self.sessions.values()
                if s.account_id == account_id and (status is None or s.status == status)
            ]
            return sorted(results, key=lambda s: s.created_at, reverse=True)

    def expire_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = 0
            for session in self.sessions.values():
                if session.status == SessionStatus.ACTIVE and session.expires_at <= now:
                    session.status = SessionStatus.EXPIRED
                    expired += 1
            if expired:
                self._persist_state()
            return expired

    # attempt log
    def append_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._data_lock:
            self.login_attempts.append(copy.deepcopy(attempt))
            self._persist_state()

    def list_login_attempts(
        self, account_id: str, *, since: datetime
    ) -> List[LoginAttempt]:
        with self._data_lock:
            return [
                copy.deepcopy(a)
                for a in self.login_attempts
                if a.account_id == account_id and a.timestamp >= since
            ]

    def purge_login_attempts(self, before: datetime) -> int:
        with self._data_lock:
            kept = [a for a in self.login_attempts if a.timestamp >= before]
            removed = len(self.login_attempts) - len(kept)
            if removed:
                self.login_attempts = kept
                self._persist_state()
            return removed

    # single-use tokens
    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        with self._data_lock:
            if token.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": token.account_id}
                )
            self.one_time_tokens[token.token_hash] = copy.deepcopy(token)
            self._persist_state()
            return copy.deepcopy(token)

    def consume_one_time_token(
        self, purpose: TokenPurpose, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]:
        with self._data_lock:
            token = self.one_time_tokens.get(token_hash)
            if not token or token.purpose != purpose or not token.is_usable(now):
                return None
            token.used = True
            token.used_at = now
            self._persist_state()
            return copy.deepcopy(token)

    def invalidate_one_time_tokens(
        self, account_id: str, purpose: TokenPurpose, now: datetime
    ) -> int:
        with self._data_lock:
            count = 0
            for token in self.one_time_tokens.values():
                if token.account_id == account_id and token.purpose == purpose and not token.used:
                    token.used = True
                    token.used_at = now
                    count += 1
            if count:
                self._persist_state()
            return count

    def purge_one_time_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                key
                for key, token in self.one_time_tokens.items()
                if token.used or token.expires_at <= now
            ]
            for key in stale:
                self.one_time_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, dict):
            return {k: MemoryStore._encode(v) for k, v in value.items()}
        if isinstance(value, list):
            return [MemoryStore._encode(v) for v in value]
        return value

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "accounts": [self._encode(asdict(a)) for a in self.accounts.values()],
            "sessions": [self._encode(asdict(s)) for s in self.sessions.values()],
            "login_attempts": [self._encode(asdict(a)) for a in self.login_attempts],
            "one_time_tokens": [
                self._encode(asdict(t)) for t in self.one_time_tokens.values()
            ],
            "mfa_secrets": dict(self.mfa_secrets),
            "mfa_pending_secrets": dict(self.mfa_pending_secrets),
        }

    def _write_snapshot(self, state: Dict[str, Any]) -> None:
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state, indent=2))
        os.replace(tmp_path, path)

    def _persist_state(self) -> None:
        """Write the current state, or restore the last written one and fail.

        Callers hold ``_data_lock`` and have already applied their change, so a
        failed write rolls that change back before raising.
        """
        if not self.persist:
            return
        state = self._snapshot()
        try:
            self._write_snapshot(state)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc))
            self._restore(self._committed)
            raise StorageUnavailable("failed to persist auth store state") from exc
        self._committed = state

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self._restore(data)
        return True

    def _restore(self, data: Dict[str, Any]) -> None:
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self._username_index = {a.username: a.id for a in self.accounts.values()}
        self._email_index = {a.email: a.id for a in self.accounts.values()}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.login_attempts = [
            self._deserialize_attempt(a) for a in data.get("login_attempts", [])
        ]
        self.one_time_tokens = {
            t["token_hash"]: self._deserialize_token(t)
            for t in data.get("one_time_tokens", [])
        }
        self.mfa_secrets = dict(data.get("mfa_secrets", {}))
        self.mfa_pending_secrets = dict(data.get("mfa_pending_secrets", {}))

    def _deserialize_account(self, data: dict) -> Account:
        pending_method = data.get("mfa_pending_method")
        return Account(
            id=data["id"],
            username=data["username"],
            email=data["email"],
            credential_hash=data["credential_hash"],
            status=AccountStatus(data.get("status", AccountStatus.PENDING_VERIFICATION)),
            roles=list(data.get("roles") or ["user"]),
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            failed_attempts=int(data.get("failed_attempts", 0)),
            locked_until=parse_datetime(data.get("locked_until")),
            last_failed_at=parse_datetime(data.get("last_failed_at")),
            mfa_enabled=bool(data.get("mfa_enabled", False)),
            mfa_method=MFAMethod(data.get("mfa_method", MFAMethod.NONE)),
            backup_code_hashes=list(data.get("backup_code_hashes", [])),
            mfa_enrollment_id=data.get("mfa_enrollment_id"),
            mfa_pending_method=MFAMethod(pending_method) if pending_method else None,
            mfa_pending_backup_hashes=list(data.get("mfa_pending_backup_hashes", [])),
            totp_last_step=data.get("totp_last_step"),
            trusted_devices=list(data.get("trusted_devices", [])),
            last_login_at=parse_datetime(data.get("last_login_at")),
            login_count=int(data.get("login_count", 0)),
            email_verified_at=parse_datetime(data.get("email_verified_at")),
            profile=dict(data.get("profile") or {}),
        )

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            account_id=data["account_id"],
            refresh_jti=data["refresh_jti"],
            created_at=parse_datetime(data["created_at"]),
            last_activity_at=parse_datetime(data["last_activity_at"]),
            expires_at=parse_datetime(data["expires_at"]),
            status=SessionStatus(data.get("status", SessionStatus.ACTIVE)),
            device_fingerprint=data.get("device_fingerprint"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            remember_me=bool(data.get("remember_me", False)),
            revoked_at=parse_datetime(data.get("revoked_at")),
            revoke_reason=data.get("revoke_reason"),
        )

    def _deserialize_attempt(self, data: dict) -> LoginAttempt:
        return LoginAttempt(
            id=data["id"],
            login=data["login"],
            success=bool(data["success"]),
            timestamp=parse_datetime(data["timestamp"]),
            account_id=data.get("account_id"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            reason=data.get("reason"),
        )

    def _deserialize_token(self, data: dict) -> OneTimeToken:
        return OneTimeToken(
            token_hash=data["token_hash"],
            purpose=TokenPurpose(data["purpose"]),
            account_id=data["account_id"],
            expires_at=parse_datetime(data["expires_at"]),
            created_at=parse_datetime(data["created_at"]),
            used=bool(data.get("used", False)),
            used_at=parse_datetime(data.get("used_at")),
        )
