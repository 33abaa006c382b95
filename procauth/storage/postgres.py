from __future__ import annotations

import json
import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from procauth.logging import get_logger
from procauth.storage.common import (
    SecretCipher,
    next_lockout_state,
    normalize_login,
    parse_datetime,
    parse_json_meta,
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

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS auth_account (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        credential_hash TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending_verification',
        roles JSONB NOT NULL DEFAULT '["user"]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_failed_at TIMESTAMPTZ,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_method TEXT NOT NULL DEFAULT 'none',
        mfa_secret TEXT,
        backup_code_hashes JSONB NOT NULL DEFAULT '[]'::jsonb,
        mfa_enrollment_id TEXT,
        mfa_pending_method TEXT,
        mfa_pending_secret TEXT,
        mfa_pending_backup_hashes JSONB NOT NULL DEFAULT '[]'::jsonb,
        totp_last_step BIGINT,
        trusted_devices JSONB NOT NULL DEFAULT '[]'::jsonb,
        last_login_at TIMESTAMPTZ,
        login_count INTEGER NOT NULL DEFAULT 0,
        email_verified_at TIMESTAMPTZ,
        profile JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        refresh_jti TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        device_fingerprint TEXT,
        ip_address TEXT,
        user_agent TEXT,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        revoke_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id, status)",
    """
    CREATE TABLE IF NOT EXISTS auth_login_attempt (
        id TEXT PRIMARY KEY,
        login TEXT NOT NULL,
        account_id TEXT REFERENCES auth_account(id) ON DELETE SET NULL,
        success BOOLEAN NOT NULL,
        attempted_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_login_attempt_account_idx ON auth_login_attempt (account_id, attempted_at)",
    """
    CREATE TABLE IF NOT EXISTS auth_one_time_token (
        token_hash TEXT PRIMARY KEY,
        purpose TEXT NOT NULL,
        account_id TEXT NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ
    )
    """,
]


class PostgresStore:
    """Postgres-backed store; every conditional update is a single statement
    or a ``SELECT ... FOR UPDATE`` transaction so concurrent requests serialize
    on the affected row."""

    def __init__(
        self, dsn: str, fs_root: str, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        key_material = (
            mfa_encryption_key or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not key_material:
            raise RuntimeError("MFA_SECRET_KEY or JWT_SECRET is required for Postgres storage")
        self._cipher = SecretCipher(key_material)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("database unavailable") from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # row mapping
    def _account_from_row(self, row: dict) -> Account:
        pending_method = row.get("mfa_pending_method")
        return Account(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            credential_hash=row["credential_hash"],
            status=AccountStatus(row.get("status") or AccountStatus.PENDING_VERIFICATION),
            roles=list(self._json_list(row.get("roles")) or ["user"]),
            created_at=parse_datetime(row.get("created_at")) or utcnow(),
            updated_at=parse_datetime(row.get("updated_at")) or utcnow(),
            failed_attempts=int(row.get("failed_attempts") or 0),
            locked_until=parse_datetime(row.get("locked_until")),
            last_failed_at=parse_datetime(row.get("last_failed_at")),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            mfa_method=MFAMethod(row.get("mfa_method") or MFAMethod.NONE),
            backup_code_hashes=self._json_list(row.get("backup_code_hashes")),
            mfa_enrollment_id=row.get("mfa_enrollment_id"),
            mfa_pending_method=MFAMethod(pending_method) if pending_method else None,
            mfa_pending_backup_hashes=self._json_list(row.get("mfa_pending_backup_hashes")),
            totp_last_step=row.get("totp_last_step"),
            trusted_devices=self._json_list(row.get("trusted_devices")),
            last_login_at=parse_datetime(row.get("last_login_at")),
            login_count=int(row.get("login_count") or 0),
            email_verified_at=parse_datetime(row.get("email_verified_at")),
            profile=parse_json_meta(row.get("profile")) or {},
        )

    @staticmethod
    def _json_list(raw) -> List[str]:
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                return []
        return list(raw) if isinstance(raw, list) else []

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            refresh_jti=row["refresh_jti"],
            created_at=parse_datetime(row["created_at"]),
            last_activity_at=parse_datetime(row["last_activity_at"]),
            expires_at=parse_datetime(row["expires_at"]),
            status=SessionStatus(row.get("status") or SessionStatus.ACTIVE),
            device_fingerprint=row.get("device_fingerprint"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            remember_me=bool(row.get("remember_me", False)),
            revoked_at=parse_datetime(row.get("revoked_at")),
            revoke_reason=row.get("revoke_reason"),
        )

    @staticmethod
    def _token_from_row(row: dict) -> OneTimeToken:
        return OneTimeToken(
            token_hash=row["token_hash"],
            purpose=TokenPurpose(row["purpose"]),
            account_id=str(row["account_id"]),
            expires_at=parse_datetime(row["expires_at"]),
            created_at=parse_datetime(row.get("created_at")) or utcnow(),
            used=bool(row.get("used", False)),
            used_at=parse_datetime(row.get("used_at")),
        )

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
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_account (id, username, email, credential_hash, status, roles, profile)
                    VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s::jsonb)
                    RETURNING *
                    """,
                    (
                        account_id,
                        normalize_login(username),
                        normalize_login(email),
                        credential_hash,
                        status.value,
                        json.dumps(list(roles or ["user"])),
                        json.dumps(profile) if profile else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
            field = "username" if "username" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_login(self, login: str) -> Optional[Account]:
        key = normalize_login(login)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE username = %s OR email = %s "
                "ORDER BY (username = %s) DESC LIMIT 1",
                (key, key, key),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE email = %s", (normalize_login(email),)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_credential(self, account_id: str, credential_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_account SET credential_hash = %s, updated_at = now() WHERE id = %s",
                (credential_hash, account_id),
            )
            return result.rowcount > 0

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]:
        if status == AccountStatus.LOCKED:
            raise ValueError("locked is derived from lockout state and cannot be stored")
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_account SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
                (status.value, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def mark_email_verified(self, account_id: str, now: datetime) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET email_verified_at = COALESCE(email_verified_at, %s),
                    status = CASE WHEN status = 'pending_verification' THEN 'active' ELSE status END,
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, now, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def record_login(self, account_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_account SET last_login_at = %s, login_count = login_count + 1 WHERE id = %s",
                (now, account_id),
            )

    # lockout
    def increment_failed_attempts(
        self,
        account_id: str,
        *,
        max_attempts: int,
        lockout_duration: timedelta,
        now: datetime,
    ) -> LockoutState:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT failed_attempts, locked_until FROM auth_account WHERE id = %s FOR UPDATE",
                (account_id,),
            ).fetchone()
            if not row:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            state = next_lockout_state(
                int(row.get("failed_attempts") or 0),
                parse_datetime(row.get("locked_until")),
                max_attempts=max_attempts,
                lockout_duration=lockout_duration,
                now=now,
            )
            conn.execute(
                """
                UPDATE auth_account
                SET failed_attempts = %s, locked_until = %s, last_failed_at = %s
                WHERE id = %s
                """,
                (state.failed_attempts, state.locked_until, now, account_id),
            )
        return state

    def reset_lockout(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_account SET failed_attempts = 0, locked_until = NULL
                WHERE id = %s AND (failed_attempts <> 0 OR locked_until IS NOT NULL)
                """,
                (account_id,),
            )

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
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_account
                SET mfa_enrollment_id = %s, mfa_pending_method = %s,
                    mfa_pending_secret = %s, mfa_pending_backup_hashes = %s::jsonb
                WHERE id = %s AND mfa_enabled = FALSE
                """,
                (
                    enrollment_id,
                    method.value,
                    self._cipher.encrypt(secret),
                    json.dumps(list(backup_code_hashes)),
                    account_id,
                ),
            )
            return result.rowcount > 0

    def complete_mfa_enrollment(self, account_id: str, enrollment_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET mfa_enabled = TRUE,
                    mfa_method = COALESCE(mfa_pending_method, 'totp'),
                    mfa_secret = mfa_pending_secret,
                    backup_code_hashes = mfa_pending_backup_hashes,
                    mfa_enrollment_id = NULL,
                    mfa_pending_method = NULL,
                    mfa_pending_secret = NULL,
                    mfa_pending_backup_hashes = '[]'::jsonb,
                    updated_at = now()
                WHERE id = %s AND mfa_enabled = FALSE AND mfa_enrollment_id = %s
                RETURNING id
                """,
                (account_id, enrollment_id),
            ).fetchone()
        return row is not None

    def get_mfa_secret(self, account_id: str, *, pending: bool = False) -> Optional[str]:
        column = "mfa_pending_secret" if pending else "mfa_secret"
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {column} AS secret FROM auth_account WHERE id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return self._cipher.decrypt(row.get("secret"))

    def disable_mfa(self, account_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET mfa_enabled = FALSE, mfa_method = 'none', mfa_secret = NULL,
                    backup_code_hashes = '[]'::jsonb, totp_last_step = NULL, updated_at = now()
                WHERE id = %s AND mfa_enabled = TRUE
                RETURNING id
                """,
                (account_id,),
            ).fetchone()
        return row is not None

    def replace_backup_codes(self, account_id: str, code_hashes: List[str]) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_account SET backup_code_hashes = %s::jsonb WHERE id = %s AND mfa_enabled = TRUE",
                (json.dumps(list(code_hashes)), account_id),
            )
            return result.rowcount > 0

    def consume_backup_code(
        self, account_id: str, code_hash: str, *, pending: bool = False
    ) -> bool:
        column = "mfa_pending_backup_hashes" if pending else "backup_code_hashes"
        with self._connect() as conn:
            # jsonb ``-`` removes the matching string element; the ``?`` guard
            # makes the removal succeed for exactly one caller
            row = conn.execute(
                f"""
                UPDATE auth_account SET {column} = {column} - %s
                WHERE id = %s AND {column} ? %s
                RETURNING id
                """,
                (code_hash, account_id, code_hash),
            ).fetchone()
        return row is not None

    def claim_totp_step(self, account_id: str, step: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account SET totp_last_step = %s
                WHERE id = %s AND (totp_last_step IS NULL OR totp_last_step < %s)
                RETURNING id
                """,
                (step, account_id, step),
            ).fetchone()
        return row is not None

    # device trust
    def add_trusted_device(self, account_id: str, digest: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET trusted_devices = trusted_devices || jsonb_build_array(%s::text)
                WHERE id = %s AND NOT (trusted_devices ? %s)
                RETURNING id
                """,
                (digest, account_id, digest),
            ).fetchone()
        return row is not None

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, account_id, refresh_jti, created_at, last_activity_at,
                        expires_at, status, device_fingerprint, ip_address, user_agent, remember_me)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.refresh_jti,
                        session.created_at,
                        session.last_activity_at,
                        session.expires_at,
                        session.status.value,
                        session.device_fingerprint,
                        session.ip_address,
                        session.user_agent,
                        session.remember_me,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account does not exist", {"account_id": session.account_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": session.id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_jti: str,
        new_refresh_jti: str,
        now: datetime,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET refresh_jti = %s, last_activity_at = %s
                WHERE id = %s AND refresh_jti = %s AND status = 'active' AND expires_at > %s
                RETURNING *
                """,
                (new_refresh_jti, now, session_id, expected_refresh_jti, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_activity_at = %s WHERE id = %s AND status = 'active'",
                (now, session_id),
            )

    def revoke_session(self, session_id: str, *, reason: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET status = 'revoked', revoked_at = %s, revoke_reason = %s
                WHERE id = %s AND status = 'active'
                """,
                (now, reason, session_id),
            )
            return result.rowcount > 0

    def revoke_account_sessions(
        self,
        account_id: str,
        *,
        except_session_id: Optional[str] = None,
        reason: str,
        now: datetime,
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET status = 'revoked', revoked_at = %s, revoke_reason = %s
                WHERE account_id = %s AND status = 'active' AND id IS DISTINCT FROM %s
                """,
                (now, reason, account_id, except_session_id),
            )
            return result.rowcount

    def list_sessions(
        self, account_id: str, *, status: Optional[SessionStatus] = SessionStatus.ACTIVE
    ) -> List[Session]:
        with self._connect() as conn:
            if status is None:
                rows = conn.execute(
                    "SELECT * FROM auth_session WHERE account_id = %s ORDER BY created_at DESC",
                    (account_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM auth_session WHERE account_id = %s AND status = %s ORDER BY created_at DESC",
                    (account_id, status.value),
                ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def expire_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET status = 'expired' WHERE status = 'active' AND expires_at <= %s",
                (now,),
            )
            return result.rowcount

    # attempt log
    def append_login_attempt(self, attempt: LoginAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_login_attempt (id, login, account_id, success, attempted_at, ip_address, user_agent, reason)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.login,
                    attempt.account_id,
                    attempt.success,
                    attempt.timestamp,
                    attempt.ip_address,
                    attempt.user_agent,
                    attempt.reason,
                ),
            )

    def list_login_attempts(
        self, account_id: str, *, since: datetime
    ) -> List[LoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_login_attempt
                WHERE account_id = %s AND attempted_at >= %s
                ORDER BY attempted_at
                """,
                (account_id, since),
            ).fetchall()
        return [
            LoginAttempt(
                id=str(row["id"]),
                login=row["login"],
                success=bool(row["success"]),
                timestamp=parse_datetime(row["attempted_at"]),
                account_id=row.get("account_id"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                reason=row.get("reason"),
            )
            for row in rows
        ]

    def purge_login_attempts(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_login_attempt WHERE attempted_at < %s", (before,)
            )
            return result.rowcount

    # single-use tokens
    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_one_time_token (token_hash, purpose, account_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        token.token_hash,
                        token.purpose.value,
                        token.account_id,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account does not exist", {"account_id": token.account_id}
            )
        return token

    def consume_one_time_token(
        self, purpose: TokenPurpose, token_hash: str, now: datetime
    ) -> Optional[OneTimeToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_one_time_token SET used = TRUE, used_at = %s
                WHERE token_hash = %s AND purpose = %s AND used = FALSE AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, purpose.value, now),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def invalidate_one_time_tokens(
        self, account_id: str, purpose: TokenPurpose, now: datetime
    ) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_one_time_token SET used = TRUE, used_at = %s
                WHERE account_id = %s AND purpose = %s AND used = FALSE
                """,
                (now, account_id, purpose.value),
            )
            return result.rowcount

    def purge_one_time_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_one_time_token WHERE used = TRUE OR expires_at <= %s",
                (now,),
            )
            return result.rowcount
