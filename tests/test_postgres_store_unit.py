import json
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from psycopg import OperationalError, errors

from procauth.logging import get_logger
from procauth.storage.common import SecretCipher
from procauth.storage.errors import ConstraintViolation, StorageUnavailable
from procauth.storage.models import AccountStatus, MFAMethod, SessionStatus, TokenPurpose
from procauth.storage.postgres import PostgresStore

NOW = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class DownPool:
    def connection(self):
        raise OperationalError("connection refused")


class FakeResult:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    """Replays scripted rows, or raises a scripted error, for each statement."""

    def __init__(self, *results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else None
        if isinstance(result, Exception):
            raise result
        return FakeResult(result, 1 if result else 0)


class ScriptedPool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(tmp_path: Path, pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    store.logger = get_logger("tests.postgres")
    store._cipher = SecretCipher("unit-key")
    return store


def _account_row(**overrides):
    row = {
        "id": "acct-1",
        "username": "jane",
        "email": "jane@example.com",
        "credential_hash": "$argon2id$stub",
        "status": "active",
        "roles": '["user", "admin"]',
        "created_at": "2024-03-01T09:00:00+00:00",
        "updated_at": datetime(2024, 3, 2, 9, 0),
        "failed_attempts": 2,
        "locked_until": None,
        "mfa_enabled": True,
        "mfa_method": "totp",
        "backup_code_hashes": ["h1", "h2"],
        "mfa_pending_method": None,
        "trusted_devices": "not json",
        "login_count": None,
        "profile": '{"team": "ops"}',
    }
    row.update(overrides)
    return row


class TestRowMapping:
    def test_account_row_decodes_json_columns(self, tmp_path):
        store = _store(tmp_path, DummyPool())

        account = store._account_from_row(_account_row())

        assert account.roles == ["user", "admin"]
        assert account.backup_code_hashes == ["h1", "h2"]
        assert account.trusted_devices == []
        assert account.profile == {"team": "ops"}
        assert account.mfa_method == MFAMethod.TOTP
        assert account.mfa_pending_method is None
        assert account.login_count == 0
        assert account.failed_attempts == 2

    def test_account_row_normalizes_timestamps_to_utc(self, tmp_path):
        store = _store(tmp_path, DummyPool())

        account = store._account_from_row(_account_row())

        assert account.created_at == datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        assert account.updated_at.tzinfo is not None

    def test_account_row_defaults_missing_roles(self, tmp_path):
        store = _store(tmp_path, DummyPool())

        account = store._account_from_row(_account_row(roles="[]", status=None))

        assert account.roles == ["user"]
        assert account.status == AccountStatus.PENDING_VERIFICATION

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ('["a", "b"]', ["a", "b"]),
            (["a"], ["a"]),
            ("{broken", []),
            ('{"a": 1}', []),
            (None, []),
        ],
    )
    def test_json_list(self, raw, expected):
        assert PostgresStore._json_list(raw) == expected

    def test_session_row(self):
        session = PostgresStore._session_from_row(
            {
                "id": "s-1",
                "account_id": "acct-1",
                "refresh_jti": "jti",
                "created_at": NOW,
                "last_activity_at": NOW,
                "expires_at": NOW + timedelta(hours=24),
                "status": "revoked",
                "remember_me": True,
                "revoked_at": NOW,
                "revoke_reason": "logout",
            }
        )

        assert session.status == SessionStatus.REVOKED
        assert session.remember_me is True
        assert session.revoke_reason == "logout"
        assert session.ip_address is None

    def test_token_row(self):
        token = PostgresStore._token_from_row(
            {
                "token_hash": "digest",
                "purpose": "password_reset",
                "account_id": "acct-1",
                "expires_at": NOW,
                "used": True,
                "used_at": NOW,
            }
        )

        assert token.purpose == TokenPurpose.PASSWORD_RESET
        assert token.used is True
        assert token.created_at is not None


class TestStatements:
    def test_locked_status_rejected_before_database_access(self, tmp_path):
        store = _store(tmp_path, DummyPool())

        with pytest.raises(ValueError):
            store.set_account_status("acct-1", AccountStatus.LOCKED)

    def test_operational_error_maps_to_storage_unavailable(self, tmp_path):
        store = _store(tmp_path, DownPool())

        with pytest.raises(StorageUnavailable):
            store.get_account("acct-1")

    def test_unique_violation_maps_to_constraint_violation(self, tmp_path):
        conn = FakeConnection(errors.UniqueViolation("duplicate key"))
        store = _store(tmp_path, ScriptedPool(conn))

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_account("Jane", "Jane@Example.com", "hash")

        assert excinfo.value.detail["field"] in {"username", "email"}
        _, params = conn.statements[0]
        assert params[1:3] == ("jane", "jane@example.com")
        assert json.loads(params[5]) == ["user"]

    def test_failed_attempt_locks_at_threshold(self, tmp_path):
        conn = FakeConnection({"failed_attempts": 4, "locked_until": None})
        store = _store(tmp_path, ScriptedPool(conn))

        state = store.increment_failed_attempts(
            "acct-1", max_attempts=5, lockout_duration=timedelta(minutes=15), now=NOW
        )

        assert state.newly_locked is True
        assert state.locked_until == NOW + timedelta(minutes=15)
        select_sql, _ = conn.statements[0]
        assert select_sql.endswith("FOR UPDATE")
        _, update_params = conn.statements[1]
        assert update_params == (5, NOW + timedelta(minutes=15), NOW, "acct-1")

    def test_failed_attempt_for_missing_account(self, tmp_path):
        store = _store(tmp_path, ScriptedPool(FakeConnection(None)))

        with pytest.raises(ConstraintViolation):
            store.increment_failed_attempts(
                "missing", max_attempts=5, lockout_duration=timedelta(minutes=15), now=NOW
            )

    def test_mfa_secret_is_sealed_and_unsealed(self, tmp_path):
        conn = FakeConnection(None)
        store = _store(tmp_path, ScriptedPool(conn))

        store.begin_mfa_enrollment(
            "acct-1",
            enrollment_id="e-1",
            method=MFAMethod.TOTP,
            secret="JBSWY3DPEHPK3PXP",
            backup_code_hashes=["h1"],
        )
        _, params = conn.statements[0]
        sealed = params[2]
        assert sealed != "JBSWY3DPEHPK3PXP"

        conn.results.append({"secret": sealed})
        assert store.get_mfa_secret("acct-1", pending=True) == "JBSWY3DPEHPK3PXP"
        assert "mfa_pending_secret" in conn.statements[1][0]

    def test_rotation_returns_none_when_jti_is_stale(self, tmp_path):
        store = _store(tmp_path, ScriptedPool(FakeConnection(None)))

        rotated = store.rotate_session_tokens(
            "s-1", expected_refresh_jti="old", new_refresh_jti="new", now=NOW
        )

        assert rotated is None
