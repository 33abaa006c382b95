"""Tests for the in-process store and its JSON persistence."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from procauth.storage.common import SecretCipher, hash_opaque_token, next_lockout_state
from procauth.storage.errors import ConstraintViolation, StorageUnavailable
from procauth.storage.memory import MemoryStore
from procauth.storage.models import (
    AccountStatus,
    LoginAttempt,
    MFAMethod,
    OneTimeToken,
    Session,
    SessionStatus,
    TokenPurpose,
)

NOW = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def persistent_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "persisted"), mfa_encryption_key="persist-key")


class TestAccounts:
    def test_lookup_folds_case_and_whitespace(self, store):
        created = store.create_account("Jane", "Jane@Example.com", "hash")

        assert store.get_account_by_login("  JANE ").id == created.id
        assert store.get_account_by_login("jane@example.com").id == created.id
        assert store.get_account_by_email("JANE@EXAMPLE.COM").id == created.id
        assert created.status == AccountStatus.PENDING_VERIFICATION
        assert created.roles == ["user"]

    def test_uniqueness_is_enforced(self, store):
        store.create_account("jane", "jane@example.com", "hash")

        with pytest.raises(ConstraintViolation) as by_name:
            store.create_account("JANE", "x@example.com", "hash")
        with pytest.raises(ConstraintViolation) as by_email:
            store.create_account("janet", "JANE@example.com", "hash")
        assert by_name.value.detail == {"field": "username"}
        assert by_email.value.detail == {"field": "email"}

    def test_returned_records_are_copies(self, store):
        created = store.create_account("jane", "jane@example.com", "hash")
        created.roles.append("admin")

        assert store.get_account(created.id).roles == ["user"]

    def test_locked_is_never_stored(self, store):
        created = store.create_account("jane", "jane@example.com", "hash")

        with pytest.raises(ValueError):
            store.set_account_status(created.id, AccountStatus.LOCKED)

    def test_effective_status_derives_locked(self, store):
        created = store.create_account("jane", "jane@example.com", "hash", status=AccountStatus.ACTIVE)
        store.increment_failed_attempts(
            created.id, max_attempts=1, lockout_duration=timedelta(minutes=15), now=NOW
        )

        account = store.get_account(created.id)
        assert account.status == AccountStatus.ACTIVE
        assert account.effective_status(NOW) == AccountStatus.LOCKED
        assert account.effective_status(NOW + timedelta(minutes=15)) == AccountStatus.ACTIVE

    def test_verifying_email_activates_pending_account(self, store):
        created = store.create_account("jane", "jane@example.com", "hash")

        verified = store.mark_email_verified(created.id, NOW)

        assert verified.status == AccountStatus.ACTIVE
        assert verified.email_verified_at == NOW


class TestLockoutCounter:
    def test_threshold_and_fresh_cycle(self):
        state = next_lockout_state(4, None, max_attempts=5, lockout_duration=timedelta(minutes=15), now=NOW)
        assert state.newly_locked is True
        assert state.locked_until == NOW + timedelta(minutes=15)

        later = NOW + timedelta(minutes=20)
        fresh = next_lockout_state(
            5, state.locked_until, max_attempts=5, lockout_duration=timedelta(minutes=15), now=later
        )
        assert (fresh.failed_attempts, fresh.locked_until, fresh.newly_locked) == (1, None, False)


class TestSessionsAndTokens:
    def _account(self, store):
        return store.create_account("jane", "jane@example.com", "hash", status=AccountStatus.ACTIVE)

    def test_session_requires_existing_account(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_session(Session.new("missing", timedelta(hours=1), NOW))

    def test_rotation_is_compare_and_swap(self, store):
        session = store.create_session(Session.new(self._account(store).id, timedelta(hours=1), NOW))

        rotated = store.rotate_session_tokens(
            session.id, expected_refresh_jti=session.refresh_jti, new_refresh_jti="next", now=NOW
        )
        stale = store.rotate_session_tokens(
            session.id, expected_refresh_jti=session.refresh_jti, new_refresh_jti="other", now=NOW
        )

        assert rotated.refresh_jti == "next"
        assert stale is None

    def test_expire_and_list(self, store):
        account = self._account(store)
        short = store.create_session(Session.new(account.id, timedelta(minutes=5), NOW))
        long = store.create_session(Session.new(account.id, timedelta(hours=5), NOW + timedelta(seconds=1)))

        assert store.expire_sessions(NOW + timedelta(minutes=10)) == 1
        assert [s.id for s in store.list_sessions(account.id)] == [long.id]
        assert store.get_session(short.id).status == SessionStatus.EXPIRED
        assert len(store.list_sessions(account.id, status=None)) == 2

    def test_one_time_token_consumption(self, store):
        account = self._account(store)
        digest = hash_opaque_token("raw-token")
        store.create_one_time_token(
            OneTimeToken(
                token_hash=digest,
                purpose=TokenPurpose.PASSWORD_RESET,
                account_id=account.id,
                expires_at=NOW + timedelta(hours=1),
            )
        )

        assert store.consume_one_time_token(TokenPurpose.EMAIL_VERIFICATION, digest, NOW) is None
        assert store.consume_one_time_token(TokenPurpose.PASSWORD_RESET, digest, NOW).used is True
        assert store.consume_one_time_token(TokenPurpose.PASSWORD_RESET, digest, NOW) is None
        assert store.purge_one_time_tokens(NOW) == 1

    def test_totp_steps_only_move_forward(self, store):
        account = self._account(store)

        assert store.claim_totp_step(account.id, 100) is True
        assert store.claim_totp_step(account.id, 100) is False
        assert store.claim_totp_step(account.id, 99) is False
        assert store.claim_totp_step(account.id, 101) is True

    def test_attempt_log_window_and_purge(self, store):
        account = self._account(store)
        for offset in (0, 2, 40):
            store.append_login_attempt(
                LoginAttempt(
                    login="jane",
                    success=True,
                    timestamp=NOW - timedelta(days=offset),
                    account_id=account.id,
                )
            )

        assert len(store.list_login_attempts(account.id, since=NOW - timedelta(days=7))) == 2
        assert store.purge_login_attempts(NOW - timedelta(days=30)) == 1


class TestPersistence:
    def test_state_survives_reload(self, tmp_path, persistent_store):
        account = persistent_store.create_account(
            "jane", "jane@example.com", "hash", status=AccountStatus.ACTIVE, profile={"team": "ops"}
        )
        persistent_store.begin_mfa_enrollment(
            account.id,
            enrollment_id="e-1",
            method=MFAMethod.TOTP,
            secret="JBSWY3DPEHPK3PXP",
            backup_code_hashes=["h1", "h2"],
        )
        persistent_store.complete_mfa_enrollment(account.id, "e-1")
        session = persistent_store.create_session(
            Session.new(account.id, timedelta(hours=1), NOW, ip_address="10.0.0.1")
        )

        reloaded = MemoryStore(fs_root=str(tmp_path / "persisted"), mfa_encryption_key="persist-key")

        restored = reloaded.get_account_by_login("jane")
        assert restored.mfa_enabled is True
        assert restored.mfa_method == MFAMethod.TOTP
        assert restored.backup_code_hashes == ["h1", "h2"]
        assert restored.profile == {"team": "ops"}
        assert reloaded.get_mfa_secret(account.id) == "JBSWY3DPEHPK3PXP"
        assert reloaded.get_session(session.id).expires_at == session.expires_at
        assert reloaded.get_session(session.id).ip_address == "10.0.0.1"

    def test_secrets_are_sealed_on_disk(self, tmp_path, persistent_store):
        account = persistent_store.create_account("jane", "jane@example.com", "hash")
        persistent_store.begin_mfa_enrollment(
            account.id,
            enrollment_id="e-1",
            method=MFAMethod.TOTP,
            secret="JBSWY3DPEHPK3PXP",
            backup_code_hashes=[],
        )

        raw = (tmp_path / "persisted" / "state" / "auth_store.json").read_text()

        assert "JBSWY3DPEHPK3PXP" not in raw
        assert account.id in json.loads(raw)["mfa_pending_secrets"]

    def test_failed_write_restores_last_written_state(self, tmp_path, persistent_store, monkeypatch):
        kept = persistent_store.create_account("jane", "jane@example.com", "hash")

        def disk_full(state):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(persistent_store, "_write_snapshot", disk_full)
        with pytest.raises(StorageUnavailable):
            persistent_store.create_account("bob", "bob@example.com", "hash")
        with pytest.raises(StorageUnavailable):
            persistent_store.set_account_status(kept.id, AccountStatus.SUSPENDED)

        assert persistent_store.get_account_by_login("bob") is None
        assert persistent_store.get_account(kept.id).status == AccountStatus.PENDING_VERIFICATION
        monkeypatch.undo()
        assert persistent_store.create_account("bob", "bob@example.com", "hash").username == "bob"

    def test_foreign_key_cannot_unseal(self):
        sealed = SecretCipher("key-one").encrypt("JBSWY3DPEHPK3PXP")

        assert SecretCipher("key-two").decrypt(sealed) is None
        assert SecretCipher("key-one").decrypt(sealed) == "JBSWY3DPEHPK3PXP"
