"""Tests for session issuance, rotation and revocation."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from procauth.service.errors import SessionRevoked, TokenExpired, TokenInvalid
from procauth.service.sessions import SessionContext, SessionManager
from procauth.service.tokens import TokenCodec, TokenType
from procauth.storage.models import AccountStatus, SessionStatus


@pytest.fixture
def manager(store, settings, clock):
    return SessionManager(store, TokenCodec(settings, clock=clock), settings, clock=clock)


@pytest.fixture
def account(store):
    return store.create_account("hana", "hana@example.com", "hash", status=AccountStatus.ACTIVE)


class TestIssuance:
    def test_access_and_refresh_bind_to_session(self, manager, account):
        issued = manager.create_session(account, SessionContext(ip_address="10.0.0.1"))

        access = manager.verify(issued.tokens.access_token)
        refresh = manager.verify(issued.tokens.refresh_token, TokenType.REFRESH)

        assert access.session.id == issued.session.id
        assert refresh.payload["jti"] == issued.session.refresh_jti
        assert issued.session.ip_address == "10.0.0.1"

    def test_session_lifetime_follows_remember_me(self, manager, account, clock):
        short = manager.create_session(account, SessionContext())
        long = manager.create_session(account, SessionContext(remember_me=True))

        assert short.session.expires_at == clock() + timedelta(hours=24)
        assert long.session.expires_at == clock() + timedelta(days=30)
        assert short.tokens.access_expires_at == clock() + timedelta(minutes=15)

    def test_access_token_expires_before_session(self, manager, account, clock):
        issued = manager.create_session(account, SessionContext())
        clock.advance(minutes=16)

        with pytest.raises(TokenExpired):
            manager.verify(issued.tokens.access_token)
        assert manager.verify(issued.tokens.refresh_token, TokenType.REFRESH)


class TestRotation:
    def test_rotation_issues_new_pair_and_retires_old_refresh(self, manager, account):
        issued = manager.create_session(account, SessionContext())

        rotated = manager.rotate(issued.tokens.refresh_token)

        assert rotated.session.id == issued.session.id
        assert rotated.tokens.refresh_token != issued.tokens.refresh_token
        with pytest.raises(TokenInvalid):
            manager.rotate(issued.tokens.refresh_token)
        assert manager.rotate(rotated.tokens.refresh_token)

    def test_old_refresh_token_fails_verification(self, manager, account):
        issued = manager.create_session(account, SessionContext())
        manager.rotate(issued.tokens.refresh_token)

        with pytest.raises(TokenInvalid):
            manager.verify(issued.tokens.refresh_token, TokenType.REFRESH)

    def test_concurrent_rotation_succeeds_once(self, manager, account):
        issued = manager.create_session(account, SessionContext())

        def attempt(_):
            try:
                manager.rotate(issued.tokens.refresh_token)
                return True
            except TokenInvalid:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(10)))

        assert results.count(True) == 1

    def test_access_token_cannot_refresh(self, manager, account):
        issued = manager.create_session(account, SessionContext())

        with pytest.raises(TokenInvalid):
            manager.rotate(issued.tokens.access_token)


class TestRevocation:
    def test_revoked_session_rejects_both_tokens(self, manager, account):
        issued = manager.create_session(account, SessionContext())

        assert manager.revoke(issued.session.id) is True

        with pytest.raises(SessionRevoked):
            manager.verify(issued.tokens.access_token)
        with pytest.raises(SessionRevoked):
            manager.rotate(issued.tokens.refresh_token)
        assert manager.revoke(issued.session.id) is False

    def test_revoke_all_can_keep_current(self, manager, store, account):
        keep = manager.create_session(account, SessionContext())
        manager.create_session(account, SessionContext())
        manager.create_session(account, SessionContext())

        count = manager.revoke_all(account.id, except_session_id=keep.session.id)

        assert count == 2
        assert [s.id for s in manager.list_active(account.id)] == [keep.session.id]
        assert store.get_session(keep.session.id).status == SessionStatus.ACTIVE

    def test_expired_session_fails_and_is_swept(self, manager, store, account, clock):
        issued = manager.create_session(account, SessionContext())
        clock.advance(hours=25)

        with pytest.raises(TokenExpired):
            manager.rotate(issued.tokens.refresh_token)
        assert manager.list_active(account.id) == []
        assert manager.sweep() == 1
        assert store.get_session(issued.session.id).status == SessionStatus.EXPIRED
        assert manager.sweep() == 0

    def test_touch_updates_activity(self, manager, store, account, clock):
        issued = manager.create_session(account, SessionContext())
        clock.advance(minutes=5)

        manager.touch(issued.session.id)

        assert store.get_session(issued.session.id).last_activity_at == clock()
