"""Tests for failed-attempt counting and the time-boxed lock."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from procauth.service.lockout import LockoutPhase, LockoutTracker
from procauth.storage.models import AccountStatus


@pytest.fixture
def account(store):
    return store.create_account(
        "dana", "dana@example.com", "hash", status=AccountStatus.ACTIVE
    )


@pytest.fixture
def tracker(store, settings, clock, events):
    return LockoutTracker(store, settings, clock=clock, events=events)


class TestLockoutTracker:
    def test_locks_exactly_at_max_attempts(self, tracker, store, account, clock):
        for _ in range(4):
            state = tracker.record_failure(account)
            assert state.locked_until is None

        state = tracker.record_failure(account)

        assert state.newly_locked is True
        assert state.failed_attempts == 5
        assert state.locked_until == clock() + timedelta(minutes=15)
        gate = tracker.check_gate(store.get_account(account.id))
        assert gate.allowed is False
        assert gate.remaining_seconds == 15 * 60
        assert gate.remaining_minutes == 15

    def test_gate_reopens_when_duration_elapses(self, tracker, store, account, clock):
        for _ in range(5):
            tracker.record_failure(account)

        clock.advance(minutes=14, seconds=59)
        assert tracker.check_gate(store.get_account(account.id)).allowed is False

        clock.advance(seconds=1)
        assert tracker.check_gate(store.get_account(account.id)).allowed is True

    def test_failure_after_elapsed_lock_starts_new_cycle(self, tracker, account, clock):
        for _ in range(5):
            tracker.record_failure(account)
        clock.advance(minutes=16)

        state = tracker.record_failure(account)

        assert state.failed_attempts == 1
        assert state.locked_until is None

    def test_further_failures_do_not_extend_lock(self, tracker, account, clock):
        for _ in range(5):
            locked = tracker.record_failure(account)
        clock.advance(minutes=1)

        state = tracker.record_failure(account)

        assert state.newly_locked is False
        assert state.locked_until == locked.locked_until

    def test_success_resets_counter(self, tracker, store, account):
        for _ in range(3):
            tracker.record_failure(account)

        tracker.record_success(account.id)

        refreshed = store.get_account(account.id)
        assert refreshed.failed_attempts == 0
        assert refreshed.locked_until is None

    def test_phase_transitions(self, tracker, store, account):
        assert tracker.phase(store.get_account(account.id)) == LockoutPhase.CLEAR
        tracker.record_failure(account)
        assert tracker.phase(store.get_account(account.id)) == LockoutPhase.WARNING
        for _ in range(4):
            tracker.record_failure(account)
        assert tracker.phase(store.get_account(account.id)) == LockoutPhase.LOCKED

    async def test_lock_emits_audit_and_notification(self, tracker, account, events, recorder):
        for _ in range(5):
            tracker.record_failure(account)

        await events.drain()

        assert recorder.audit_actions() == ["account_locked"]
        kind, account_id, payload = recorder.notifications[0]
        assert kind == "account_locked"
        assert account_id == account.id
        assert payload["email"] == "dana@example.com"

    def test_concurrent_failures_are_all_counted(self, store, settings, clock, account):
        tracker = LockoutTracker(
            store, settings.model_copy(update={"max_login_attempts": 100}), clock=clock
        )

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: tracker.record_failure(account), range(40)))

        assert store.get_account(account.id).failed_attempts == 40

    def test_concurrent_failures_lock_only_once(self, tracker, store, account):
        with ThreadPoolExecutor(max_workers=8) as pool:
            states = list(pool.map(lambda _: tracker.record_failure(account), range(12)))

        assert sum(1 for s in states if s.newly_locked) == 1
        assert store.get_account(account.id).failed_attempts == 12
