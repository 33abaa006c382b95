"""Tests for the advisory login anomaly heuristics."""

from datetime import datetime, timedelta, timezone

import pytest

from procauth.service.anomaly import AnomalyDetector
from procauth.storage.models import AccountStatus, LoginAttempt


@pytest.fixture
def detector(store, settings, clock):
    return AnomalyDetector(store, settings, clock=clock)


@pytest.fixture
def account(store):
    return store.create_account("ivan", "ivan@example.com", "hash", status=AccountStatus.ACTIVE)


def _attempt(store, account, when, success=True):
    store.append_login_attempt(
        LoginAttempt(login=account.username, success=success, timestamp=when, account_id=account.id)
    )


def _at(hour, minute=0, day=4):
    return datetime(2024, 3, day, hour, minute, tzinfo=timezone.utc)


class TestUnusualHour:
    @pytest.mark.parametrize("hour,expected", [(3, True), (7, True), (8, False), (18, False), (19, True)])
    def test_business_hours_without_history(self, detector, account, hour, expected):
        assert detector.unusual_hour(account.id, _at(hour)) is expected

    def test_habitual_night_logins_are_not_flagged(self, detector, store, account):
        for day in range(1, 4):
            _attempt(store, account, _at(3, day=day))

        assert detector.unusual_hour(account.id, _at(3, 30)) is False

    def test_failed_attempts_do_not_shape_typical_hours(self, detector, store, account):
        for day in range(1, 4):
            _attempt(store, account, _at(3, day=day), success=False)

        assert detector.unusual_hour(account.id, _at(3, 30)) is True

    def test_typical_hours_keeps_most_frequent(self, detector, store, account):
        attempts = [
            LoginAttempt(login="ivan", success=True, timestamp=_at(h, day=d))
            for d in (1, 2, 3)
            for h in (9, 10)
        ] + [LoginAttempt(login="ivan", success=True, timestamp=_at(23))]

        hours = detector.typical_hours(attempts)

        assert hours[:2] == [9, 10]
        assert 23 in hours

    def test_hours_are_evaluated_in_utc(self, detector, account):
        eastern = timezone(timedelta(hours=-5))
        # 22:00 at UTC-5 is 03:00 UTC
        assert detector.unusual_hour(account.id, datetime(2024, 3, 3, 22, 0, tzinfo=eastern)) is True


class TestHighVolume:
    def test_threshold_is_exclusive(self, detector, store, account, clock):
        for i in range(100):
            _attempt(store, account, clock() - timedelta(seconds=i))
        assert detector.high_volume(account.id) is False

        _attempt(store, account, clock())
        assert detector.high_volume(account.id) is True

    def test_only_same_day_attempts_count(self, detector, store, account, clock):
        yesterday = clock() - timedelta(days=1)
        for i in range(150):
            _attempt(store, account, yesterday - timedelta(seconds=i))

        assert detector.high_volume(account.id) is False


class TestInspect:
    def test_reports_every_flag(self, detector, store, account):
        night = _at(2)
        for i in range(101):
            _attempt(store, account, night - timedelta(seconds=i + 1), success=False)

        found = detector.inspect(account.id, night)

        assert [a.type for a in found] == ["unusual_time_access", "high_volume_activity"]
        assert found[1].severity == "high"

    def test_clean_login_has_no_findings(self, detector, account, clock):
        assert detector.inspect(account.id, clock()) == []
