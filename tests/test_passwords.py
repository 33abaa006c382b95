"""Tests for password hashing and strength rules."""

import pytest

from procauth.service.passwords import CredentialStore


@pytest.fixture
def credentials(settings):
    return CredentialStore(settings)


class TestHashing:
    def test_hash_is_argon2id_and_salted(self, credentials):
        first = credentials.hash("Abc123!@#")
        second = credentials.hash("Abc123!@#")

        assert first.startswith("$argon2id$")
        assert first != second
        assert "Abc123!@#" not in first

    def test_verify_accepts_matching_password(self, credentials):
        stored = credentials.hash("Abc123!@#")

        assert credentials.verify("Abc123!@#", stored) is True

    def test_verify_rejects_wrong_password(self, credentials):
        stored = credentials.hash("Abc123!@#")

        assert credentials.verify("abc123!@#", stored) is False

    def test_verify_rejects_unparseable_hash(self, credentials):
        assert credentials.verify("Abc123!@#", "not-a-hash") is False

    def test_dummy_verification_does_not_raise(self, credentials):
        credentials.verify_dummy("anything")

    def test_needs_rehash_when_cost_changes(self, settings):
        weak = CredentialStore(settings)
        stored = weak.hash("Abc123!@#")
        stronger = CredentialStore(settings.model_copy(update={"argon2_time_cost": 2}))

        assert weak.needs_rehash(stored) is False
        assert stronger.needs_rehash(stored) is True


class TestStrength:
    def test_short_password_reports_every_violation(self, credentials):
        report = credentials.assess_strength("abc")

        assert report.valid is False
        for violation in ("too_short", "missing_uppercase", "missing_digit", "missing_symbol"):
            assert violation in report.violations
        assert "missing_lowercase" not in report.violations

    def test_strong_password_has_no_violations(self, credentials):
        report = credentials.assess_strength("Abc123!@#")

        assert report.valid is True
        assert report.violations == []

    def test_whitespace_is_not_a_symbol(self, credentials):
        report = credentials.assess_strength("Abcdefg1 ")

        assert report.violations == ["missing_symbol"]

    def test_overlong_password_is_rejected(self, credentials):
        report = credentials.assess_strength("Aa1!" + "x" * 130)

        assert report.violations == ["too_long"]

    def test_min_length_comes_from_settings(self, settings):
        strict = CredentialStore(settings.model_copy(update={"password_min_length": 12}))

        assert "too_short" in strict.assess_strength("Abc123!@#").violations
