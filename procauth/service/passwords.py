from __future__ import annotations

import string
from dataclasses import dataclass, field
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from procauth.config import Settings
from procauth.logging import get_logger

logger = get_logger(__name__)

MAX_PASSWORD_LENGTH = 128


@dataclass
class StrengthReport:
    valid: bool
    violations: List[str] = field(default_factory=list)


class CredentialStore:
    """Password hashing, verification and strength rules.

    Stateless apart from the hasher parameters, which come from settings and
    are never caller supplied.
    """

    def __init__(self, settings: Settings) -> None:
        self.min_length = settings.password_min_length
        self._hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        # Verified against for unknown logins so response timing does not
        # reveal whether an account exists
        self._dummy_hash = self._hasher.hash("procauth-dummy-credential")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, credential_hash: str) -> bool:
        try:
            return self._hasher.verify(credential_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("credential_hash_unverifiable")
            return False

    def verify_dummy(self, password: str) -> None:
        self.verify(password, self._dummy_hash)

    def needs_rehash(self, credential_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(credential_hash)
        except InvalidHash:
            return True

    def assess_strength(self, password: str) -> StrengthReport:
        """Check every rule and report all violations at once."""
        violations: List[str] = []
        if len(password) < self.min_length:
            violations.append("too_short")
        if len(password) > MAX_PASSWORD_LENGTH:
            violations.append("too_long")
        if not any(c.isupper() for c in password):
            violations.append("missing_uppercase")
        if not any(c.islower() for c in password):
            violations.append("missing_lowercase")
        if not any(c in string.digits for c in password):
            violations.append("missing_digit")
        if not any(not c.isalnum() and not c.isspace() for c in password):
            violations.append("missing_symbol")
        return StrengthReport(valid=not violations, violations=violations)
