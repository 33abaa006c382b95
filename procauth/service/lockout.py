from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Optional

from procauth.config import Settings
from procauth.logging import get_logger
from procauth.storage.models import Account, Clock, LockoutState, utcnow

if TYPE_CHECKING:
    from procauth.service.events import EventDispatcher

logger = get_logger(__name__)


class LockoutPhase(str, Enum):
    CLEAR = "clear"
    WARNING = "warning"
    LOCKED = "locked"


@dataclass
class GateDecision:
    allowed: bool
    remaining_seconds: int = 0

    @property
    def remaining_minutes(self) -> int:
        return math.ceil(self.remaining_seconds / 60)


class LockoutTracker:
    """Per-account failed-attempt counter with a time-boxed lock.

    Counter changes go through the store's atomic increment and reset, so
    concurrent failures for one account are never under-counted.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        clock: Clock = utcnow,
        events: Optional["EventDispatcher"] = None,
    ) -> None:
        self.store = store
        self.max_attempts = settings.max_login_attempts
        self.lockout_duration = timedelta(minutes=settings.lockout_duration_minutes)
        self.clock = clock
        self.events = events

    def record_failure(self, account: Account) -> LockoutState:
        now = self.clock()
        state = self.store.increment_failed_attempts(
            account.id,
            max_attempts=self.max_attempts,
            lockout_duration=self.lockout_duration,
            now=now,
        )
        if state.newly_locked:
            logger.warning(
                "account_locked",
                account_id=account.id,
                failed_attempts=state.failed_attempts,
                locked_until=state.locked_until.isoformat(),
            )
            if self.events:
                metadata = {
                    "failed_attempts": state.failed_attempts,
                    "locked_until": state.locked_until.isoformat(),
                }
                self.events.audit("account_locked", account.id, metadata)
                self.events.notify(
                    "account_locked", account.id, {**metadata, "email": account.email}
                )
        return state

    def record_success(self, account_id: str) -> None:
        self.store.reset_lockout(account_id)

    def check_gate(self, account: Account) -> GateDecision:
        now = self.clock()
        # Allowed from the instant locked_until is reached
        if account.locked_until is None or now >= account.locked_until:
            return GateDecision(allowed=True)
        remaining = (account.locked_until - now).total_seconds()
        return GateDecision(allowed=False, remaining_seconds=math.ceil(remaining))

    def phase(self, account: Account) -> LockoutPhase:
        if account.is_locked(self.clock()):
            return LockoutPhase.LOCKED
        if account.locked_until is None and account.failed_attempts > 0:
            return LockoutPhase.WARNING
        return LockoutPhase.CLEAR
