from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from procauth.config import Settings
from procauth.logging import get_logger
from procauth.storage.models import Clock, LoginAttempt, utcnow

logger = get_logger(__name__)


@dataclass
class Anomaly:
    type: str
    severity: str
    description: str


class AnomalyDetector:
    """Advisory heuristics over an account's recent login attempts.

    Results are attached to audit events only; nothing here blocks a login.
    Hours are evaluated in UTC.
    """

    def __init__(self, store, settings: Settings, *, clock: Clock = utcnow) -> None:
        self.store = store
        self.window = timedelta(days=settings.anomaly_window_days)
        self.typical_hour_count = settings.anomaly_typical_hours
        self.business_start = settings.business_hours_start
        self.business_end = settings.business_hours_end
        self.high_volume_threshold = settings.high_volume_threshold
        self.clock = clock

    def _history(self, account_id: str, now: datetime) -> List[LoginAttempt]:
        return self.store.list_login_attempts(account_id, since=now - self.window)

    def typical_hours(self, attempts: List[LoginAttempt]) -> List[int]:
        counts = Counter(a.timestamp.astimezone(timezone.utc).hour for a in attempts)
        return [hour for hour, _ in counts.most_common(self.typical_hour_count)]

    def unusual_hour(
        self,
        account_id: str,
        now: Optional[datetime] = None,
        *,
        history: Optional[List[LoginAttempt]] = None,
    ) -> bool:
        now = now or self.clock()
        attempts = history if history is not None else self._history(account_id, now)
        prior = [a for a in attempts if a.success and a.timestamp < now]
        hour = now.astimezone(timezone.utc).hour
        if hour in self.typical_hours(prior):
            return False
        # Business hours cover accounts with little or no history
        return hour < self.business_start or hour > self.business_end

    def high_volume(
        self,
        account_id: str,
        now: Optional[datetime] = None,
        *,
        history: Optional[List[LoginAttempt]] = None,
    ) -> bool:
        now = now or self.clock()
        attempts = history if history is not None else self._history(account_id, now)
        today = now.astimezone(timezone.utc).date()
        same_day = [a for a in attempts if a.timestamp.astimezone(timezone.utc).date() == today]
        return len(same_day) > self.high_volume_threshold

    def inspect(self, account_id: str, now: Optional[datetime] = None) -> List[Anomaly]:
        now = now or self.clock()
        history = self._history(account_id, now)
        found: List[Anomaly] = []
        if self.unusual_hour(account_id, now, history=history):
            found.append(
                Anomaly(
                    type="unusual_time_access",
                    severity="medium",
                    description="Login outside the account's typical hours",
                )
            )
        if self.high_volume(account_id, now, history=history):
            found.append(
                Anomaly(
                    type="high_volume_activity",
                    severity="high",
                    description="Unusually high login volume today",
                )
            )
        if found:
            logger.info(
                "anomalies_detected",
                account_id=account_id,
                types=[a.type for a in found],
            )
        return found
