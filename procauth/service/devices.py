from __future__ import annotations

import hashlib
import json
from typing import Optional

from procauth.logging import get_logger
from procauth.storage.models import Account

logger = get_logger(__name__)


class DeviceTrustEngine:
    """Device fingerprints and the per-account trusted set."""

    def __init__(self, store) -> None:
        self.store = store

    @staticmethod
    def fingerprint(
        user_agent: Optional[str], ip_address: Optional[str], device_id: Optional[str]
    ) -> str:
        # JSON framing keeps ("a", "bc") and ("ab", "c") distinct
        material = json.dumps([user_agent or "", ip_address or "", device_id or ""])
        return hashlib.sha256(material.encode()).hexdigest()

    @staticmethod
    def is_trusted(account: Account, digest: str) -> bool:
        return digest in account.trusted_devices

    def trust(self, account_id: str, digest: str) -> bool:
        added = self.store.add_trusted_device(account_id, digest)
        if added:
            logger.info("device_trusted", account_id=account_id, fingerprint=digest[:12])
        return added
