from __future__ import annotations

import asyncio
import contextlib
import inspect
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

from procauth.logging import get_logger
from procauth.service.email import EmailService
from procauth.storage.models import Clock, utcnow

logger = get_logger(__name__)

AUDIT = "audit"
NOTIFICATION = "notification"


@dataclass
class AuthEvent:
    channel: str
    action: str
    account_id: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


class AuditSink(Protocol):
    def log_auth_event(
        self, action: str, account_id: Optional[str], metadata: Dict[str, Any]
    ) -> Any: ...


class NotificationSink(Protocol):
    def notify(
        self, notification_type: str, account_id: Optional[str], payload: Dict[str, Any]
    ) -> Any: ...


Inspector = Callable[[AuthEvent], Any]


class EventDispatcher:
    """Fire-and-forget delivery of audit and notification events.

    ``audit``/``notify`` only append to a bounded in-process buffer and may be
    called from any thread. A background task drains the buffer and calls the
    sinks; a slow or failing sink never reaches the caller.
    """

    def __init__(self, *, max_pending: int = 10000, clock: Clock = utcnow) -> None:
        self.max_pending = max_pending
        self.clock = clock
        self.audit_sinks: List[AuditSink] = []
        self.notification_sinks: List[NotificationSink] = []
        self.inspectors: Dict[str, List[Inspector]] = {}
        self._pending: Deque[AuthEvent] = deque()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self.dropped = 0

    def add_audit_sink(self, sink: AuditSink) -> None:
        self.audit_sinks.append(sink)

    def add_notification_sink(self, sink: NotificationSink) -> None:
        self.notification_sinks.append(sink)

    def add_inspector(self, action: str, inspector: Inspector) -> None:
        """Run ``inspector`` after every audit event named ``action``."""
        self.inspectors.setdefault(action, []).append(inspector)

    def audit(
        self, action: str, account_id: Optional[str], metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        self._enqueue(AuthEvent(AUDIT, action, account_id, dict(metadata or {}), self.clock()))

    def notify(
        self,
        notification_type: str,
        account_id: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._enqueue(
            AuthEvent(NOTIFICATION, notification_type, account_id, dict(payload or {}), self.clock())
        )

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def _enqueue(self, event: AuthEvent) -> None:
        with self._lock:
            if len(self._pending) >= self.max_pending:
                self._pending.popleft()
                self.dropped += 1
                logger.warning("auth_event_dropped", action=event.action, dropped=self.dropped)
            self._pending.append(event)
        loop, wakeup = self._loop, self._wakeup
        if loop is not None and wakeup is not None:
            try:
                loop.call_soon_threadsafe(wakeup.set)
            except RuntimeError:
                # Loop already closed; events stay buffered for the next drain
                pass

    def _pop(self) -> Optional[AuthEvent]:
        with self._lock:
            return self._pending.popleft() if self._pending else None

    async def _call(self, fn: Callable[..., Any], *args: Any) -> None:
        if inspect.iscoroutinefunction(fn):
            await fn(*args)
            return
        result = await asyncio.to_thread(fn, *args)
        if inspect.isawaitable(result):
            await result

    async def _deliver(self, event: AuthEvent) -> None:
        if event.channel == AUDIT:
            for sink in list(self.audit_sinks):
                try:
                    await self._call(
                        sink.log_auth_event, event.action, event.account_id, event.payload
                    )
                except Exception as exc:
                    logger.warning(
                        "audit_sink_failed",
                        action=event.action,
                        sink=type(sink).__name__,
                        error=str(exc),
                    )
            for inspector in list(self.inspectors.get(event.action, [])):
                try:
                    await self._call(inspector, event)
                except Exception as exc:
                    logger.warning("event_inspector_failed", action=event.action, error=str(exc))
            return
        for sink in list(self.notification_sinks):
            try:
                await self._call(sink.notify, event.action, event.account_id, event.payload)
            except Exception as exc:
                logger.warning(
                    "notification_sink_failed",
                    notification_type=event.action,
                    sink=type(sink).__name__,
                    error=str(exc),
                )

    async def drain(self) -> int:
        """Deliver everything buffered, including events emitted while delivering."""
        delivered = 0
        while True:
            event = self._pop()
            if event is None:
                return delivered
            await self._deliver(event)
            delivered += 1

    async def run(self) -> None:
        assert self._wakeup is not None
        while True:
            await self._wakeup.wait()
            self._wakeup.clear()
            await self.drain()

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self.run())
        if self.pending:
            self._wakeup.set()

    async def stop(self) -> None:
        task, self._task = self._task, None
        self._loop = None
        self._wakeup = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.drain()


class LoggingAuditSink:
    """Default audit sink: one structured log line per auth event."""

    def log_auth_event(
        self, action: str, account_id: Optional[str], metadata: Dict[str, Any]
    ) -> None:
        logger.info("auth_audit", action=action, account_id=account_id, metadata=metadata)


class LoggingNotificationSink:
    def notify(
        self, notification_type: str, account_id: Optional[str], payload: Dict[str, Any]
    ) -> None:
        # Payloads can carry tokens and addresses; log field names only
        logger.info(
            "auth_notification",
            notification_type=notification_type,
            account_id=account_id,
            fields=sorted(payload),
        )


_SECURITY_NOTICES = {
    "account_locked": (
        "Your account has been temporarily locked",
        ["We locked your account after several failed sign-in attempts."],
    ),
    "new_device_login": (
        "New sign-in to your account",
        ["Your account was just used to sign in from a new device."],
    ),
    "password_changed": (
        "Your password was changed",
        ["The password for your account was changed and all sessions were signed out."],
    ),
    "password_reset_completed": (
        "Your password was reset",
        ["The password for your account was reset and all sessions were signed out."],
    ),
    "mfa_enabled": (
        "Two-factor authentication enabled",
        ["Two-factor authentication is now required when you sign in."],
    ),
    "mfa_disabled": (
        "Two-factor authentication disabled",
        ["Two-factor authentication was turned off for your account."],
    ),
}


class EmailNotificationSink:
    """Delivers verification, reset and security notices through ``EmailService``."""

    def __init__(
        self,
        email_service: EmailService,
        *,
        reset_ttl_minutes: int = 60,
        verification_ttl_hours: int = 24,
    ) -> None:
        self.email_service = email_service
        self.reset_ttl_minutes = reset_ttl_minutes
        self.verification_ttl_hours = verification_ttl_hours

    def notify(
        self, notification_type: str, account_id: Optional[str], payload: Dict[str, Any]
    ) -> None:
        to_email = payload.get("email")
        if not to_email:
            return
        if notification_type == "verification_requested":
            self.email_service.send_email_verification(
                to_email, payload["token"], ttl_hours=self.verification_ttl_hours
            )
        elif notification_type == "password_reset_requested":
            self.email_service.send_password_reset(
                to_email, payload["token"], ttl_minutes=self.reset_ttl_minutes
            )
        elif notification_type in _SECURITY_NOTICES:
            subject, lines = _SECURITY_NOTICES[notification_type]
            self.email_service.send_security_notice(to_email, subject, lines)
