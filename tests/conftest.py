import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything builds settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="procauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from procauth.config import Settings  # noqa: E402
from procauth.service.auth import AuthService  # noqa: E402
from procauth.service.events import EventDispatcher  # noqa: E402
from procauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from procauth.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Abc123!@#"


class FakeClock:
    """Manually advanced UTC clock shared by every component under test."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSink:
    """Audit and notification sink that keeps everything it receives."""

    def __init__(self):
        self.audits = []
        self.notifications = []

    def log_auth_event(self, action, account_id, metadata):
        self.audits.append((action, account_id, metadata))

    def notify(self, notification_type, account_id, payload):
        self.notifications.append((notification_type, account_id, payload))

    def audit_actions(self):
        return [action for action, _, _ in self.audits]

    def notification_types(self):
        return [kind for kind, _, _ in self.notifications]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    # Monday 10:00 UTC, inside business hours
    return FakeClock(datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(
        fs_root=str(tmp_path / "store"),
        mfa_encryption_key="unit-test-mfa-key",
        persist=False,
    )


@pytest.fixture
def recorder():
    return RecordingSink()


@pytest.fixture
def events(clock, recorder):
    dispatcher = EventDispatcher(clock=clock)
    dispatcher.add_audit_sink(recorder)
    dispatcher.add_notification_sink(recorder)
    return dispatcher


@pytest.fixture
def auth_service(store, settings, events, clock):
    return AuthService(store, settings, events=events, clock=clock)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
