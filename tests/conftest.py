import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment defaults must be in place before authkernel is imported
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-do-not-use-in-production")
os.environ.setdefault("IDLE_REAPER_ENABLED", "false")
os.environ.setdefault("GEOLOCATION_ENABLED", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authkernel.config import Settings, reset_settings_cache  # noqa: E402
from authkernel.service.runtime import Runtime  # noqa: E402
from authkernel.storage.memory import MemoryStore  # noqa: E402

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
PASSWORD = "correct-horse-battery"


class FakeClock:
    """Manually advanced clock shared by every service under test."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_settings(**overrides) -> Settings:
    values = dict(
        app_env="test",
        use_memory_store=True,
        jwt_access_secret="unit-access-secret-0123456789",
        jwt_refresh_secret="unit-refresh-secret-0123456789",
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        password_hash_parallelism=1,
        idle_reaper_enabled=False,
        geolocation_enabled=False,
        cookie_secure=False,
        log_json=False,
        mfa_encryption_key="unit-mfa-encryption-key",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="unit-mfa-encryption-key")


@pytest.fixture
def runtime(settings, store, clock):
    return Runtime(settings, store=store, clock=clock)


@pytest.fixture
def user(runtime):
    """An active user whose password is ``PASSWORD``."""
    return runtime.store.create_user(
        "u1@example.com", runtime.hasher.hash_sync(PASSWORD), max_sessions=5
    )


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
