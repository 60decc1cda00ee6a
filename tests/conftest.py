import asyncio
import inspect
import os
import sys
import tempfile
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional, Tuple

# Configure the environment before any import that might build settings
_test_tmp_dir = tempfile.mkdtemp(prefix="binpickup_test_")
os.environ.setdefault("DATA_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-for-testing-only-0123456789")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-for-testing-only-9876543210")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from binpickup.config import Settings  # noqa: E402
from binpickup.service.auth import AuthService  # noqa: E402
from binpickup.service.login_guard import LoginGuard  # noqa: E402
from binpickup.service.runtime import reset_runtime_for_tests  # noqa: E402
from binpickup.service.tokens import TokenService  # noqa: E402
from binpickup.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Controllable UTC clock; call it to read the time, ``advance`` to move it."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 6, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryRevocationCache:
    """Dict-backed revocation cache with TTLs, for tests that need a live denylist."""

    def __init__(self):
        self.entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self.is_up = True

    @property
    def available(self) -> bool:
        return self.is_up

    def _live(self, key: str) -> Optional[str]:
        entry = self.entries.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires is not None and expires <= time.monotonic():
            self.entries.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key) if self.is_up else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        if not self.is_up:
            return False
        expires = time.monotonic() + ttl_seconds if ttl_seconds else None
        self.entries[key] = (value, expires)
        return True

    async def delete(self, key: str) -> bool:
        return self.entries.pop(key, None) is not None if self.is_up else False

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None if self.is_up else False

    async def check_rate_limit(self, key, limit, window_seconds, *, cost=1):
        # defer to the in-process limiter
        return None

    async def close(self) -> None:
        return None


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("DATA_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests(cache=InMemoryRevocationCache())
    yield
    # drop env vars the test set before rebuilding settings for the next test
    monkeypatch.undo()
    monkeypatch.setenv("DATA_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def revocation_cache():
    return InMemoryRevocationCache()


@pytest.fixture
def settings():
    return Settings(
        access_token_secret="unit-access-secret-0123456789abcdefghij",
        refresh_token_secret="unit-refresh-secret-0123456789abcdefghij",
        use_memory_store=True,
        test_mode=True,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def token_service(settings, revocation_cache, clock):
    return TokenService(settings, revocation_cache, clock=clock)


@pytest.fixture
def login_guard(memory_store, settings, clock):
    return LoginGuard(memory_store, settings, clock=clock)


@pytest.fixture
def auth_service(memory_store, token_service, login_guard, settings, clock):
    return AuthService(memory_store, token_service, login_guard, settings, clock=clock)


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
