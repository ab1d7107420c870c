import asyncio
import inspect
import os
import time
from datetime import datetime, timezone

# Settings are read from the environment on first runtime access
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "access-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("JWT_REFRESH_SECRET", "refresh-secret-for-tests-only-0123456789abcdef")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

from gatehouse.config import Settings  # noqa: E402
from gatehouse.service.auth import AuthService  # noqa: E402
from gatehouse.service.mfa import MFAGate, MemoryMFALedger  # noqa: E402
from gatehouse.service.passwords import CredentialHasher  # noqa: E402
from gatehouse.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatehouse.service.sessions import SessionRegistry  # noqa: E402
from gatehouse.service.tokens import TokenCodec  # noqa: E402
from gatehouse.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Shared wall clock for the codec, registry and MFA gate."""

    def __init__(self, start: float | None = None) -> None:
        self.now = float(int(start if start is not None else time.time()))

    def __call__(self) -> float:
        return self.now

    def utc(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Test settings with a cheap argon2 work factor."""
    return Settings(
        test_mode=True,
        use_memory_store=True,
        access_token_secret="access-secret-for-tests-only-0123456789abcdef",
        refresh_token_secret="refresh-secret-for-tests-only-0123456789abcdef",
        password_hash_time_cost=1,
        password_hash_memory_cost=8,
        password_hash_parallelism=1,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore(mfa_encryption_key="mfa-key-for-tests")


@pytest.fixture
def ledger(clock):
    return MemoryMFALedger(clock=clock)


@pytest.fixture
def codec(settings, clock):
    return TokenCodec.from_settings(settings, clock=clock)


@pytest.fixture
def hasher(settings):
    return CredentialHasher.from_settings(settings)


@pytest.fixture
def registry(memory_store, clock):
    return SessionRegistry(memory_store, clock=clock.utc)


@pytest.fixture
def mfa_gate(settings, memory_store, ledger, clock):
    return MFAGate.from_settings(settings, memory_store, ledger, clock=clock)


@pytest.fixture
def auth_service(memory_store, codec, hasher, registry, mfa_gate):
    return AuthService(memory_store, codec, hasher, registry, mfa_gate)


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
