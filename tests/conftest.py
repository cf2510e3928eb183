import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any tokenguard import reads it
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenguard.service.lockout import LockoutGuard  # noqa: E402
from tokenguard.service.revocation import RevocationStore  # noqa: E402
from tokenguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenguard.service.sessions import SessionRegistry  # noqa: E402
from tokenguard.storage.errors import StorageError, StorageErrorKind  # noqa: E402
from tokenguard.storage.local_cache import ExpiringSet, LocalCache  # noqa: E402
from tokenguard.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Manually advanced wall clock and monotonic clock."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.elapsed = 0.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, *, ms: int = 0, seconds: float = 0, minutes: float = 0) -> None:
        delta = timedelta(milliseconds=ms, seconds=seconds, minutes=minutes)
        self.current += delta
        self.elapsed += delta.total_seconds()


class FaultyStore:
    """Wraps a store and raises a configured failure for selected methods."""

    def __init__(self, inner):
        self.inner = inner
        self.failures = {}
        self.calls = []

    def fail(self, method: str, exc: BaseException) -> None:
        self.failures[method] = exc

    def fail_kind(self, method: str, kind: StorageErrorKind, table: str = "t") -> None:
        self.failures[method] = StorageError(f"{kind.value} failure", kind, table=table)

    def heal(self, method: str | None = None) -> None:
        if method is None:
            self.failures.clear()
        else:
            self.failures.pop(method, None)

    def __getattr__(self, name):
        target = getattr(self.inner, name)
        if not callable(target):
            return target

        def wrapper(*args, **kwargs):
            self.calls.append(name)
            exc = self.failures.get(name)
            if exc is not None:
                raise exc
            return target(*args, **kwargs)

        wrapper.__name__ = name
        return wrapper


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def faulty_store(memory_store):
    return FaultyStore(memory_store)


@pytest.fixture
def local_cache(clock):
    return LocalCache(1000, clock=clock.monotonic)


@pytest.fixture
def fast_set(clock):
    return ExpiringSet(clock=clock.now)


@pytest.fixture
def revocation(faulty_store, local_cache, fast_set, clock):
    return RevocationStore(
        faulty_store,
        local_cache,
        fast_set=fast_set,
        durable_timeout=1.0,
        clock=clock.now,
    )


@pytest.fixture
def lockout(faulty_store, local_cache, clock):
    return LockoutGuard(
        faulty_store,
        local_cache,
        threshold=5,
        lockout_duration_ms=30 * 60 * 1000,
        durable_timeout=1.0,
        clock=clock.now,
    )


@pytest.fixture
def sessions(faulty_store, clock):
    return SessionRegistry(faulty_store, durable_timeout=1.0, clock=clock.now)


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
