import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Pin the runtime to the in-process store before anything reads settings
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("TEST_MODE", "true")
os.environ.pop("AUTH_STATE_ROOT", None)

import pytest  # noqa: E402
import structlog  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from clinicauth.config import Settings  # noqa: E402
from clinicauth.logging import correlation_id_var  # noqa: E402
from clinicauth.service.auth import AuthService  # noqa: E402
from clinicauth.service.lockout import LockoutGuard  # noqa: E402
from clinicauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from clinicauth.service.sessions import SessionManager  # noqa: E402
from clinicauth.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()
    structlog.contextvars.clear_contextvars()
    correlation_id_var.set(None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(use_memory_store=True, test_mode=True)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def lockout(memory_store, settings, clock):
    return LockoutGuard(memory_store, settings, clock=clock)


@pytest.fixture
def sessions(memory_store, settings, clock):
    return SessionManager(memory_store, settings, clock=clock)


@pytest.fixture
def auth_service(memory_store, settings, clock, lockout, sessions):
    return AuthService(
        memory_store, settings, lockout=lockout, sessions=sessions, clock=clock
    )


@pytest.fixture
def account(memory_store):
    return memory_store.create_account("a@x.com")
