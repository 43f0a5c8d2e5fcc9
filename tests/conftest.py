import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Settle environment before any tokenvault import reads it
_test_tmp_dir = tempfile.mkdtemp(prefix="tokenvault_test_")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenvault.config import Settings  # noqa: E402
from tokenvault.service.password_reset import PasswordResetManager  # noqa: E402
from tokenvault.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenvault.service.tokens import SessionTokenManager  # noqa: E402
from tokenvault.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable wall clock for expiry tests."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        session_token_ttl_minutes=60,
        reset_token_ttl_minutes=30,
        min_password_length=8,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sessions(memory_store, settings, clock):
    return SessionTokenManager(memory_store, memory_store, settings, now=clock)


@pytest.fixture
def resets(memory_store, settings, clock):
    return PasswordResetManager(memory_store, memory_store, settings, now=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("whydidnt@ushow.me")
