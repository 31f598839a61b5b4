import asyncio
import inspect
import os
import sys
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace

# Environment defaults must be in place before authcore.config is imported
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in unit tests; the runtime falls back to running without a cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authcore.service.auth import TokenLifecycleManager  # noqa: E402
from authcore.service.clock import FrozenClock  # noqa: E402
from authcore.service.identity import AccountService  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.service.tokens import TokenCodec, TokenSettings  # noqa: E402
from authcore.storage.errors import StorageUnavailable  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"
TEST_PASSWORD = "CorrectHorse-Battery9"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def token_settings():
    return TokenSettings(
        secret=TEST_SECRET,
        issuer="authcore-test",
        audience="authcore-test-clients",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
    )


@pytest.fixture
def codec(token_settings, clock):
    return TokenCodec(token_settings, clock=clock)


@pytest.fixture
def memory_store():
    return MemoryStore()


class DiskFullStore(MemoryStore):
    """Snapshot-backed store whose state writes fail while ``disk_full`` is set."""

    def __init__(self, fs_root):
        super().__init__(fs_root=fs_root)
        self.disk_full = False

    def _persist_state(self):
        if self.disk_full:
            raise StorageUnavailable("failed to persist in-memory state")
        super()._persist_state()


def build_stack(store, codec, clock, cache=None):
    accounts = AccountService(store, cache, clock=clock)
    manager = TokenLifecycleManager(store, accounts, codec, clock=clock)
    return SimpleNamespace(
        store=store, accounts=accounts, manager=manager, codec=codec, clock=clock
    )


@pytest.fixture
def stack(memory_store, codec, clock):
    """Memory-backed lifecycle manager on a frozen clock."""
    return build_stack(memory_store, codec, clock)


@pytest.fixture
def account(stack):
    return stack.accounts.create_account(
        "u1@example.com", TEST_PASSWORD, first_name="Ada", last_name="Lovelace"
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
