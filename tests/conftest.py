import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="hostpanel_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("PERSIST_MEMORY_STORE", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_TIME_COST", "1")
os.environ.setdefault("PASSWORD_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hostpanel.config import get_settings  # noqa: E402
from hostpanel.service.accounts import AccountService  # noqa: E402
from hostpanel.service.audit import AuditTrail, StoreAuditSink  # noqa: E402
from hostpanel.service.auth import AuthService  # noqa: E402
from hostpanel.service.lockout import LockoutPolicy, LockoutStateMachine  # noqa: E402
from hostpanel.service.passwords import PasswordHasherService  # noqa: E402
from hostpanel.service.runtime import reset_runtime_for_tests  # noqa: E402
from hostpanel.service.tokens import SessionTokenIssuer, TokenConfig  # noqa: E402
from hostpanel.service.totp import TwoFactorService  # noqa: E402
from hostpanel.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET_KEY = "test-encryption-key"


class FakeClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryStore(secret_key=TEST_SECRET_KEY)


@pytest.fixture
def hasher():
    return PasswordHasherService(get_settings())


@pytest.fixture
def token_config():
    return TokenConfig(
        secret="unit-test-signing-secret",
        issuer="hostpanel",
        audience="hostpanel-clients",
        ttl=timedelta(days=7),
    )


@pytest.fixture
def services(store, hasher, clock, token_config):
    """Fully wired services over a fresh memory store and a controllable clock."""
    accounts = AccountService(store, hasher)
    lockout = LockoutStateMachine(store, LockoutPolicy(), clock=clock)
    two_factor = TwoFactorService(store, hasher, clock=clock)
    tokens = SessionTokenIssuer(token_config, clock=clock)
    audit = AuditTrail(StoreAuditSink(store, clock=clock), store, clock=clock)
    auth = AuthService(accounts, hasher, lockout, two_factor, tokens, audit)
    return SimpleNamespace(
        store=store,
        hasher=hasher,
        clock=clock,
        accounts=accounts,
        lockout=lockout,
        two_factor=two_factor,
        tokens=tokens,
        audit=audit,
        auth=auth,
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
