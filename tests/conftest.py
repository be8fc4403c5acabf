import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SESSION_SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("WX_APP_ID", "wx-test-app")
os.environ.setdefault("WX_APP_SECRET", "wx-test-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")
# No Redis in tests: the runtime falls back, and tests inject FakeRedis where needed
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fakes import FakeClock, FakeRedis, FlakyStore  # noqa: E402

from taroauth.config import Settings  # noqa: E402
from taroauth.service.auth import AuthService  # noqa: E402
from taroauth.service.identity import IdentityResolver  # noqa: E402
from taroauth.service.lockout import LockoutTracker  # noqa: E402
from taroauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from taroauth.service.sessions import SessionManager  # noqa: E402
from taroauth.storage.redis_cache import FastCache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def cache(fake_redis):
    return FastCache(client=fake_redis, prefix="taro_test")


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def sessions(store, cache, clock):
    return SessionManager(store, cache, clock=clock)


@pytest.fixture
def lockout(cache):
    return LockoutTracker(cache)


@pytest.fixture
def resolver(sessions):
    return IdentityResolver(sessions)


@pytest.fixture
def settings():
    return Settings(
        use_memory_store=True,
        test_mode=True,
        redis_url="",
        wx_app_id="wx-test-app",
        wx_app_secret="wx-test-secret",
    )


@pytest.fixture
def auth_service(store, cache, sessions, lockout, settings):
    return AuthService(store, cache, sessions, lockout, settings)


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
