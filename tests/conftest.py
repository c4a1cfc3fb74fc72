import asyncio
import inspect
import os

# Configure the environment before any import that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REFRESH_JWT_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("APP_ENV", "production")
# Keep API tests hermetic: process-local cache and queue. Real Redis is
# exercised separately in test_redis_backends.py.
os.environ["REDIS_URL"] = ""
os.environ["DISPATCH_BACKEND"] = "memory"
os.environ["DISPATCH_CONSUMER_ENABLED"] = "false"
os.environ["DISPATCH_RETRY_BACKOFF_SECONDS"] = "0"

import pytest  # noqa: E402

from gatehouse.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
