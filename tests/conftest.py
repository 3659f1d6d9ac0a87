import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be settled before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps lockout counters and revocations process-local per test
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters; production defaults are far more expensive
os.environ.setdefault("PIN_HASH_TIME_COST", "1")
os.environ.setdefault("PIN_HASH_MEMORY_COST", "1024")
os.environ.setdefault("PIN_HASH_PARALLELISM", "1")
# Whole day counts as operating hours so brute-force scoring is clock independent
os.environ.setdefault("OPERATING_HOURS_START", "0")
os.environ.setdefault("OPERATING_HOURS_END", "23")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from pinguard.config import Settings  # noqa: E402
from pinguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from pinguard.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-secret-key-0123456789-abcdefghijklmnop"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Standalone settings for service-level tests."""
    return Settings(
        jwt_secret=TEST_SECRET,
        redis_url=None,
        use_memory_store=True,
        test_mode=True,
        pin_hash_time_cost=1,
        pin_hash_memory_cost=1024,
        pin_hash_parallelism=1,
        operating_hours_start=0,
        operating_hours_end=23,
    )


@pytest.fixture
def store():
    return MemoryStore()


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
