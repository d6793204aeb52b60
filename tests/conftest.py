import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything builds settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tasktrack_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in tests: the runtime falls back to the in-process cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tasktrack.config import Settings  # noqa: E402
from tasktrack.service.runtime import reset_runtime_for_tests  # noqa: E402
from tasktrack.service.passwords import PasswordHasher  # noqa: E402
from tasktrack.storage.memory import MemoryStore  # noqa: E402
from tasktrack.storage.memory_cache import MemoryCache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # fresh memory-store state per test
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield


@pytest.fixture
def settings(tmp_path):
    """Settings for directly constructed services."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        cache_operation_timeout_seconds=1.0,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"), secret_key="store-test-key")


@pytest.fixture
def memory_cache():
    return MemoryCache()


@pytest.fixture(scope="session")
def fast_passwords():
    """Cheap argon2 parameters so auth tests stay quick."""
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


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
