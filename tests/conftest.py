import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="portalbridge_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("OPEN_BROWSER", "false")
os.environ.setdefault("ENCRYPTION_MASTER_KEY", "test-master-key-for-testing-only-do-not-use")
os.environ.setdefault("PORTAL_BASE_URL", "https://portal.example.com/school")
os.environ.pop("MCP_API_KEY", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from portalbridge.service.credentials import EncryptedUserStore  # noqa: E402
from portalbridge.service.runtime import reset_runtime_for_tests  # noqa: E402
from portalbridge.storage.memory import MemoryStore  # noqa: E402

MASTER_KEY = os.environ["ENCRYPTION_MASTER_KEY"]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def credential_store(memory_store):
    return EncryptedUserStore(memory_store, MASTER_KEY)


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
