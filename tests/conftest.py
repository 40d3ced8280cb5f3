import asyncio
import inspect
import os
import shutil
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in unit runs; the services fall back to the store alone
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenantauth.config import AuthConfig  # noqa: E402
from tenantauth.service.audit import AuditLog, MemoryAuditSink  # noqa: E402
from tenantauth.service.auth import AuthService  # noqa: E402
from tenantauth.service.notifications import NotificationService  # noqa: E402
from tenantauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantauth.storage.memory import MemoryStore  # noqa: E402


def _clear_shared_state() -> None:
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _clear_shared_state()
    reset_runtime_for_tests()
    yield
    _clear_shared_state()


@pytest.fixture
def config() -> AuthConfig:
    return AuthConfig(
        jwt_secret="unit-test-secret-0123456789abcdef0123456789abcdef",
        max_failed_attempts=3,
        lock_duration_minutes=15,
        password_history_count=3,
        idle_timeout_minutes=30,
    )


@pytest.fixture
def memory_store(tmp_path) -> MemoryStore:
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def auth_service(memory_store, config, audit_sink) -> AuthService:
    return AuthService(
        memory_store,
        None,
        config,
        notifications=NotificationService(keep_outbox=True),
        audit=AuditLog([audit_sink]),
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
