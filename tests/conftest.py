import asyncio
import inspect
import os
import tempfile

# Test defaults must be in place before anything loads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="storefront_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only")
os.environ.setdefault("SUPER_ADMIN_EMAIL", "root@storefront.test")
os.environ.setdefault("SUPER_ADMIN_PASSWORD", "RootPass123")
os.environ.setdefault("COOKIE_SECURE", "false")
# Tickets live in the primary store unless a test opts into Redis
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

from storefront_auth.config import Settings  # noqa: E402
from storefront_auth.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # A fresh directory per test keeps the persisted memory store isolated
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        jwt_secret="unit-access-secret",
        jwt_refresh_secret="unit-refresh-secret",
        super_admin_email="root@storefront.test",
        super_admin_password="RootPass123",
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
