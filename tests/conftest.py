import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="gemvault_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("MFA_ENCRYPTION_KEY", "test-mfa-encryption-key-for-testing-only")
# Rate-limit buckets and pending MFA state stay in process so tests never share them
os.environ["REDIS_URL"] = ""
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gemvault.service.runtime import reset_runtime_for_tests  # noqa: E402



@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    from gemvault.service.runtime import get_runtime

    return get_runtime()


@pytest.fixture
def sent_emails(runtime, monkeypatch):
    """Capture outgoing mail instead of logging it."""
    outbox = []

    def _capture(to_email, subject, html_body, text_body):
        outbox.append({"to": to_email, "subject": subject, "text": text_body})
        return True

    monkeypatch.setattr(runtime.email, "_send_email", _capture)
    return outbox


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
