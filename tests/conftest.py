import asyncio
import inspect
import os
import tempfile

# Configure the environment before anything imports muxic.config or the app
_test_tmp_dir = tempfile.mkdtemp(prefix="muxic_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in tests: rate limits use the in-process bucket
os.environ["REDIS_URL"] = ""
for _name in ("SMTP_HOST", "GOOGLE_CLIENT_ID", "GOOGLE_REDIRECT_URI"):
    os.environ.pop(_name, None)

import pytest  # noqa: E402

from muxic.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # a fresh state directory per test; the memory store reloads from disk
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def sent_emails(monkeypatch):
    """Capture outgoing mail by patching the EmailService send methods."""
    from muxic.service.email import EmailService

    captured: list[dict] = []

    def _capture(kind):
        def _send(self, to_email, *args):
            captured.append({"kind": kind, "to": to_email, "args": args})
            return True

        return _send

    monkeypatch.setattr(EmailService, "send_verification_otp", _capture("verification"))
    monkeypatch.setattr(EmailService, "send_welcome", _capture("welcome"))
    monkeypatch.setattr(EmailService, "send_password_reset", _capture("password_reset"))
    return captured


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
