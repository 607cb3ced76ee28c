import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before anything initializes settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
os.environ.setdefault("APP_NAME", "otpgate-test")
# Mail goes to the dev-mode logger; memory store stays in-process
os.environ.pop("SMTP_HOST", None)
os.environ.pop("STATE_DIR", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from otpgate.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def outbox(monkeypatch):
    """Capture OTP mails sent through the runtime's email service.

    Yields a dict of address -> list of codes, most recent last.
    """
    sent: dict[str, list[str]] = {}
    email_service = get_runtime().email

    def _capture(to_email, code, ttl_minutes):
        sent.setdefault(to_email, []).append(code)
        return True

    monkeypatch.setattr(email_service, "send_otp", _capture)
    return sent


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
