import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything builds Settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="accountgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps every TTL record in process
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from accountgate.config import Settings  # noqa: E402
from accountgate.service.auth import AuthService  # noqa: E402
from accountgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from accountgate.storage.ephemeral import MemoryEphemeralStore  # noqa: E402
from accountgate.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Settable wall clock in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingEmail:
    """EmailService stand-in that records messages and can be told to fail."""

    is_configured = True

    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []
        self.fail = False

    def _record(self, kind: str, to: str, **fields) -> bool:
        if self.fail:
            return False
        self.sent.append((kind, to, fields))
        return True

    def send_registration_otp(self, to, code, *, name=None):
        return self._record("registration_otp", to, code=code, name=name)

    def send_password_reset_otp(self, to, code):
        return self._record("password_reset_otp", to, code=code)

    def send_welcome(self, to, *, name=None):
        return self._record("welcome", to, name=name)

    def send_vendor_approval_status(self, to, *, approved, business_name=None):
        return self._record("vendor_approval", to, approved=approved, business_name=business_name)

    def last_code(self, to: str) -> str:
        for kind, addr, fields in reversed(self.sent):
            if addr == to and "code" in fields:
                return fields["code"]
        raise AssertionError(f"no code sent to {to}")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return RecordingEmail()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-test-secret-with-at-least-32-characters",
        test_mode=True,
        shared_fs_root=_test_tmp_dir,
    )


@pytest.fixture
def ephemeral(clock):
    return MemoryEphemeralStore(clock=clock)


@pytest.fixture
def auth(settings, ephemeral, mailer, clock):
    """AuthService over in-memory stores, a recording mailer and a fake clock."""
    return AuthService(MemoryStore(), ephemeral, settings, mailer, clock=clock)


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
