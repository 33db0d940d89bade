import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Must be set before anything imports the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault(
    "JWT_SECRET", "Kq7#vR2m!Lp9xZ4w$Nb8cT1y@Hf6jG3s%Wd5eU0o^Ya2iQ7r&Mx9kB4n*Pz6tJ1h"
)
os.environ.setdefault(
    "JWT_REFRESH_SECRET", "Zr4&Tn8!Qw2#Lk6$Xc1@Vb9%Mh3^Gp7*Sj5(Fd0)Ry4+Ue8=Io2-Ha6_Ws1~Ne9x"
)
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from civicauth.config import Settings  # noqa: E402
from civicauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from civicauth.service.signing_keys import SigningSecrets  # noqa: E402
from civicauth.storage.ephemeral import MemoryTTLStore  # noqa: E402
from civicauth.storage.memory import MemoryStore  # noqa: E402

ACCESS_SECRET = os.environ["JWT_SECRET"]
REFRESH_SECRET = os.environ["JWT_REFRESH_SECRET"]


class FakeClock:
    """Settable clock handed to services in place of ``utcnow``."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 30, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def signing():
    return SigningSecrets(access=ACCESS_SECRET, refresh=REFRESH_SECRET)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryTTLStore(clock=clock)


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
