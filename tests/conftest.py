import asyncio
import inspect
import os
import random
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("HASH_MEMORY_COST_KIB", "8192")
os.environ.setdefault("ACCESS_TOKEN_SECRET", "access-secret-for-tests-only-0123456789")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "refresh-secret-for-tests-only-0123456789")
os.environ.setdefault("ID_TOKEN_SECRET", "id-secret-for-tests-only-0123456789")
os.environ.setdefault("REFRESH_COOKIE_SECURE", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authflow.config import Settings  # noqa: E402
from authflow.service.background import BackgroundTasks  # noqa: E402
from authflow.service.context import RequestContext  # noqa: E402
from authflow.service.runtime import Runtime, reset_runtime_for_tests  # noqa: E402
from authflow.storage.memory import MemoryCache, MemoryStore  # noqa: E402
from authflow.storage.models import AuthRecord, Gender, UserProfile, new_id  # noqa: E402

TEST_PASSWORD = "Correct-Horse-42"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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


class FakeClock:
    """Wall clock for flows and tokens plus a matching monotonic clock for the cache."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)
        self._start = self.now

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return (self.now - self._start).total_seconds() + 1000.0

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class SeededRandom:
    """Deterministic stand-in for the CSPRNG."""

    def __init__(self, seed: int = 7) -> None:
        self._random = random.Random(seed)

    def token_bytes(self, nbytes: int) -> bytes:
        return self._random.randbytes(nbytes)

    def randbelow(self, upper: int) -> int:
        return self._random.randrange(upper)


class FakeNotifier:
    """Captures outgoing emails; can be told to fail the next N sends."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.failures_left = 0
        self.attempts = 0

    async def send_templated(self, to, template_name, variables, locale):
        self.attempts += 1
        if self.failures_left > 0:
            self.failures_left -= 1
            raise ConnectionError("smtp unavailable")
        self.sent.append(
            {"to": to, "template": template_name, "variables": dict(variables), "locale": locale}
        )

    def last(self, template_name: str) -> dict:
        for message in reversed(self.sent):
            if message["template"] == template_name:
                return message
        raise AssertionError(f"no {template_name} email was sent")


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        app_base_url="https://app.example.com",
        access_token_secret="access-secret-for-tests-only-0123456789",
        refresh_token_secret="refresh-secret-for-tests-only-0123456789",
        id_token_secret="id-secret-for-tests-only-0123456789",
        password_hash_time_cost=1,
        otp_hash_time_cost=1,
        hash_memory_cost_kib=8192,
        refresh_cookie_secure=False,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock.monotonic)


@pytest.fixture
def runtime(settings, store, cache, notifier, clock):
    return Runtime(
        settings,
        store=store,
        cache=cache,
        notifier=notifier,
        background=BackgroundTasks(settings.retry, sleep=_no_sleep),
        rng=SeededRandom(),
        clock=clock,
    )


@pytest.fixture
def ctx():
    return RequestContext.from_headers(
        {
            "User-Agent": (
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/126.0 Safari/537.36"
            ),
            "X-Forwarded-For": "203.0.113.7, 10.0.0.1",
        },
        peer="10.0.0.1",
        trusted_proxies=["10.0.0.0/8"],
    )


@pytest.fixture
def register_user(runtime, store):
    """Create an active, verified account with a profile directly in the store."""

    async def _register(
        email: str = "alice@example.com",
        password: str = TEST_PASSWORD,
        **overrides,
    ) -> AuthRecord:
        record = AuthRecord.new(email, runtime.deps.hasher.hash_password(password))
        for name, value in overrides.items():
            setattr(record, name, value)
        auth = await store.create_auth(record)
        await store.create_profile(
            UserProfile(
                id=new_id(),
                auth_id=auth.id,
                full_name="Alice Nguyen",
                gender=Gender.FEMALE,
                date_of_birth=date(1994, 3, 2),
            )
        )
        return auth

    return _register
