import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from orchestrator.container import build_container
from orchestrator.core.config import Settings
from orchestrator.core.rate_limit import limiter
from orchestrator.gateway.types import ProviderResult
from orchestrator.providers.base import BaseProvider

PROVIDER_NAMES = ["alpha", "beta", "gamma", "delta", "epsilon"]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider(BaseProvider):
    """Provider returning scripted outcomes: ints are scores, exceptions are raised.

    The last outcome repeats once the script is exhausted.
    """

    def __init__(self, name: str, outcomes=(50,), delay: float = 0.0, enabled: bool = True):
        super().__init__(api_key="test-key", enabled=enabled)
        self.name = name
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls = 0

    async def analyze(self, text: str, deadline: float) -> ProviderResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return ProviderResult.success(self.name, outcome, metadata={"raw": f"SCORE: {outcome}/100"})


class FakePipeline:
    """Queues commands and runs them in order on ``execute``."""

    def __init__(self, client: "FakeRedis"):
        self.client = client
        self.commands: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.commands = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.commands.append((name, args, kwargs))
            return self

        return queue

    async def execute(self) -> list:
        return [await getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in self.commands]


class FakeRedis:
    """In-process stand-in for redis.asyncio.Redis(decode_responses=True).

    Implements only the commands the Redis store and job queue issue. Key
    expiry follows ``clock``.
    """

    def __init__(self, clock=None):
        self.clock = clock or FakeClock()
        self.values: dict[str, str] = {}
        self.expires: dict[str, float] = {}
        self.lists: dict[str, list[str]] = {}
        self.closed = False

    def _expire(self, key: str) -> None:
        at = self.expires.get(key)
        if at is not None and at <= self.clock():
            self.values.pop(key, None)
            self.expires.pop(key, None)

    async def get(self, key):
        self._expire(key)
        return self.values.get(key)

    async def set(self, key, value, px=None, nx=False):
        self._expire(key)
        if nx and key in self.values:
            return None
        self.values[key] = str(value)
        self.expires.pop(key, None)
        if px is not None:
            self.expires[key] = self.clock() + px / 1000
        return True

    async def incrby(self, key, amount=1):
        self._expire(key)
        value = int(self.values.get(key, 0)) + amount
        self.values[key] = str(value)
        return value

    async def pexpire(self, key, ms, nx=False):
        self._expire(key)
        if key not in self.values or (nx and key in self.expires):
            return False
        self.expires[key] = self.clock() + ms / 1000
        return True

    async def pttl(self, key):
        self._expire(key)
        if key not in self.values:
            return -2
        if key not in self.expires:
            return -1
        return round((self.expires[key] - self.clock()) * 1000)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            self._expire(key)
            if self.values.pop(key, None) is not None or self.lists.pop(key, None) is not None:
                removed += 1
            self.expires.pop(key, None)
        return removed

    async def lpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    async def brpop(self, keys, timeout=0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            for key in keys:
                if self.lists.get(key):
                    return key, self.lists[key].pop()
            if timeout and loop.time() >= deadline:
                return None
            await asyncio.sleep(0.005)

    async def llen(self, key):
        return len(self.lists.get(key, []))

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


def make_settings(**overrides) -> Settings:
    names = ",".join(PROVIDER_NAMES)
    values = {
        "providers": names,
        "free_tier_providers": names,
        "pro_tier_providers": names,
        "job_timeout_seconds": 5.0,
        "provider_timeout_seconds": 2.0,
        "worker_shutdown_grace_seconds": 1.0,
        "sentry_dsn": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(clock, sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        clock.advance(seconds)

    return _sleep


@pytest.fixture
def test_settings():
    return make_settings()


@pytest.fixture
def providers():
    return [FakeProvider(name, [20]) for name in PROVIDER_NAMES]


@pytest.fixture
def container(test_settings, providers, clock, fake_sleep):
    return build_container(test_settings, providers=providers, clock=clock, sleep=fake_sleep)


@pytest.fixture
async def client(container):
    """HTTP client against an app wired to the test container.

    ASGITransport does not run the lifespan, so the fixture owns the workers.
    """
    from orchestrator.main import create_app

    limiter.reset()
    await container.workers.start()
    app = create_app(container)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    await container.workers.stop()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)
