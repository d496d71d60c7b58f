"""Pytest configuration and shared fixtures."""

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from nkshield.api.common import SERVICES
from nkshield.app import create_app
from nkshield.auth import create_session
from nkshield.config import ServiceConfig
from nkshield.errors import StoreUnavailableError
from nkshield.identity import hash_ip
from nkshield.services import DefenseServices
from nkshield.settings import SETTINGS_KEY
from nkshield.store import MemoryKVStore

TEST_SALT = "test-salt"
LOCAL_IP = "127.0.0.1"

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64; rv:120.0) Gecko/20100101 Firefox/120.0",
    "Accept": "text/html,application/xhtml+xml,application/json;q=0.9",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "gzip, deflate",
}


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenKVStore(MemoryKVStore):
    """Store whose every operation fails like an unreachable Redis."""

    async def _fail(self, *args, **kwargs):
        raise StoreUnavailableError("store is down")

    get = set = delete = incrby = expire = _fail
    sadd = srem = smembers = _fail
    lpush = ltrim = lrange = _fail


class FakeSleep:
    """Records tarpit delays instead of sleeping."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _make_config(**kwargs) -> ServiceConfig:
    """Create a test ServiceConfig with sensible defaults."""
    defaults = {
        "rate_limit_salt": TEST_SALT,
        "secure_cookies": False,
        "site_url": "https://band.example.com",
    }
    defaults.update(kwargs)
    return ServiceConfig(**defaults)


def browser_headers(**overrides) -> dict[str, str]:
    headers = dict(BROWSER_HEADERS)
    headers.update(overrides)
    return headers


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryKVStore(clock=clock)


@pytest.fixture
def config():
    return _make_config()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def services(config, store, fake_sleep):
    return DefenseServices(config=config, store=store, sleep=fake_sleep)


@pytest.fixture
def local_hash():
    """Hashed identity of requests made by the test client."""
    return hash_ip(LOCAL_IP, TEST_SALT)


@pytest.fixture
def save_settings(store):
    """Persist a partial settings record directly."""

    async def _save(**wire_values):
        current = await store.get(SETTINGS_KEY) or {}
        current.update(wire_values)
        await store.set(SETTINGS_KEY, current)

    return _save


@pytest.fixture
def app(config, store, fake_sleep):
    return create_app(config, store=store, sleep=fake_sleep)


@pytest_asyncio.fixture
async def client(app):
    """In-process HTTP client for the full application."""
    test_client = TestClient(TestServer(app))
    await test_client.start_server()
    try:
        yield test_client
    finally:
        await test_client.close()


@pytest_asyncio.fixture
async def admin_headers(app, local_hash):
    """Browser headers carrying a valid admin session for the test client."""
    services = app[SERVICES]
    token = await create_session(services, local_hash, 3600)
    return browser_headers(Cookie=f"nk-session={token}")
