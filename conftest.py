"""
Pytest configuration and shared fixtures.

Each test gets a fresh SQLite file under tmp_path and a FakeConnection that
stands in for the server: tests push wire events into it with receive() and
inspect what the client emitted.
"""

import asyncio
import inspect
from collections import defaultdict

import pytest
import pytest_asyncio

# Clear settings cache before any chatcore imports so test env vars are used
from chatcore.config import Settings, get_settings
get_settings.cache_clear()

from chatcore.core import ChatCore
from chatcore.events import EventBus
from chatcore.exceptions import TransportError
from chatcore.storage import LocalStore


class FakeConnection:
    """In-process Connection recording emitted events."""

    def __init__(self):
        self.handlers = defaultdict(list)
        self.emitted = []
        self.fail_emits = False
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def on(self, event, handler):
        self.handlers[event].append(handler)

    async def emit(self, event, data):
        if not self._connected:
            raise TransportError(f"Cannot emit {event}: not connected")
        if self.fail_emits:
            raise TransportError(f"Simulated failure emitting {event}")
        self.emitted.append((event, data))

    async def connect(self):
        self._connected = True
        await self.receive("connect")

    async def close(self):
        self._connected = False

    async def receive(self, event, data=None):
        """Deliver a wire event to the registered handlers."""
        for handler in list(self.handlers[event]):
            result = handler(data)
            if inspect.isawaitable(result):
                await result

    def sent(self, event):
        return [data for name, data in self.emitted if name == event]


async def wait_until(predicate, timeout=3.0, interval=0.01):
    """Poll predicate (sync or async) until it returns something truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'chatcore.db'}"


@pytest.fixture
def settings(database_url) -> Settings:
    """Settings with a short backoff unit so retry tests run quickly."""
    return Settings(
        DATABASE_URL=database_url,
        SERVER_URL="",
        RETRY_BACKOFF_BASE_SECONDS=0.05,
        RETRY_BACKOFF_MAX_SECONDS=5.0,
    )


@pytest_asyncio.fixture
async def store(database_url):
    store = LocalStore(database_url)
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def recorder(bus):
    """Collects (event, payload) tuples published on the bus."""
    published = []

    def record(name):
        bus.subscribe(name, lambda *payload: published.append((name, payload)))

    record.published = published
    return record


@pytest_asyncio.fixture
async def core(settings, connection):
    """An initialized, connected ChatCore on a fresh database."""
    core = ChatCore(LocalStore(settings.DATABASE_URL), connection, settings=settings)
    await core.init()
    await core.start()
    yield core
    await core.close()
