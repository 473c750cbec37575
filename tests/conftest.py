"""Test fixtures — a fresh SQLite database, loopback bus and fake endpoints per test."""

import asyncio
import os
import random
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Settings are read from the environment *before* any eventrelay import
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["BUS_BACKEND"] = "memory"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_eventrelay.db"

from eventrelay.components import Components, build_components  # noqa: E402
from eventrelay.config import Settings  # noqa: E402
from eventrelay.services.bus import InMemoryBus  # noqa: E402

TENANT = "tenant-a"
APP_ID = "app-1"


class FakeClock:
    """Controllable UTC clock; ``advance`` moves it forward."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class Endpoint:
    """Scripted webhook receivers behind ``httpx.MockTransport``.

    ``script(url, 500, 500, 200)`` makes the next three requests to ``url``
    answer with those statuses; afterwards the last status repeats. A status
    of ``None`` means hang until the client gives up.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._scripts: dict[str, list] = {}
        self.delays: dict[str, float] = {}

    def script(self, url: str, *statuses) -> None:
        self._scripts[url] = list(statuses)

    def requests_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    def _next_status(self, url: str):
        statuses = self._scripts.get(url) or [200]
        if len(statuses) > 1:
            return statuses.pop(0)
        return statuses[0]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        status = self._next_status(url)
        if url in self.delays:
            await asyncio.sleep(self.delays[url])
        if status is None:
            await asyncio.sleep(3600)
        return httpx.Response(status, text=f"status {status}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def endpoint() -> Endpoint:
    return Endpoint()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}",
        secret_key="test-secret-key",
        bus_backend="memory",
        worker_concurrency=2,
        http_timeout=0.5,
        lease_duration=30.0,
        lease_extend_interval=0.05,
        registry_cache_ttl=0,
        retry_sweep_interval=0.05,
    )


@pytest_asyncio.fixture
async def components(settings, endpoint, clock) -> AsyncGenerator[Components, None]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(endpoint.handler))
    comps = await build_components(
        settings,
        bus=InMemoryBus(lease_duration=settings.lease_duration),
        http_client=http,
        clock=clock,
        rng=random.Random(7),
    )
    yield comps
    await comps.aclose()
    await http.aclose()


@pytest_asyncio.fixture
async def client(components) -> AsyncGenerator[AsyncClient, None]:
    from eventrelay.main import create_app

    app = create_app(components)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers(settings) -> dict:
    from eventrelay.services.auth import token_for

    return {"Authorization": f"Bearer {token_for(TENANT, APP_ID, settings=settings)}"}


async def drain(components: Components, max_messages: int = 100) -> int:
    """Hand every ready primary/retry message to the dispatcher, inline."""
    handled = 0
    topics = components.dispatcher.topics
    while handled < max_messages:
        progressed = False
        for topic in topics:
            received = await components.bus.receive(topic, timeout=0)
            if received is None:
                continue
            message, lease = received
            await components.dispatcher.handle(message, lease)
            handled += 1
            progressed = True
        if not progressed:
            return handled
    return handled


async def run_retries(components: Components, clock: FakeClock, seconds: float) -> int:
    """Move the clock, sweep due retries onto the bus and dispatch them."""
    clock.advance(seconds)
    await components.sweeper.sweep_once()
    return await drain(components)
