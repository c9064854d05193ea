"""
Shared test fixtures.

Provides: a controllable clock, a recording sleep, a routing MockTransport
for httpx, settings for a fake Service Layer and a client factory.
"""

from datetime import datetime, timedelta, timezone
from fnmatch import fnmatchcase
from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from b1bridge.service_layer import ServiceLayerClient
from b1bridge.services.config import DictConfigStore
from b1bridge.settings import Settings

SL_ENDPOINT = "https://sl.test:50000/"
BCCR_URL = "https://bccr.test/ws/ObtenerIndicadoresEconomicosXML"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    """Stands in for asyncio.sleep; records the requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


Responder = httpx.Response | Callable[[httpx.Request], httpx.Response] | Exception


class Router:
    """
    Request handler for httpx.MockTransport.

    Routes are (method, path glob). A route holds one responder or a list
    consumed in order (the last one repeats). Unrouted requests get 404.
    """

    def __init__(self):
        self.routes: list[tuple[str, str, list[Responder]]] = []
        self.requests: list[httpx.Request] = []

    def add(self, method: str, pattern: str, *responders: Responder) -> "Router":
        self.routes.append((method.upper(), pattern, list(responders)))
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, pattern, responders in self.routes:
            if method == request.method and fnmatchcase(request.url.path, pattern):
                responder = responders.pop(0) if len(responders) > 1 else responders[0]
                if isinstance(responder, Exception):
                    raise responder
                if callable(responder) and not isinstance(responder, httpx.Response):
                    return responder(request)
                return responder
        return httpx.Response(
            404, json={"error": {"code": -1, "message": {"lang": "en-us", "value": "Not found"}}}
        )

    def calls(self, method: str, pattern: str = "*") -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method.upper() and fnmatchcase(r.url.path, pattern)
        ]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


class DownRedis:
    """redis.asyncio client whose server is unreachable."""

    def __init__(self):
        self.closed = False

    async def get(self, key):
        raise RedisConnectionError("Connection refused")

    async def set(self, key, value, ex=None):
        raise RedisConnectionError("Connection refused")

    async def delete(self, key):
        raise RedisConnectionError("Connection refused")

    async def exists(self, key):
        raise RedisConnectionError("Connection refused")

    async def scan_iter(self, match=None):
        raise RedisConnectionError("Connection refused")
        yield  # pragma: no cover

    async def ping(self):
        raise RedisConnectionError("Connection refused")

    async def aclose(self):
        self.closed = True


def sl_error(status: int, message: str) -> httpx.Response:
    """A Service Layer style error answer."""
    return httpx.Response(
        status, json={"error": {"code": -1, "message": {"lang": "en-us", "value": message}}}
    )


def login_ok(session_id: str = "sess-1") -> httpx.Response:
    return httpx.Response(
        200,
        json={"SessionId": session_id, "Version": "1000190", "SessionTimeout": 30},
        headers={"Set-Cookie": f"B1SESSION={session_id}; path=/b1s"},
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def router() -> Router:
    return Router()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        sl_endpoint=SL_ENDPOINT,
        sl_timeout=5.0,
        sl_retries=3,
        redis_url=None,
        bccr_url=BCCR_URL,
        bccr_email="ops@example.com",
        bccr_token="TOKEN-123",
        bccr_name="b1bridge-tests",
    )


@pytest_asyncio.fixture
async def make_client(settings: Settings, clock: FakeClock, sleep: RecordingSleep):
    """Factory for clients wired to a Router; every client is closed afterwards."""
    clients: list[ServiceLayerClient] = []

    def factory(router: Router, **kwargs: Any) -> ServiceLayerClient:
        client = ServiceLayerClient(
            kwargs.pop("settings", settings),
            config_store=kwargs.pop("config_store", DictConfigStore()),
            transport=router.transport(),
            clock=clock,
            sleep=sleep,
            **kwargs,
        )
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.close()
