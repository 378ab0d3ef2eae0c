"""Shared fixtures: an in-memory key-value store, a controllable clock,
a routed httpx.MockTransport and a fake Socket.IO client."""

import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from inbox_sync.api_client import InboxApiClient
from inbox_sync.cache.tag_cache import TagCache
from inbox_sync.models import Tag
from inbox_sync.realtime.channel import RealtimeChannel
from inbox_sync.tags.synchronizer import TagSynchronizer


BASE_URL = "http://inbox.test/api"


class FakeStore:
    """Dict-backed stand-in for the redis client (get/set/delete only)."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.expiry: Dict[str, Optional[int]] = {}

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self.data[key] = value
        self.expiry[key] = ex
        return True

    def delete(self, key: str) -> int:
        existed = key in self.data
        self.data.pop(key, None)
        self.expiry.pop(key, None)
        return 1 if existed else 0


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Handler = Callable[[httpx.Request], httpx.Response]


class Router:
    """Routes MockTransport requests by (method, path) and records them.

    A route value may be a JSON-serializable body, an ``httpx.Response``,
    or a callable taking the request.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path: str, result: Any) -> "Router":
        self.routes[(method.upper(), path)] = result
        return self

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        full = "/api" + path
        return [r for r in self.requests if r.method == method and r.url.path == full]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.startswith("/api"):
            path = path[len("/api"):]
        result = self.routes.get((request.method, path))
        if result is None:
            return httpx.Response(404, json={"message": f"No route for {request.method} {path}"})
        if callable(result):
            result = result(request)
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content.decode() or "null")


class FakeSocketClient:
    """Mimics the parts of socketio.AsyncClient the channel uses."""

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.connected = False
        self.connect_calls: List[Dict[str, Any]] = []
        self.handlers: Dict[Tuple[str, str], Callable] = {}

    def on(self, event: str, handler: Callable, namespace: Optional[str] = None) -> None:
        self.handlers[(namespace, event)] = handler

    async def connect(self, url: str, **kwargs: Any) -> None:
        self.connect_calls.append({"url": url, **kwargs})
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionRefusedError("connection refused")
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def emit_server(self, event: str, data: Any = None, namespace: str = "/messaging") -> None:
        await self.handlers[(namespace, event)](data)


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def router() -> Router:
    return Router()


@pytest.fixture
async def api(router):
    client = InboxApiClient("test-token", base_url=BASE_URL, transport=httpx.MockTransport(router))
    yield client
    await client.aclose()


@pytest.fixture
def tag_cache(store, clock) -> TagCache:
    return TagCache(store=store, clock=clock)


@pytest.fixture
def synchronizer(api, tag_cache) -> TagSynchronizer:
    return TagSynchronizer(api, tag_cache)


@pytest.fixture
def socket_client() -> FakeSocketClient:
    return FakeSocketClient()


@pytest.fixture
def channel(socket_client) -> RealtimeChannel:
    return RealtimeChannel(
        url="http://inbox.test",
        namespace="/messaging",
        client_factory=lambda: socket_client,
        sleep=no_sleep,
    )


def make_tag(tag_id: str, name: str, color: str = "#ff0000", page_id: str = "page-1") -> Tag:
    return Tag(tag_id=tag_id, tag_name=name, tag_color=color, facebook_page_ids=[page_id])
