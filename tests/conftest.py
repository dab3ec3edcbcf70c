import json
import typing

import httpx
import pytest
from fastapi.testclient import TestClient

from nomanweb_bff.backend_proxy import BackendProxy
from nomanweb_bff.config import Settings
from nomanweb_bff.main import create_app
from nomanweb_bff.storage import ClientContext, CookieStore, ServerSessionStore

LINE_TOKEN_PATH = "/oauth2/v2.1/token"

USER = {
    "id": "u-1",
    "email": "a@b.com",
    "username": "alice",
    "displayName": "Alice",
    "role": "USER",
    "status": "ACTIVE",
    "coinBalance": 10,
    "emailVerified": True,
}


def reply(status_code: int = 200, **kwargs) -> typing.Callable[[httpx.Request], httpx.Response]:
    """A fresh httpx.Response per call, so the same route can answer many times."""
    return lambda request: httpx.Response(status_code, **kwargs)


def refuse(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("Connection refused", request=request)


class FakeUpstream:
    """
    Stands in for both the backend and the LINE token endpoint.
    Routes on (method, path); records every request it sees.
    """

    def __init__(self):
        self.routes: typing.Dict[typing.Tuple[str, str], list] = {}
        self.calls: typing.List[httpx.Request] = []

    def on(self, method: str, path: str, *handlers) -> None:
        self.routes[(method, path)] = list(handlers)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handlers = self.routes.get((request.method, request.url.path))
        if not handlers:
            return httpx.Response(404, json={"message": f"No route for {request.method} {request.url.path}"})
        # The last handler keeps answering once a sequence runs out
        handler = handlers.pop(0) if len(handlers) > 1 else handlers[0]
        return handler(request)

    def calls_to(self, path: str) -> typing.List[httpx.Request]:
        return [c for c in self.calls if c.url.path == path]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def json_body(request: httpx.Request) -> typing.Any:
    return json.loads(request.content)


@pytest.fixture
def settings():
    return Settings(
        BACKEND_URL="http://backend.test/api/",
        LINE_CHANNEL_ID="1650000000",
        LINE_CHANNEL_SECRET="line-secret",
        LINE_CALLBACK_URL="http://testserver/auth/line/callback",
        LINE_TOKEN_URL=f"https://line.test{LINE_TOKEN_PATH}",
        OAUTH_STATE_POLICY="lenient",
    )


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
async def http_client(upstream):
    client = httpx.AsyncClient(transport=upstream.transport)
    yield client
    await client.aclose()


@pytest.fixture
def proxy(http_client, settings):
    return BackendProxy(http_client, settings)


@pytest.fixture
def make_context():
    def _make(cookies: typing.Optional[dict] = None) -> ClientContext:
        data: dict = {}
        return ClientContext(
            context_id="ctx-test",
            data=data,
            server_store=ServerSessionStore(data),
            cookie_store=CookieStore(cookies or {}),
        )
    return _make


@pytest.fixture
def app_client(settings, upstream):
    app = create_app(settings, transport=upstream.transport, progress_retry_wait=0)
    with TestClient(app) as client:
        yield client
