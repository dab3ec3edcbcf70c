# src/nomanweb_bff/storage.py
"""
Per-browser client context.

Each browser gets a `session_id` cookie pointing at a server-side dict. On top
of that sit two independent key/value stores:

* ServerSessionStore - entries inside the server-side dict, with their own
  expiry. Short-lived, lost when the server restarts or the context expires.
* CookieStore - plain browser cookies. Longer-lived, but the browser may drop
  or block them at any time.

Neither store is assumed to be present or consistent with the other.
"""

import logging
import time
import typing
import uuid
from dataclasses import dataclass

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from .config import Settings, settings

logger = logging.getLogger(__name__)

# --- Simple In-Memory Session Store Implementation ---
# For production, swap for a shared store (e.g. Redis) so several workers see the same contexts.
_in_memory_session_data_storage: typing.Dict[str, dict] = {}

SESSION_COOKIE_NAME = "session_id"


class ExpiringStore(typing.Protocol):
    def get(self, key: str) -> typing.Optional[str]: ...

    def set(self, key: str, value: str, max_age: int) -> None: ...

    def delete(self, key: str) -> None: ...


class ServerSessionStore:
    def __init__(self, data: dict, clock: typing.Callable[[], float] = time.time):
        self._data = data
        self._clock = clock

    def get(self, key: str) -> typing.Optional[str]:
        entry = self._data.get(key)
        if not isinstance(entry, dict):
            return None
        if entry.get("expires_at", 0) <= self._clock():
            self._data.pop(key, None)
            return None
        return entry.get("value")

    def set(self, key: str, value: str, max_age: int) -> None:
        self._data[key] = {"value": value, "expires_at": self._clock() + max_age}

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class CookieStore:
    """
    Reads come from the inbound request's cookies; writes are queued and
    turned into Set-Cookie headers when the response goes out.
    """

    def __init__(self, cookies: typing.Mapping[str, str], secure: bool = False):
        self._cookies = dict(cookies)
        self._pending: typing.Dict[str, typing.Optional[typing.Tuple[str, int]]] = {}
        self._secure = secure

    def get(self, key: str) -> typing.Optional[str]:
        return self._cookies.get(key) or None

    def set(self, key: str, value: str, max_age: int) -> None:
        self._cookies[key] = value
        self._pending[key] = (value, max_age)

    def delete(self, key: str) -> None:
        self._cookies.pop(key, None)
        self._pending[key] = None

    def apply(self, response: StarletteResponse) -> None:
        for key, pending in self._pending.items():
            if pending is None:
                response.delete_cookie(key, path="/", secure=self._secure, httponly=True, samesite="lax")
            else:
                value, max_age = pending
                response.set_cookie(
                    key,
                    value,
                    max_age=max_age,
                    httponly=True,
                    secure=self._secure,
                    samesite="lax",
                    path="/",
                )
        self._pending.clear()


@dataclass
class ClientContext:
    context_id: str
    data: dict
    server_store: ServerSessionStore
    cookie_store: CookieStore
    is_new: bool = False


class ClientContextMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, app_settings: typing.Optional[Settings] = None):
        super().__init__(app)
        self.settings = app_settings or settings

    async def dispatch(self, request, call_next):
        session_id = request.cookies.get(SESSION_COOKIE_NAME)
        is_new = False
        if not session_id or session_id not in _in_memory_session_data_storage:
            session_id = str(uuid.uuid4())
            _in_memory_session_data_storage[session_id] = {}
            is_new = True
            logger.debug(f"[ClientContext] New client context {session_id[:8]}...")
        data = _in_memory_session_data_storage[session_id]
        context = ClientContext(
            context_id=session_id,
            data=data,
            server_store=ServerSessionStore(data),
            cookie_store=CookieStore(request.cookies, secure=self.settings.COOKIE_SECURE),
            is_new=is_new,
        )
        request.state.client = context

        response: StarletteResponse = await call_next(request)

        context.cookie_store.apply(response)
        response.set_cookie(
            SESSION_COOKIE_NAME,
            session_id,
            max_age=self.settings.SESSION_COOKIE_MAX_AGE,
            httponly=True,
            secure=self.settings.COOKIE_SECURE,
            samesite="lax",
        )
        return response


def get_client_context(request: Request) -> ClientContext:
    return request.state.client
