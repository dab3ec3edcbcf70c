# src/nomanweb_bff/backend_proxy.py
"""
Single chokepoint for every call the BFF makes to the backend.

Three independent failure domains end up in one client-visible shape,
{"error": str} plus a status:

* transport (refused, DNS, timeout)      -> ProxyInternalError, 500
* response is not JSON (empty included)  -> BackendUnavailable, 503 (whatever the status)
* JSON with a non-success status         -> BackendRejected, backend's own status
"""

import logging
import typing
from dataclasses import dataclass

import httpx
from fastapi import Request

from .config import Settings
from .errors import BackendRejected, BackendUnavailable, ProxyInternalError, Unauthorized

logger = logging.getLogger(__name__)

# First present header wins; the direct peer address is the last resort
CLIENT_IP_HEADERS = ("x-forwarded-for", "x-real-ip")


@dataclass
class ProxiedResponse:
    status_code: int
    content_kind: str  # "json", or "empty" for a bodiless success
    data: typing.Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass
class Provenance:
    """Where the end user's request came from, sent to the backend for security logging."""
    ip_address: str = "unknown"
    user_agent: str = "unknown"

    @classmethod
    def from_request(cls, request: Request) -> "Provenance":
        return cls(ip_address=client_ip(request), user_agent=user_agent(request))

    def to_body(self) -> typing.Dict[str, str]:
        return {"ipAddress": self.ip_address, "userAgent": self.user_agent}


def client_ip(request: Request) -> str:
    for header in CLIENT_IP_HEADERS:
        value = request.headers.get(header)
        if value and value.strip():
            # x-forwarded-for may carry a chain; the left-most entry is the original client
            return value.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def user_agent(request: Request) -> str:
    return request.headers.get("user-agent") or "unknown"


def bearer_header(headers: typing.Optional[typing.Mapping[str, str]]) -> typing.Optional[str]:
    if not headers:
        return None
    auth = headers.get("authorization") or headers.get("Authorization")
    if not auth or not auth.startswith("Bearer ") or not auth[len("Bearer "):].strip():
        return None
    return auth


class BackendProxy:
    def __init__(self, client: httpx.AsyncClient, settings: Settings):
        self.client = client
        self.base_url = settings.BACKEND_URL
        self.timeout = settings.HTTP_TIMEOUT_SECONDS

    async def forward(
            self,
            method: str,
            path: str,
            *,
            headers: typing.Optional[typing.Mapping[str, str]] = None,
            body: typing.Any = None,
            query: typing.Union[str, typing.Mapping[str, typing.Any], None] = None,
            require_auth: bool = False,
            provenance: typing.Optional[Provenance] = None,
            fallback_error: str = "Request failed",
            unavailable_error: typing.Optional[str] = None,
            internal_error: typing.Optional[str] = None,
            allow_empty: bool = False,
    ) -> ProxiedResponse:
        auth = bearer_header(headers)
        if require_auth and not auth:
            logger.warning(f"[BackendProxy] {method} {path} rejected locally: no valid authorization header")
            raise Unauthorized()

        outbound_headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if auth:
            outbound_headers["Authorization"] = auth

        if provenance is not None:
            body = {**(body or {}), **provenance.to_body()}

        url = f"{self.base_url}{path}"
        params = None
        if isinstance(query, str):
            if query:
                url = f"{url}?{query}"
        elif query:
            params = query

        try:
            logger.info(f"[BackendProxy] {method} {path} (auth: {'yes' if auth else 'no'})")
            response = await self.client.request(
                method,
                url,
                headers=outbound_headers,
                json=body,
                params=params,
                timeout=self.timeout,
            )
        except httpx.RequestError as e:
            logger.error(f"[BackendProxy] Request error calling backend {method} {path}: {type(e).__name__}: {e}")
            raise ProxyInternalError(internal_error) from e

        return self._classify(method, path, response, fallback_error, unavailable_error, allow_empty)

    async def forward_json(self, method: str, path: str, **kwargs) -> typing.Any:
        return (await self.forward(method, path, **kwargs)).data

    @staticmethod
    def _classify(
            method: str,
            path: str,
            response: httpx.Response,
            fallback_error: str,
            unavailable_error: typing.Optional[str],
            allow_empty: bool = False,
    ) -> ProxiedResponse:
        # Only callers that expect a bodiless success (204) accept one
        if allow_empty and response.is_success and not response.content:
            return ProxiedResponse(status_code=response.status_code, content_kind="empty")

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type.lower():
            logger.error(
                f"[BackendProxy] Backend response is not JSON for {method} {path} "
                f"({response.status_code}, {content_type or 'no content-type'}): {response.text[:500]}"
            )
            raise BackendUnavailable(unavailable_error)

        try:
            data = response.json()
        except ValueError:
            logger.error(f"[BackendProxy] Backend sent malformed JSON for {method} {path}: {response.text[:500]}")
            raise BackendUnavailable(unavailable_error)

        if not response.is_success:
            message = None
            if isinstance(data, dict):
                message = data.get("message") or data.get("error")
            logger.warning(f"[BackendProxy] Backend rejected {method} {path}: {response.status_code} - {message}")
            raise BackendRejected(message or fallback_error, response.status_code, data)

        return ProxiedResponse(status_code=response.status_code, content_kind="json", data=data)
