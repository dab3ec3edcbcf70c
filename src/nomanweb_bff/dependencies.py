# src/nomanweb_bff/dependencies.py

import httpx
from fastapi import Depends, Request

from .backend_proxy import BackendProxy, Provenance
from .callback_gate import CallbackGateRegistry
from .config import Settings
from .oauth_state import OAuthStateGuard
from .reading_progress import PROGRESS_DATA_KEY, ReadingProgressReporter
from .session_broker import SESSION_TOKEN_KEY, SessionBroker
from .storage import ClientContext, get_client_context


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_backend_proxy(request: Request) -> BackendProxy:
    return request.app.state.backend_proxy


def get_callback_gates(request: Request) -> CallbackGateRegistry:
    return request.app.state.callback_gates


def get_session_broker(
        request: Request,
        proxy: BackendProxy = Depends(get_backend_proxy),
        context: ClientContext = Depends(get_client_context),
        settings: Settings = Depends(get_app_settings),
) -> SessionBroker:
    return SessionBroker(proxy, context, settings, provenance=Provenance.from_request(request))


def get_state_guard(
        context: ClientContext = Depends(get_client_context),
        settings: Settings = Depends(get_app_settings),
) -> OAuthStateGuard:
    return OAuthStateGuard(
        short_lived=context.server_store,
        long_lived=context.cookie_store,
        policy=settings.OAUTH_STATE_POLICY,
        ttl_seconds=settings.OAUTH_STATE_TTL_SECONDS,
    )


def get_progress_reporter(
        request: Request,
        proxy: BackendProxy = Depends(get_backend_proxy),
        context: ClientContext = Depends(get_client_context),
) -> ReadingProgressReporter:
    last_sent = context.data.setdefault(PROGRESS_DATA_KEY, {})
    return ReadingProgressReporter(
        proxy,
        last_sent,
        token=context.cookie_store.get(SESSION_TOKEN_KEY),
        retry_wait_seconds=request.app.state.progress_retry_wait,
    )
