# src/nomanweb_bff/main.py

import logging
import typing
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from . import admin_routes, auth_routes
from .backend_proxy import BackendProxy
from .callback_gate import CallbackGateRegistry
from .config import Settings, get_settings, settings
from .errors import BffError
from .storage import ClientContextMiddleware

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
        app_settings: typing.Optional[Settings] = None,
        transport: typing.Optional[httpx.AsyncBaseTransport] = None,
        progress_retry_wait: float = 0.5,
) -> FastAPI:
    app_settings = app_settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("--- NomanWeb BFF (FastAPI) Starting Up ---")
        logger.info(f"Backend URL: {app_settings.BACKEND_URL}")
        logger.info(f"LINE channel configured: {'Yes' if app_settings.LINE_CHANNEL_ID else 'No'}")
        logger.info(f"LINE callback URL: {app_settings.LINE_CALLBACK_URL}")
        logger.info(f"OAuth state policy: {app_settings.OAUTH_STATE_POLICY}")
        if not app_settings.SESSION_SECRET_KEY:
            logger.warning("SESSION_SECRET_KEY is not set. Do not run like this outside development.")

        client = httpx.AsyncClient(transport=transport, timeout=app_settings.HTTP_TIMEOUT_SECONDS)
        app.state.settings = app_settings
        app.state.http_client = client
        app.state.backend_proxy = BackendProxy(client, app_settings)
        app.state.callback_gates = CallbackGateRegistry(ttl_seconds=app_settings.CALLBACK_GATE_TTL_SECONDS)
        app.state.progress_retry_wait = progress_retry_wait
        try:
            yield
        finally:
            await client.aclose()
            logger.info("--- NomanWeb BFF shut down ---")

    app = FastAPI(
        title="NomanWeb BFF API",
        description="Backend-For-Frontend for NomanWeb, handling LINE/Google sign-in, sessions and proxying to the backend.",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(ClientContextMiddleware, app_settings=app_settings)

    @app.exception_handler(BffError)
    async def bff_error_handler(request: Request, exc: BffError):
        logger.info(f"[Errors] {request.method} {request.url.path} -> {exc.status_code} {type(exc).__name__}")
        return JSONResponse(exc.to_body(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        logger.info(f"[Errors] Malformed request to {request.url.path}: {exc.errors()}")
        return JSONResponse({"error": "Invalid request body"}, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"[Errors] Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse({"error": "Internal server error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    app.include_router(auth_routes.router)
    app.include_router(admin_routes.router)
    return app


app = create_app()
