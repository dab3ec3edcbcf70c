# src/nomanweb_bff/admin_routes.py
"""
Thin pass-through routes for the admin console. Paths mirror the backend's;
the proxy does all classification, these only pick the messages.
"""

import logging
import typing

from fastapi import APIRouter, Depends, Request

from .backend_proxy import BackendProxy, Provenance
from .dependencies import get_backend_proxy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin")


@router.post("/auth/login")
async def admin_login(
        request: Request,
        credentials: typing.Dict[str, typing.Any],
        proxy: BackendProxy = Depends(get_backend_proxy),
):
    logger.info("[AdminRoutes] Proxying admin login")
    return await proxy.forward_json(
        "POST",
        "/api/admin/auth/login",
        headers=request.headers,
        body=credentials,
        provenance=Provenance.from_request(request),
        fallback_error="Admin login failed",
        unavailable_error="Backend server is not running or not responding properly. Please start the backend server.",
        internal_error="Internal server error during admin login",
    )


@router.post("/auth/register")
async def admin_register(
        request: Request,
        registration: typing.Dict[str, typing.Any],
        proxy: BackendProxy = Depends(get_backend_proxy),
):
    return await proxy.forward_json(
        "POST",
        "/api/admin/auth/register",
        headers=request.headers,
        body=registration,
        provenance=Provenance.from_request(request),
        fallback_error="Admin registration failed",
        internal_error="Internal server error during admin registration",
    )


@router.get("/auth/verify-admin")
async def verify_admin(request: Request, proxy: BackendProxy = Depends(get_backend_proxy)):
    return await proxy.forward_json(
        "GET",
        "/api/admin/auth/verify-admin",
        headers=request.headers,
        require_auth=True,
        fallback_error="Admin verification failed",
        internal_error="Internal server error during admin verification",
    )


@router.get("/auth/invitation/validate/{token}")
async def validate_invitation(token: str, proxy: BackendProxy = Depends(get_backend_proxy)):
    return await proxy.forward_json(
        "GET",
        f"/api/admin/auth/invitation/validate/{token}",
        fallback_error="Invitation validation failed",
        internal_error="Internal server error during invitation validation",
    )


@router.get("/moderation/chapters")
async def chapters_moderation_queue(request: Request, proxy: BackendProxy = Depends(get_backend_proxy)):
    # Filters and paging are the backend's business; pass the query through untouched
    return await proxy.forward_json(
        "GET",
        "/api/admin/moderation/chapters",
        headers=request.headers,
        query=request.url.query,
        require_auth=True,
        fallback_error="Failed to fetch chapters moderation queue",
        internal_error="Internal server error",
    )
