# src/nomanweb_bff/auth_routes.py

import logging
import typing
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, ConfigDict, Field

from .callback_gate import CallbackGate, CallbackGateRegistry, callback_key
from .config import PROJECT_ROOT_DIR, Settings
from .dependencies import (
    get_app_settings,
    get_callback_gates,
    get_http_client,
    get_progress_reporter,
    get_session_broker,
    get_state_guard,
)
from .errors import AuthFailure, BffError, ClientValidationFailure, ProtocolFailure, Unauthorized
from .oauth_state import OAuthStateGuard
from .providers import GoogleIdentityExchanger, LineTokenExchanger, build_line_authorize_url
from .reading_progress import ReadingProgressReporter
from .session_broker import SessionBroker
from .session_data import Activated
from .storage import ClientContext, get_client_context

logger = logging.getLogger(__name__)

router = APIRouter()

templates = Jinja2Templates(
    directory=PROJECT_ROOT_DIR / "src" / "nomanweb_bff" / "templates"
)


# --- Request bodies ---

class LoginBody(BaseModel):
    email: str = ""
    password: str = ""


class RegisterBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: str = ""
    username: str = ""
    password: str = ""
    displayName: typing.Optional[str] = None


class GooglePopupResult(BaseModel):
    idToken: typing.Optional[str] = None
    error: typing.Optional[str] = None


class ChangePasswordBody(BaseModel):
    currentPassword: str = ""
    newPassword: str = ""


class EmailBody(BaseModel):
    email: str = ""


class ResetPasswordBody(BaseModel):
    token: str = ""
    password: str = ""


class TokenBody(BaseModel):
    token: str = ""


class ProgressBody(BaseModel):
    progress: typing.Any = Field(None, description="Raw scroll progress, 0-100")


# --- LINE Login routes ---

@router.get("/auth/line/login")
async def line_login(
        guard: OAuthStateGuard = Depends(get_state_guard),
        settings: Settings = Depends(get_app_settings),
):
    state = guard.issue()
    auth_url = build_line_authorize_url(settings, state.value)
    return RedirectResponse(url=auth_url, status_code=status.HTTP_302_FOUND)


@router.get("/api/auth/callback/line")
async def line_callback_relay(request: Request):
    # Some LINE channel configs point at the API path; bounce to the real callback page
    params = {k: request.query_params[k] for k in ("code", "state") if request.query_params.get(k)}
    target = "/auth/line/callback"
    if params:
        target = f"{target}?{urlencode(params)}"
    return RedirectResponse(url=target, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get("/auth/line/callback")
async def line_callback(
        request: Request,
        code: typing.Optional[str] = None,
        state: typing.Optional[str] = None,
        context: ClientContext = Depends(get_client_context),
        guard: OAuthStateGuard = Depends(get_state_guard),
        broker: SessionBroker = Depends(get_session_broker),
        gates: CallbackGateRegistry = Depends(get_callback_gates),
        client: httpx.AsyncClient = Depends(get_http_client),
        settings: Settings = Depends(get_app_settings),
):
    logger.info(f"[LineCallback] Entered. Code present: {bool(code)}, state present: {bool(state)}")
    if code or state:
        gate = gates.gate_for(callback_key(context.context_id, "line", code or state))
    else:
        gate = CallbackGate("line:unkeyed")

    async def handle_line_callback():
        guard.consume(state)
        identity = await LineTokenExchanger(client, settings).exchange(code)
        return await broker.login_with_provider_token(identity)

    try:
        result = await gate.run(handle_line_callback)
    except BffError as e:
        logger.error(f"[LineCallback] LINE OAuth callback error: {type(e).__name__}: {e.message}")
        if isinstance(e, ProtocolFailure):
            status_code = status.HTTP_400_BAD_REQUEST
        elif isinstance(e, AuthFailure):
            status_code = status.HTTP_502_BAD_GATEWAY
        else:
            status_code = e.status_code
        return _render_callback(request, settings, error=e.message, status_code=status_code)

    if not result.executed:
        return _render_callback(request, settings)

    logger.info(f"[LineCallback] LINE sign-in successful for {result.value.user.username}")
    return RedirectResponse(url=settings.POST_LOGIN_REDIRECT_PATH, status_code=status.HTTP_302_FOUND)


def _render_callback(request: Request, settings: Settings, error: typing.Optional[str] = None,
                     status_code: int = status.HTTP_200_OK):
    if error:
        context = {
            "title": "Authentication Failed",
            "message": error,
            "detail": "Redirecting to login page...",
            "redirect_url": settings.LOGIN_PATH,
        }
    else:
        context = {
            "title": "Processing LINE Sign-In",
            "message": "Please wait while we complete your authentication...",
            "detail": None,
            "redirect_url": settings.POST_LOGIN_REDIRECT_PATH,
        }
    context["error"] = bool(error)
    context["redirect_seconds"] = settings.CALLBACK_ERROR_REDIRECT_SECONDS
    return templates.TemplateResponse(request, "callback.html", context, status_code=status_code)


# --- Google (popup result posted by the browser) ---

@router.post("/api/bff/auth/google")
async def google_login(
        body: GooglePopupResult,
        broker: SessionBroker = Depends(get_session_broker),
        settings: Settings = Depends(get_app_settings),
):
    identity = GoogleIdentityExchanger(settings).exchange(body.model_dump())
    session = await broker.login_with_provider_token(identity)
    return {"user": session.user.to_public(), "notification": "Google sign-in successful!"}


@router.post("/api/bff/auth/link/google")
async def link_google(
        body: GooglePopupResult,
        broker: SessionBroker = Depends(get_session_broker),
        settings: Settings = Depends(get_app_settings),
):
    identity = GoogleIdentityExchanger(settings).exchange(body.model_dump())
    return await broker.link_provider(identity)


# --- Password login and account routes ---

@router.post("/api/bff/auth/login")
async def login(body: LoginBody, broker: SessionBroker = Depends(get_session_broker)):
    session = await broker.login_with_password(body.email, body.password)
    return {"user": session.user.to_public(), "notification": "Login successful!"}


@router.post("/api/bff/auth/register")
async def register(body: RegisterBody, broker: SessionBroker = Depends(get_session_broker)):
    outcome = await broker.register(body.model_dump())
    if isinstance(outcome, Activated):
        return {
            "status": outcome.kind,
            "user": outcome.session.user.to_public(),
            "notification": "Registration successful!",
        }
    return {
        "status": outcome.kind,
        "email": outcome.email,
        "redirect": f"/verify-email-pending?{urlencode({'email': outcome.email})}",
        "notification": "Registration successful! Please check your email to verify your account.",
    }


@router.post("/api/bff/auth/logout")
async def logout(broker: SessionBroker = Depends(get_session_broker)):
    broker.clear_session()
    return {"notification": "Logged out successfully"}


@router.get("/api/bff/auth/me")
async def me(broker: SessionBroker = Depends(get_session_broker)):
    session = broker.current() or await broker.restore_session()
    if session is None:
        raise Unauthorized("Not authenticated")
    return {"user": session.user.to_public()}


@router.post("/api/bff/auth/refresh")
async def refresh(broker: SessionBroker = Depends(get_session_broker)):
    session = await broker.refresh_session()
    return {"user": session.user.to_public()}


@router.put("/api/bff/auth/profile")
async def update_profile(changes: typing.Dict[str, typing.Any], broker: SessionBroker = Depends(get_session_broker)):
    user = await broker.update_profile(changes)
    return {"user": user.to_public(), "notification": "Profile updated"}


@router.put("/api/bff/auth/change-password")
async def change_password(body: ChangePasswordBody, broker: SessionBroker = Depends(get_session_broker)):
    await broker.change_password(body.currentPassword, body.newPassword)
    return {"notification": "Password changed successfully"}


@router.post("/api/bff/auth/forgot-password")
async def forgot_password(body: EmailBody, broker: SessionBroker = Depends(get_session_broker)):
    await broker.forgot_password(body.email)
    return {"notification": "If that email is registered, a reset link has been sent"}


@router.post("/api/bff/auth/reset-password")
async def reset_password(body: ResetPasswordBody, broker: SessionBroker = Depends(get_session_broker)):
    await broker.reset_password(body.token, body.password)
    return {"notification": "Password has been reset. You can now log in."}


@router.post("/api/bff/auth/verify-email")
async def verify_email(body: TokenBody, broker: SessionBroker = Depends(get_session_broker)):
    data = await broker.verify_email(body.token)
    return data or {"message": "Email verified successfully"}


@router.post("/api/bff/auth/resend-verification")
async def resend_verification(body: EmailBody, broker: SessionBroker = Depends(get_session_broker)):
    data = await broker.resend_verification(body.email)
    return data or {"message": "Verification email sent"}


# --- Reading progress (background telemetry) ---

@router.post("/api/bff/reading-progress/{chapter_id}")
async def report_reading_progress(
        chapter_id: str,
        body: ProgressBody,
        reporter: ReadingProgressReporter = Depends(get_progress_reporter),
):
    try:
        report = await reporter.report(chapter_id, body.progress)
    except ClientValidationFailure as e:
        logger.debug(f"[ReadingProgress] Ignoring invalid progress report: {e.message}")
        return {"sent": False, "reason": "invalid"}
    return {
        "sent": report.sent,
        "progress": report.progress,
        "delivered": report.delivered,
        "completed": report.completed,
        "notification": report.notification,
    }
