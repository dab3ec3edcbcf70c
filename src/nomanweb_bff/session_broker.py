# src/nomanweb_bff/session_broker.py
"""
Session Broker - owns the one authenticated session of a client context.

The bearer token lives in the long-lived store under a single fixed key with
a 7-day lifetime; the refresh token and the profile snapshot live in the
server-side context next to it. Setting a session replaces whatever was
there, and nothing is merged.
"""

import logging
import re
import time
import typing

from jose import JWTError, jwt
from pydantic import ValidationError

from .backend_proxy import BackendProxy, Provenance
from .config import Settings
from .errors import (
    AuthFailure,
    BackendRejected,
    BffError,
    ClientValidationFailure,
    InvalidCredentials,
    Unauthorized,
)
from .session_data import (
    Activated,
    PendingVerification,
    ProviderIdentity,
    RegisterOutcome,
    Session,
    UserProfile,
)
from .storage import ClientContext

logger = logging.getLogger(__name__)

SESSION_TOKEN_KEY = "token"
SESSION_DATA_KEY = "auth"

EMAIL_PATTERN = re.compile(r"^[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}$", re.IGNORECASE)
MIN_PASSWORD_LENGTH = 6

PROVIDER_LOGIN_PATHS = {
    "google": ("/api/oauth/google", "idToken"),
    "line": ("/api/oauth/line", "accessToken"),
}
PROVIDER_NAMES = {"google": "Google", "line": "LINE"}
PROVIDER_LINK_PATHS = {
    "google": ("/api/oauth/link-google", "idToken"),
}


# --- Local validation (runs before any network call) ---

def validate_email(email: typing.Optional[str]) -> str:
    if not email or not email.strip():
        raise ClientValidationFailure("Email is required", field="email")
    if not EMAIL_PATTERN.match(email.strip()):
        raise ClientValidationFailure("Invalid email address", field="email")
    return email.strip()


def validate_password(password: typing.Optional[str], field: str = "password") -> str:
    if not password:
        raise ClientValidationFailure("Password is required", field=field)
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ClientValidationFailure(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field=field
        )
    return password


def is_token_expired(token: str, now: typing.Optional[float] = None) -> bool:
    """True only when the token is a JWT whose exp claim has passed; opaque tokens are left to the backend."""
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return False
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        return False
    return (now if now is not None else time.time()) >= exp


class SessionBroker:
    def __init__(
            self,
            proxy: BackendProxy,
            context: ClientContext,
            settings: Settings,
            provenance: typing.Optional[Provenance] = None,
    ):
        self.proxy = proxy
        self.context = context
        self.settings = settings
        self.provenance = provenance
        self.token_store = context.cookie_store

    # --- Login paths ---

    async def login_with_password(self, email: str, password: str) -> Session:
        email = validate_email(email)
        validate_password(password)

        try:
            data = await self.proxy.forward_json(
                "POST",
                "/api/auth/login",
                body={"email": email, "password": password},
                provenance=self.provenance,
                fallback_error="Invalid email or password",
            )
        except BackendRejected as e:
            if e.status_code in (400, 401):
                logger.info(f"[SessionBroker] Password login rejected by backend ({e.status_code})")
                raise InvalidCredentials(e.message, status_code=e.status_code) from e
            raise
        return self._establish(data, "Login")

    async def login_with_provider_token(self, identity: ProviderIdentity) -> Session:
        path, field = PROVIDER_LOGIN_PATHS[identity.provider]
        logger.info(f"[SessionBroker] Sending {identity.provider} token to backend (length: {len(identity.token)})")
        data = await self.proxy.forward_json(
            "POST",
            path,
            body={field: identity.token},
            fallback_error=f"{PROVIDER_NAMES[identity.provider]} sign-in failed",
        )
        return self._establish(data, f"{PROVIDER_NAMES[identity.provider]} login")

    async def register(self, user_data: typing.Mapping[str, typing.Any]) -> RegisterOutcome:
        email = validate_email(user_data.get("email"))
        if not str(user_data.get("username") or "").strip():
            raise ClientValidationFailure("Username is required", field="username")
        validate_password(user_data.get("password"))

        payload = {k: v for k, v in user_data.items() if v is not None}
        payload["email"] = email
        data = await self.proxy.forward_json(
            "POST",
            "/api/auth/register",
            body=payload,
            provenance=self.provenance,
            fallback_error="Registration failed",
        )

        # No token means the account has to verify its email first
        if isinstance(data, dict) and data.get("token"):
            return Activated(session=self._establish(data, "Registration"))
        logger.info("[SessionBroker] Registration accepted, email verification pending")
        return PendingVerification(email=email)

    # --- Session lifecycle ---

    async def restore_session(self) -> typing.Optional[Session]:
        token = self.token_store.get(SESSION_TOKEN_KEY)
        if not token:
            return None

        if is_token_expired(token):
            logger.info("[SessionBroker] Stored session token has expired, dropping it")
            self.clear_session()
            return None

        try:
            data = await self.proxy.forward_json(
                "GET",
                "/api/auth/profile",
                headers=self._bearer(token),
                require_auth=True,
                fallback_error="Session is no longer valid",
            )
            user = UserProfile.model_validate(data)
        except (BffError, ValidationError) as e:
            logger.warning(f"[SessionBroker] Auth check failed, logging out: {type(e).__name__}: {e}")
            self.clear_session()
            return None

        session = Session(session_token=token, refresh_token=self._stored().get("refresh_token"), user=user)
        self._remember(session)
        logger.info(f"[SessionBroker] Session restored for {user.username}")
        return session

    def set_session(self, token: str, user: UserProfile, refresh_token: typing.Optional[str] = None) -> Session:
        session = Session(session_token=token, refresh_token=refresh_token, user=user)
        self.token_store.set(SESSION_TOKEN_KEY, token, self.settings.SESSION_TOKEN_MAX_AGE)
        self._remember(session)
        logger.info(f"[SessionBroker] Session set for {user.username} ({user.role.value})")
        return session

    def clear_session(self) -> None:
        self.token_store.delete(SESSION_TOKEN_KEY)
        self.context.data.pop(SESSION_DATA_KEY, None)

    def current(self) -> typing.Optional[Session]:
        token = self.token_store.get(SESSION_TOKEN_KEY)
        stored = self._stored()
        if not token or stored.get("token") != token or not stored.get("user"):
            return None
        return Session(
            session_token=token,
            refresh_token=stored.get("refresh_token"),
            user=UserProfile.model_validate(stored["user"]),
        )

    def update_user(self, partial: typing.Mapping[str, typing.Any]) -> UserProfile:
        session = self._require_session()
        session.user = session.user.merge(dict(partial))
        self._remember(session)
        return session.user

    async def refresh_session(self) -> Session:
        stored = self._stored()
        refresh_token = stored.get("refresh_token")
        if not refresh_token:
            raise Unauthorized("No refresh token available")
        try:
            data = await self.proxy.forward_json(
                "POST",
                "/api/auth/refresh",
                body={"refreshToken": refresh_token},
                fallback_error="Session refresh failed",
            )
            return self._establish(data, "Refresh")
        except BffError:
            self.clear_session()
            raise

    # --- Profile and account operations ---

    async def update_profile(self, changes: typing.Mapping[str, typing.Any]) -> UserProfile:
        session = self._require_session()
        data = await self.proxy.forward_json(
            "PUT",
            "/api/auth/profile",
            headers=self._bearer(session.session_token),
            body=dict(changes),
            require_auth=True,
            fallback_error="Failed to update profile",
        )
        return self.update_user(data if isinstance(data, dict) else changes)

    async def change_password(self, current_password: str, new_password: str) -> None:
        session = self._require_session()
        validate_password(new_password, field="newPassword")
        await self.proxy.forward(
            "PUT",
            "/api/auth/change-password",
            headers=self._bearer(session.session_token),
            body={"currentPassword": current_password, "newPassword": new_password},
            require_auth=True,
            fallback_error="Failed to change password",
            allow_empty=True,
        )

    async def forgot_password(self, email: str) -> None:
        await self.proxy.forward(
            "POST",
            "/api/auth/forgot-password",
            body={"email": validate_email(email)},
            fallback_error="Failed to send password reset email",
            allow_empty=True,
        )

    async def reset_password(self, token: str, password: str) -> None:
        if not token:
            raise ClientValidationFailure("Reset token is required", field="token")
        validate_password(password)
        await self.proxy.forward(
            "POST",
            "/api/auth/reset-password",
            body={"token": token, "password": password},
            fallback_error="Failed to reset password",
            allow_empty=True,
        )

    async def verify_email(self, token: str) -> typing.Any:
        if not token:
            raise ClientValidationFailure("Verification token is required", field="token")
        return await self.proxy.forward_json(
            "POST",
            "/api/auth/verify-email",
            body={"token": token},
            fallback_error="Email verification failed",
            allow_empty=True,
        )

    async def resend_verification(self, email: str) -> typing.Any:
        return await self.proxy.forward_json(
            "POST",
            "/api/auth/resend-verification",
            body={"email": validate_email(email)},
            fallback_error="Failed to resend verification email",
            allow_empty=True,
        )

    async def link_provider(self, identity: ProviderIdentity) -> typing.Any:
        session = self._require_session()
        path, field = PROVIDER_LINK_PATHS[identity.provider]
        return await self.proxy.forward_json(
            "POST",
            path,
            headers=self._bearer(session.session_token),
            body={field: identity.token},
            require_auth=True,
            fallback_error=f"Failed to link {PROVIDER_NAMES[identity.provider]} account",
        )

    # --- Helpers ---

    def _establish(self, data: typing.Any, action: str) -> Session:
        if not isinstance(data, dict) or not data.get("token") or not data.get("user"):
            logger.error(f"[SessionBroker] {action} response carried no token or user")
            raise AuthFailure(f"{action} failed - invalid response", status_code=502)
        try:
            user = UserProfile.model_validate(data["user"])
        except ValidationError as e:
            logger.error(f"[SessionBroker] {action} response carried an unreadable user: {e}")
            raise AuthFailure(f"{action} failed - invalid response", status_code=502) from e
        return self.set_session(data["token"], user, data.get("refreshToken"))

    def _remember(self, session: Session) -> None:
        self.context.data[SESSION_DATA_KEY] = {
            "token": session.session_token,
            "refresh_token": session.refresh_token,
            "user": session.user.model_dump(by_alias=True, mode="json"),
        }

    def _stored(self) -> dict:
        return self.context.data.get(SESSION_DATA_KEY) or {}

    def _require_session(self) -> Session:
        session = self.current()
        if session is None:
            raise Unauthorized("Not authenticated")
        return session

    @staticmethod
    def _bearer(token: str) -> typing.Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}
