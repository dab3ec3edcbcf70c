# src/nomanweb_bff/providers.py

import logging
import typing
from urllib.parse import urlencode

import httpx
from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token

from .config import Settings
from .errors import (
    MissingAccessToken,
    MissingAuthorizationCode,
    ProviderCancelled,
    ProviderError,
    TokenExchangeFailed,
)
from .session_data import ProviderIdentity

logger = logging.getLogger(__name__)

# Firebase popup error codes that mean the user walked away rather than failed
GOOGLE_CANCEL_CODES = {
    "auth/popup-closed-by-user",
    "auth/cancelled-popup-request",
    "auth/user-cancelled",
}


# --- LINE Login (authorization code flow) ---

def build_line_authorize_url(settings: Settings, state: str) -> str:
    """
    Builds the LINE authorization URL.
    The 'state' is issued and stored by the calling route (see OAuthStateGuard).
    """
    params = {
        "response_type": "code",
        "client_id": settings.LINE_CHANNEL_ID,
        "redirect_uri": settings.LINE_CALLBACK_URL,
        "state": state,
        "scope": "profile openid",
    }
    auth_url = f"{settings.LINE_AUTHORIZE_URL}?{urlencode(params)}"
    logger.info(f"[LineOAuth] Generated authorize URL. Redirect URI: {settings.LINE_CALLBACK_URL}")
    return auth_url


class LineTokenExchanger:
    def __init__(self, client: httpx.AsyncClient, settings: Settings):
        self.client = client
        self.settings = settings

    async def exchange(self, code: typing.Optional[str]) -> ProviderIdentity:
        """Trades the authorization code for a LINE access token."""
        if not code:
            raise MissingAuthorizationCode()

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.settings.LINE_CALLBACK_URL,
            "client_id": self.settings.LINE_CHANNEL_ID,
            "client_secret": self.settings.LINE_CHANNEL_SECRET,
        }
        try:
            response = await self.client.post(
                self.settings.LINE_TOKEN_URL,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            )
        except httpx.RequestError as e:
            logger.error(f"[LineOAuth] Token exchange request error: {type(e).__name__}: {e}")
            raise TokenExchangeFailed() from e

        logger.info(f"[LineOAuth] Token exchange response status: {response.status_code}")
        if not response.is_success:
            logger.error(f"[LineOAuth] Token exchange failed: {response.status_code} - {response.text}")
            raise TokenExchangeFailed()

        try:
            token_data = response.json()
        except ValueError as e:
            logger.error(f"[LineOAuth] Token endpoint returned non-JSON body: {response.text[:200]}")
            raise TokenExchangeFailed() from e

        access_token = token_data.get("access_token") if isinstance(token_data, dict) else None
        if not access_token:
            logger.error("[LineOAuth] Token exchange succeeded but no access token in response")
            raise MissingAccessToken()

        logger.info(f"[LineOAuth] Access token received. Token type: {token_data.get('token_type')}")
        return ProviderIdentity(provider="line", token=access_token, token_type=token_data.get("token_type"))


# --- Google (Firebase popup, ID token) ---

class GoogleIdentityExchanger:
    """
    The popup itself runs in the browser; what arrives here is its outcome,
    either {"idToken": ...} or {"error": "<firebase auth error code>"}.
    """

    def __init__(self, settings: Settings, verifier: typing.Optional[typing.Callable[[str], dict]] = None):
        self.settings = settings
        self._verifier = verifier or self._verify_firebase_token

    def exchange(self, popup_result: typing.Mapping[str, typing.Any]) -> ProviderIdentity:
        error_code = popup_result.get("error")
        if error_code:
            if error_code in GOOGLE_CANCEL_CODES:
                logger.info(f"[GoogleOAuth] Popup dismissed by user ({error_code})")
                raise ProviderCancelled()
            logger.error(f"[GoogleOAuth] Popup sign-in failed: {error_code}")
            raise ProviderError()

        id_token = popup_result.get("idToken")
        if not id_token:
            logger.error("[GoogleOAuth] Popup result carried no ID token")
            raise ProviderError()

        if self.settings.GOOGLE_VERIFY_ID_TOKEN:
            try:
                claims = self._verifier(id_token)
            except (ValueError, google_exceptions.GoogleAuthError) as e:
                logger.error(f"[GoogleOAuth] ID token verification failed: {e}")
                raise ProviderError() from e
            logger.info(f"[GoogleOAuth] ID token verified for subject {str(claims.get('sub', ''))[:8]}...")

        return ProviderIdentity(provider="google", token=id_token, token_type="id_token")

    def _verify_firebase_token(self, token: str) -> dict:
        return google_id_token.verify_firebase_token(
            token,
            google_requests.Request(),
            audience=self.settings.FIREBASE_PROJECT_ID or None,
        )
