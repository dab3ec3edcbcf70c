# src/nomanweb_bff/errors.py
"""
Failure taxonomy for the BFF.

Every error a client can see is a BffError carrying an HTTP status and a
public message. The message is what goes out as {"error": ...}; the real
cause (provider body, transport exception, raw backend text) goes to the log.
"""

from typing import Any, Dict, Optional

from fastapi import status


class BffError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message}


# --- Authentication failures (credentials or provider rejected the user) ---

class AuthFailure(BffError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication failed"


class InvalidCredentials(AuthFailure):
    default_message = "Invalid email or password"


class ProviderCancelled(AuthFailure):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Sign-in was cancelled"


class ProviderError(AuthFailure):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Sign-in with the identity provider failed"


class TokenExchangeFailed(AuthFailure):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Failed to exchange authorization code for access token"


# --- Protocol failures (the OAuth round trip itself is broken) ---

class ProtocolFailure(BffError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "OAuth protocol error"


class MissingState(ProtocolFailure):
    default_message = "State parameter missing from callback"


class StateMismatch(ProtocolFailure):
    default_message = "Authentication state mismatch"


class StateNotFound(ProtocolFailure):
    default_message = "Authentication state not found"


class MissingAuthorizationCode(ProtocolFailure):
    default_message = "Authorization code not received"


class MissingAccessToken(ProtocolFailure):
    default_message = "Access token not received"


# --- Backend failures ---

class BackendUnavailable(BffError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Backend server is not running or not responding properly."


class BackendRejected(BffError):
    """The backend answered with JSON and a non-success status."""

    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None, status_code: int = status.HTTP_400_BAD_REQUEST,
                 data: Any = None):
        self.data = data
        super().__init__(message, status_code)


class ProxyInternalError(BffError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"


class Unauthorized(BffError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "No valid authorization header"


# --- Local validation ---

class ClientValidationFailure(BffError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "Invalid input"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        if self.field:
            body["field"] = self.field
        return body


def is_retryable(exc: BaseException) -> bool:
    """Server-side and transport failures are worth another attempt; client errors are not."""
    if isinstance(exc, (BackendUnavailable, ProxyInternalError)):
        return True
    if isinstance(exc, BackendRejected):
        return exc.status_code >= 500
    return False
