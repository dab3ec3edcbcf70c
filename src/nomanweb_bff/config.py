# src/nomanweb_bff/config.py

import logging
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# .env is at the project root, two levels up from src/nomanweb_bff/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=True)
    logger.info(f"[Config] Loaded .env file from: {ENV_FILE_PATH}")
else:
    logger.info(f"[Config] .env file not found at {ENV_FILE_PATH}. Relying on environment variables.")

STATE_POLICIES = ("lenient", "strict")


class Settings(BaseSettings):
    # === Backend service ===
    BACKEND_URL: str = "http://localhost:8080"
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # === LINE Login channel ===
    LINE_CHANNEL_ID: str = ""
    LINE_CHANNEL_SECRET: str = ""
    LINE_CALLBACK_URL: str = "http://localhost:3000/auth/line/callback"
    LINE_AUTHORIZE_URL: str = "https://access.line.me/oauth2/v2.1/authorize"
    LINE_TOKEN_URL: str = "https://api.line.me/oauth2/v2.1/token"

    # === Google (Firebase popup sign-in) ===
    FIREBASE_PROJECT_ID: str = ""
    GOOGLE_VERIFY_ID_TOKEN: bool = False

    # === Session Management ===
    SESSION_SECRET_KEY: str = ""
    SESSION_COOKIE_MAX_AGE: int = 60 * 60 * 4  # 4 hours
    SESSION_TOKEN_MAX_AGE: int = 60 * 60 * 24 * 7  # 7 days
    COOKIE_SECURE: bool = False

    # === OAuth callback handling ===
    OAUTH_STATE_TTL_SECONDS: int = 600
    OAUTH_STATE_POLICY: str = "lenient"
    CALLBACK_GATE_TTL_SECONDS: int = 300
    CALLBACK_ERROR_REDIRECT_SECONDS: int = 3
    POST_LOGIN_REDIRECT_PATH: str = "/dashboard"
    LOGIN_PATH: str = "/login"

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @field_validator("BACKEND_URL", mode='before')
    @classmethod
    def strip_api_suffix(cls, v: Any) -> str:
        # Backend paths already start with /api, so a base URL ending in /api would double it
        if v is None or not str(v).strip():
            return "http://localhost:8080"
        url = str(v).strip().rstrip("/")
        if url.endswith("/api"):
            url = url[: -len("/api")]
        return url

    @field_validator("OAUTH_STATE_POLICY", mode='before')
    @classmethod
    def check_state_policy(cls, v: Any) -> str:
        policy = str(v or "lenient").strip().lower()
        if policy not in STATE_POLICIES:
            raise ValueError(f"OAUTH_STATE_POLICY must be one of {STATE_POLICIES}, got {v!r}")
        return policy


try:
    settings = Settings()
except Exception as e:
    logger.exception(f"[Config] Error instantiating Settings: {e}")
    raise


def get_settings() -> Settings:
    return settings
