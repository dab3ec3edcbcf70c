# src/nomanweb_bff/session_data.py

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    BANNED = "BANNED"


class UserProfile(BaseModel):
    """
    Snapshot of the backend's user record.
    Read from and written back to the backend's camelCase JSON.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    email: str
    username: str
    display_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    bio: Optional[str] = None
    role: UserRole = UserRole.USER
    status: UserStatus = UserStatus.ACTIVE
    coin_balance: float = 0
    total_earned_coins: float = 0
    line_user_id: Optional[str] = None
    google_id: Optional[str] = None
    email_verified: bool = False
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def merge(self, partial: Dict[str, Any]) -> "UserProfile":
        # Shallow overwrite: nested values replace, they are not merged
        data = self.model_dump(by_alias=True)
        for key, value in partial.items():
            data[to_camel(key) if "_" in key else key] = value
        return UserProfile.model_validate(data)

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Session(BaseModel):
    session_token: str
    refresh_token: Optional[str] = None
    user: UserProfile


class Activated(BaseModel):
    kind: Literal["activated"] = "activated"
    session: Session


class PendingVerification(BaseModel):
    kind: Literal["pending_verification"] = "pending_verification"
    email: str


RegisterOutcome = Union[Activated, PendingVerification]


class ProviderIdentity(BaseModel):
    provider: Literal["google", "line"]
    token: str
    token_type: Optional[str] = None


class OAuthState(BaseModel):
    value: str
    created_at: float = Field(..., description="Issuance time, epoch seconds")
