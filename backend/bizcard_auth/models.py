"""Shared data types for the identity bridge."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Identity
# -----------------------------

@dataclass(frozen=True)
class ProviderIdentity:
    """What a provider told us about the user after a code exchange."""
    provider: str  # "line", "google" or "apple"
    provider_user_id: str
    display_name: str = ""
    email: str = ""
    picture: str = ""


@dataclass
class IdentityLink:
    """Durable mapping from one provider identity to one internal user id.

    ``(provider, provider_user_id)`` is unique and ``user_id`` is never
    reassigned once written.
    """
    provider: str
    provider_user_id: str
    user_id: str
    display_name: str = ""
    email: str = ""
    picture: str = ""
    last_login_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_identity(cls, identity: ProviderIdentity, user_id: str) -> "IdentityLink":
        now = utcnow()
        return cls(
            provider=identity.provider,
            provider_user_id=identity.provider_user_id,
            user_id=user_id,
            display_name=identity.display_name,
            email=identity.email,
            picture=identity.picture,
            last_login_at=now,
            created_at=now,
        )

    @property
    def key(self) -> tuple[str, str]:
        return (self.provider, self.provider_user_id)


# -----------------------------
# Exchange endpoint wire models
# -----------------------------

class AppleUserName(BaseModel):
    firstName: Optional[str] = None
    lastName: Optional[str] = None


class AppleUser(BaseModel):
    """Apple posts this only on the very first authorization."""
    name: Optional[AppleUserName] = None
    email: Optional[str] = None

    def display_name(self) -> str:
        if not self.name:
            return ""
        parts = [self.name.firstName or "", self.name.lastName or ""]
        return " ".join(p.strip() for p in parts if p and p.strip())


class ExchangeRequest(BaseModel):
    """POST body of an exchange endpoint."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    code: str = ""
    redirect_uri: str = ""
    id_token: Optional[str] = Field(default=None, alias="idToken")
    user: Optional[AppleUser] = None
    action: Optional[str] = None


class ExchangeResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None


class ErrorBody(BaseModel):
    error: str
    detail: Optional[Any] = None
    status: Optional[int] = None
    build: Optional[str] = None
