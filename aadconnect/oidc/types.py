"""Type definitions for provider requests and responses."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class RequestOperation(StrEnum):
    """Outbound operations passed to the request-alteration hook."""

    AUTHENTICATION_URL = "get-authentication-url"
    AUTHENTICATION_TOKEN = "get-authentication-token"
    USERINFO = "get-userinfo"
    JWKS = "get-jwks"


class ProviderRequest(BaseModel):
    """An outbound provider request, open to alteration by hooks."""

    method: str = "GET"
    url: str
    params: dict[str, str] = Field(default_factory=dict)
    data: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)


class TokenResponse(BaseModel):
    """OAuth token endpoint response."""

    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str | None = None


class AuthRequestState(BaseModel):
    """A consumed anti-forgery state."""

    token: str
    created_at: datetime
    redirect_to: str | None = None


class LoginResult(BaseModel):
    """Outcome of a successful callback."""

    user_id: str
    created: bool = False
    redirect_url: str | None = None
