"""
API request and response models for Passgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request bodies are deliberately loose (plain strings, no length rules): the
field rules and their user-facing messages live in auth/validation.py, which
answers with 400 + [{param, msg, value}] rather than FastAPI's 422 envelope.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    email: str = ""
    username: Optional[str] = None
    password: str = ""
    confirm_password: str = Field(default="", alias="confirmPassword")
    redirect: Optional[str] = None


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    redirect: Optional[str] = None


class ForgotPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/forgot-password. text is the email."""

    text: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset/{token}."""

    model_config = ConfigDict(populate_by_name=True)

    password: str = ""
    confirm_password: str = Field(default="", alias="confirmPassword")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Returned by login and registration."""

    model_config = ConfigDict(frozen=True)

    token: str
    redirect: str


class RefreshedTokenResponse(BaseModel):
    """Returned by GET /auth/me when the client's token is stale."""

    model_config = ConfigDict(frozen=True)

    token: str


class UserResponse(BaseModel):
    """Client-visible identity -- the same fields a token snapshot carries."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    username: Optional[str] = None
    provider: str
    roles: list[str]


class ResetCompletedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse


class ResetRequestResponse(BaseModel):
    """Uniform outcome of a reset request. status is "success" or "danger"."""

    model_config = ConfigDict(frozen=True)

    message: str
    status: str


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
