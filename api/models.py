"""
API request and response models for the Plannr auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Role fields on requests are plain strings on purpose: validation happens in
RoleService.set_role() so an out-of-set value produces the InvalidRole error
envelope rather than a generic 422.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Role

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _EmailBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=320)

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class SignupRequest(_EmailBody):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=1, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)


class LoginRequest(_EmailBody):
    password: str = Field(max_length=255)


class ForgotPasswordRequest(_EmailBody):
    pass


class ResetPasswordRequest(BaseModel):
    token: str = Field(max_length=256)
    password: str = Field(max_length=255)


class VerifyEmailRequest(BaseModel):
    token: str = Field(max_length=256)


class ResendVerificationRequest(_EmailBody):
    pass


class RoleRequest(BaseModel):
    role: str = Field(max_length=32)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class OkResponse(BaseModel):
    """Generic acknowledgement. Shape is identical for every outcome it covers."""

    model_config = ConfigDict(frozen=True)

    ok: bool = True


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: str
    role: Optional[Role]


class SignupResponse(BaseModel):
    """Account created but not signed in: the address has to be confirmed first."""

    model_config = ConfigDict(frozen=True)

    ok: bool = True
    user_id: str
    role: Optional[Role]
    verification_required: bool = True


class RoleResponse(BaseModel):
    """effective_role is the stored role, which differs from the request on a rejected downgrade."""

    model_config = ConfigDict(frozen=True)

    effective_role: Role
    changed: bool


class SessionStatus(BaseModel):
    """Answer to 'is my session still valid?' -- polled by tabs after a sync event."""

    model_config = ConfigDict(frozen=True)

    authenticated: bool
    user_id: Optional[str] = None
    role: Optional[Role] = None
    expires_at: Optional[int] = None


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    name: Optional[str]
    role: Optional[Role]
    email_verified: bool = True


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool = True
    refresh: bool = True


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
    components: dict[str, str]
