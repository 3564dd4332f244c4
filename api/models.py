"""
API request and response models for idcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field rules here are syntax only (lengths, email shape). Domain rules such as
the password policy and the role allow-list are enforced by auth/, which
reports them through the same error envelope.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuthSession, Claim, Role, SessionToken, User

# Syntax check only; deliverability is proven by the confirmation link.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=32)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=256)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=128)


class UserUpdateRequest(BaseModel):
    """Request body for PUT /api/v1/auth/users/{user_id}. Omitted fields stay unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone_number: Optional[str] = Field(default=None, max_length=32)


class RoleCreate(BaseModel):
    """Request body for POST /api/v1/roles and PUT /api/v1/roles/{role_id}."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=64)
    description: str = Field(default="", max_length=500)


class RoleAssignment(BaseModel):
    """Request body for POST /api/v1/roles/assign and /roles/remove."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: str = Field(min_length=1, max_length=36)
    role_name: str = Field(min_length=1, max_length=64)


class ClaimBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    type: str = Field(default="permission", min_length=1, max_length=128)
    value: str = Field(min_length=1, max_length=256)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ClaimResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    value: str

    @classmethod
    def from_claim(cls, claim: Claim) -> "ClaimResponse":
        return cls(type=claim.type, value=claim.value)


class TokenResponse(BaseModel):
    """A session token and the facts it asserts."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    token_id: str
    expires_at: datetime
    roles: list[str]
    claims: list[ClaimResponse]

    @classmethod
    def from_session_token(cls, token: SessionToken) -> "TokenResponse":
        return cls(
            access_token=token.token,
            token_id=token.token_id,
            expires_at=token.expires_at,
            roles=list(token.roles),
            claims=[ClaimResponse.from_claim(c) for c in token.claims],
        )


class LoginResponse(TokenResponse):
    """Response for login and refresh. refresh_token is shown once."""

    refresh_token: str
    refresh_expires_at: datetime

    @classmethod
    def from_session(cls, session: AuthSession) -> "LoginResponse":
        base = TokenResponse.from_session_token(session.access)
        return cls(
            **base.model_dump(),
            refresh_token=session.refresh_token,
            refresh_expires_at=session.refresh_expires_at,
        )


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    email_confirmed: bool
    message: str


class UserResponse(BaseModel):
    """Public view of a user. Hashes, stamps and lockout counters are never exposed."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    email_confirmed: bool
    banned: bool
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            phone_number=user.phone_number,
            email_confirmed=user.email_confirmed,
            banned=user.banned,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class MeResponse(UserResponse):
    roles: list[str] = Field(default_factory=list)


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    claims: list[ClaimResponse] = Field(default_factory=list)

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            claims=[ClaimResponse.from_claim(c) for c in role.claims],
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
