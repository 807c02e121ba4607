"""
API request and response models for RoleGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire names are camelCase (token, expiresAt, isActive, ...) to match what the
browser client sends and reads; Python attribute names stay snake_case.

Signup fields carry only size limits here. Password length and phone format
are business rules enforced by SignupValidator so they surface as
weak_password / invalid_phone_format (400), not a generic 422.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import Account, Role


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(_CamelModel):
    """Request body for POST /signup.

    Strings are taken verbatim: identifier and password must match what
    POST /login receives byte for byte. Only the phone is normalized, by
    SignupValidator.
    """

    identifier: str = Field(min_length=1, max_length=255)
    password: str = Field(max_length=255)
    phone: str = Field(max_length=32)
    nickname: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(_CamelModel):
    """Request body for POST /login."""

    identifier: str = Field(min_length=1, max_length=255)
    password: str = Field(max_length=255)


class PasswordChangeRequest(_CamelModel):
    """Request body for POST /password."""

    old_password: str = Field(max_length=255)
    new_password: str = Field(max_length=255)


class AccountPatch(_CamelModel):
    """Request body for PATCH /api/admin/accounts/{identifier}."""

    role: Optional[Role] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(_CamelModel):
    """Response for POST /login. expires_at equals the token's exp claim (epoch seconds)."""

    model_config = ConfigDict(frozen=True)

    token: str
    token_type: str = "Bearer"
    expires_at: int
    identifier: str
    role: Role


class AccountResponse(_CamelModel):
    """Public view of an account. The password hash is never part of it."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    nickname: Optional[str] = None
    phone: str
    role: Role
    is_active: bool
    created_at: str

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            identifier=account.identifier,
            nickname=account.nickname,
            phone=account.phone,
            role=account.role,
            is_active=account.is_active,
            created_at=account.created_at or "",
        )


class MeResponse(_CamelModel):
    """Response for GET /me -- identity as carried by the caller's token."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    role: Role
    issued_at: int
    expires_at: int


class RouteTestResponse(_CamelModel):
    """Response for the user/admin test endpoints."""

    model_config = ConfigDict(frozen=True)

    message: str
    identifier: str
    role: Role


class StatsResponse(_CamelModel):
    """Response for GET /api/admin/stats."""

    model_config = ConfigDict(frozen=True)

    total_accounts: int
    active_accounts: int
    accounts_by_role: dict[str, int]
    revoked_tokens: int
    revoked_subjects: int
    throttled_identifiers: int
    server_status: str


class PublicInfoResponse(_CamelModel):
    """Response for GET /api/public/info."""

    model_config = ConfigDict(frozen=True)

    service: str
    version: str
    status: str


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
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
