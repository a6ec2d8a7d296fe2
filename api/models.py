"""
API request and response models for the account service REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Account, AccountStatus, Location, Role

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$"

# bcrypt reads at most 72 bytes; the engine rejects longer passwords in bytes,
# this bound rejects them early in characters.
PASSWORD_MIN = 8
PASSWORD_MAX = 72


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class LocationModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    city: Optional[str] = Field(default=None, max_length=100)
    country: Optional[str] = Field(default=None, max_length=100)

    def to_domain(self) -> Location:
        return Location(city=self.city, country=self.country)


class _EmailNormalizing(BaseModel):
    """Lower-cases the email field before pattern validation."""

    @field_validator("email", mode="before", check_fields=False)
    @classmethod
    def normalize_email(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class SignUpRequest(_EmailNormalizing):
    """Request body for POST /api/v1/auth/sign-up."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=50)
    email: str = Field(max_length=100, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)
    location: Optional[LocationModel] = None


class SignInRequest(BaseModel):
    """Request body for POST /api/v1/auth/sign-in.

    No format checks beyond length: a malformed email simply fails to
    authenticate, with the same message as any other failure.
    """

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh.

    Both fields fall back to the cookies set at sign-in when omitted.
    """

    account_id: Optional[str] = Field(default=None, max_length=64)
    refresh_token: Optional[str] = Field(default=None, max_length=255)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Users -- request models
# ---------------------------------------------------------------------------


class UserCreate(SignUpRequest):
    """Request body for POST /api/v1/users (admin only)."""

    role: Role = Role.user
    status: AccountStatus = AccountStatus.active


class ProfileUpdate(_EmailNormalizing):
    """Request body for PATCH /api/v1/users/me. Omitted fields are unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    email: Optional[str] = Field(default=None, max_length=100, pattern=EMAIL_PATTERN)
    location: Optional[LocationModel] = None


class AdminUserUpdate(ProfileUpdate):
    """Request body for PATCH /api/v1/users/{id} (admin only)."""

    role: Optional[Role] = None


class StatusUpdate(BaseModel):
    status: AccountStatus


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ProfileResponse(BaseModel):
    """Public view of an account. Never carries the credential or lockout state."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    role: Role
    status: AccountStatus
    location: Optional[LocationModel] = None
    created_at: Optional[str] = None
    last_active: Optional[str] = None
    followers: Optional[int] = None
    following: Optional[int] = None

    @classmethod
    def from_profile(cls, profile: dict) -> "ProfileResponse":
        return cls(**profile)

    @classmethod
    def from_account(cls, account: Account) -> "ProfileResponse":
        location = None
        if account.location is not None:
            location = LocationModel(city=account.location.city, country=account.location.country)
        return cls(
            id=account.id,
            name=account.name,
            email=account.email,
            role=account.role,
            status=account.status,
            location=location,
            created_at=account.created_at.isoformat() if account.created_at else None,
            last_active=account.last_active.isoformat() if account.last_active else None,
        )


class TokenResponse(BaseModel):
    """Response for sign-in and refresh. Tokens are also set as httpOnly cookies."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    account_id: str
    user: Optional[ProfileResponse] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class StatsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_users: int
    active_users: int
    inactive_users: int
    admin_users: int


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
