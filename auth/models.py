"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the engine services and stores do the work. Behaviour that the record
used to carry (password comparison, lock inspection) lives in CredentialManager
and LockoutPolicy, which operate on these snapshots.

Layer rule: no imports from api/ or users/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    user = "user"
    admin = "admin"


class AccountStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"


@dataclass(frozen=True)
class LockoutState:
    """Failed-attempt counter plus optional lock deadline.

    Immutable so LockoutPolicy transitions always produce a new value that the
    caller persists with a compare-and-swap against Account.lockout_version.
    """

    attempts: int = 0
    locked_until: datetime | None = None


@dataclass
class Location:
    city: str | None = None
    country: str | None = None


@dataclass
class Account:
    """A registered identity.

    email is stored lower-cased and is unique across the store.
    password_hash is the bcrypt digest; repr=False keeps it out of log lines
    and tracebacks. lockout_version is bumped by every lockout write and is the
    expected value for the next compare-and-swap.
    """

    name: str
    email: str
    role: Role = Role.user
    status: AccountStatus = AccountStatus.active
    id: str | None = None
    password_hash: str | None = field(default=None, repr=False)
    location: Location | None = None
    lockout: LockoutState = field(default_factory=LockoutState)
    lockout_version: int = 0
    created_at: datetime | None = None
    last_active: datetime | None = None


@dataclass
class RefreshTokenRecord:
    """Stored half of a refresh token.

    token_hash is CredentialManager.hash(raw_token). The raw token is handed
    to the client once and never persisted.
    """

    account_id: str
    token_hash: str = field(repr=False)
    id: str | None = None
    created_at: datetime | None = None
    revoked: bool = False
    revoked_at: datetime | None = None


@dataclass(frozen=True)
class AccessTokenClaims:
    """Verified contents of an access token. Never persisted."""

    sub: str
    email: str
    role: Role
    iat: datetime
    exp: datetime


@dataclass(frozen=True)
class IssuedTokens:
    """Token pair handed to the transport layer after login or refresh."""

    access_token: str
    refresh_token: str
    expires_in: int
