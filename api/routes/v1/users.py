"""
api/routes/v1/users.py -- User directory, admin management, and follow graph.

Routes:
  GET    /api/v1/users                   -- list/search accounts (requires auth)
  POST   /api/v1/users                   -- create account (admin only)
  GET    /api/v1/users/stats             -- directory counts (admin only)
  GET    /api/v1/users/me                -- own profile with follow counts
  PATCH  /api/v1/users/me                -- edit own name/email/location
  GET    /api/v1/users/{id}              -- one profile (requires auth)
  PATCH  /api/v1/users/{id}              -- edit any account incl. role (admin only)
  PATCH  /api/v1/users/{id}/status       -- activate/deactivate/suspend (admin only)
  DELETE /api/v1/users/{id}              -- delete account (admin only)
  POST   /api/v1/users/{id}/follow       -- follow (requires auth)
  DELETE /api/v1/users/{id}/follow       -- unfollow (requires auth)
  GET    /api/v1/users/{id}/followers    -- follower list (requires auth)
  GET    /api/v1/users/{id}/following    -- following list (requires auth)

Static paths (/stats, /me) are registered before /{account_id} so they are
matched first.

Guards:
  [G1] An admin cannot change their own status or delete themselves --
       there would be no way back without direct store access.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import (
    AdminUserUpdate,
    MessageResponse,
    ProfileResponse,
    ProfileUpdate,
    StatsResponse,
    StatusUpdate,
    UserCreate,
)
from auth.dependencies import get_current_claims, require_admin
from auth.engine import AuthEngine
from auth.errors import BadRequestError
from auth.models import AccessTokenClaims, AccountStatus, Role
from users.service import MAX_PAGE_SIZE, UserDirectory

# Auth policy:
# - every route requires auth (router-level dependency)
# - create, stats, admin edit, status, delete additionally require admin
router = APIRouter(dependencies=[Depends(get_current_claims)])


def _directory(request: Request) -> UserDirectory:
    return request.app.state.directory


# ---------------------------------------------------------------------------
# Collection and static paths
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[ProfileResponse])
def list_users(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=MAX_PAGE_SIZE),
    role: Optional[Role] = None,
    status: Optional[AccountStatus] = None,
    search: Optional[str] = Query(default=None, max_length=100),
) -> list[ProfileResponse]:
    """List accounts newest first, optionally filtered by role, status or a name/email search."""
    accounts = _directory(request).list_accounts(page=page, limit=limit, role=role, status=status, search=search)
    return [ProfileResponse.from_account(a) for a in accounts]


@router.post("/users", response_model=ProfileResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    admin: AccessTokenClaims = Depends(require_admin),
) -> ProfileResponse:
    """Create an account with an explicit role and status. Admin only."""
    engine: AuthEngine = request.app.state.auth_engine
    account = engine.register(
        body.name,
        body.email,
        body.password,
        body.location.to_domain() if body.location else None,
        role=body.role,
        status=body.status,
    )
    return ProfileResponse.from_account(account)


@router.get("/users/stats", response_model=StatsResponse)
def stats(request: Request, admin: AccessTokenClaims = Depends(require_admin)) -> StatsResponse:
    result = _directory(request).stats()
    return StatsResponse(
        total_users=result.total_users,
        active_users=result.active_users,
        inactive_users=result.inactive_users,
        admin_users=result.admin_users,
    )


@router.get("/users/me", response_model=ProfileResponse)
def get_own_profile(request: Request, claims: AccessTokenClaims = Depends(get_current_claims)) -> ProfileResponse:
    directory = _directory(request)
    return ProfileResponse.from_profile(directory.profile(directory.get_account(claims.sub)))


@router.patch("/users/me", response_model=ProfileResponse)
def update_own_profile(
    request: Request,
    body: ProfileUpdate,
    claims: AccessTokenClaims = Depends(get_current_claims),
) -> ProfileResponse:
    account = _directory(request).update_profile(
        claims.sub,
        name=body.name,
        email=body.email,
        location=body.location.to_domain() if body.location else None,
    )
    return ProfileResponse.from_account(account)


# ---------------------------------------------------------------------------
# Single account
# ---------------------------------------------------------------------------


@router.get("/users/{account_id}", response_model=ProfileResponse)
def get_user(request: Request, account_id: str) -> ProfileResponse:
    directory = _directory(request)
    return ProfileResponse.from_profile(directory.profile(directory.get_account(account_id)))


@router.patch("/users/{account_id}", response_model=ProfileResponse)
def update_user(
    request: Request,
    account_id: str,
    body: AdminUserUpdate,
    admin: AccessTokenClaims = Depends(require_admin),
) -> ProfileResponse:
    account = _directory(request).update_account(
        account_id,
        name=body.name,
        email=body.email,
        location=body.location.to_domain() if body.location else None,
        role=body.role,
    )
    return ProfileResponse.from_account(account)


@router.patch("/users/{account_id}/status", response_model=ProfileResponse)
def update_status(
    request: Request,
    account_id: str,
    body: StatusUpdate,
    admin: AccessTokenClaims = Depends(require_admin),
) -> ProfileResponse:
    """Set account status. Non-active statuses revoke all refresh tokens."""
    if account_id == admin.sub:  # [G1]
        raise BadRequestError("You cannot change the status of your own account.")
    account = _directory(request).update_status(account_id, body.status)
    return ProfileResponse.from_account(account)


@router.delete("/users/{account_id}", status_code=204)
def delete_user(
    request: Request,
    account_id: str,
    admin: AccessTokenClaims = Depends(require_admin),
) -> Response:
    if account_id == admin.sub:  # [G1]
        raise BadRequestError("You cannot delete your own account.")
    _directory(request).delete_account(account_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Follow graph
# ---------------------------------------------------------------------------


@router.post("/users/{account_id}/follow", response_model=MessageResponse)
def follow(
    request: Request,
    account_id: str,
    claims: AccessTokenClaims = Depends(get_current_claims),
) -> MessageResponse:
    _directory(request).follow(claims.sub, account_id)
    return MessageResponse(message="User followed successfully.")


@router.delete("/users/{account_id}/follow", response_model=MessageResponse)
def unfollow(
    request: Request,
    account_id: str,
    claims: AccessTokenClaims = Depends(get_current_claims),
) -> MessageResponse:
    _directory(request).unfollow(claims.sub, account_id)
    return MessageResponse(message="User unfollowed successfully.")


@router.get("/users/{account_id}/followers", response_model=list[ProfileResponse])
def followers(request: Request, account_id: str) -> list[ProfileResponse]:
    return [ProfileResponse.from_account(a) for a in _directory(request).followers(account_id)]


@router.get("/users/{account_id}/following", response_model=list[ProfileResponse])
def following(request: Request, account_id: str) -> list[ProfileResponse]:
    return [ProfileResponse.from_account(a) for a in _directory(request).following(account_id)]
