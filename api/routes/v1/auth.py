"""
api/routes/v1/auth.py -- Registration, sign-in, session and password endpoints.

Routes:
  POST  /api/v1/auth/sign-up          -- create an account (public)
  POST  /api/v1/auth/sign-in          -- password login; returns and sets tokens
  POST  /api/v1/auth/refresh          -- rotate a refresh token (public)
  POST  /api/v1/auth/sign-out         -- revoke all refresh tokens; clear cookies
  GET   /api/v1/auth/me               -- current account (requires auth)
  PATCH /api/v1/auth/change-password  -- replace password; ends other sessions

Security:
  POST /sign-in is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  Every authentication failure returns the same "Invalid credentials." body.
  Responses that carry tokens are sent with Cache-Control: no-store.
  Tokens are returned in the body and as httpOnly cookies. The refresh cookie
  is scoped to /api/v1/auth so it is only sent to these routes.

Engine errors (AuthError subclasses) propagate to the handlers in api/main.py.
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    MessageResponse,
    ProfileResponse,
    RefreshRequest,
    SignInRequest,
    SignUpRequest,
    TokenResponse,
)
from auth.dependencies import get_current_claims
from auth.engine import AuthEngine
from auth.errors import NotFoundError, RefreshDeniedError
from auth.models import AccessTokenClaims, IssuedTokens
from core.config import get_settings

# Auth policy:
# - POST  /auth/sign-up:          public -- self-registration
# - POST  /auth/sign-in:          public, rate limited
# - POST  /auth/refresh:          public -- the refresh token is the credential
# - POST  /auth/sign-out:         requires auth (get_current_claims)
# - GET   /auth/me:               requires auth (get_current_claims)
# - PATCH /auth/change-password:  requires auth (get_current_claims)
router = APIRouter()

_settings = get_settings()

REFRESH_COOKIE = "refresh_token"
ACCOUNT_COOKIE = "account_id"
_REFRESH_COOKIE_PATH = "/api/v1/auth"


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _set_auth_cookies(response: JSONResponse, tokens: IssuedTokens, account_id: str) -> None:
    """Write the token pair as httpOnly cookies on the response.

    samesite="lax": cookies are sent on same-site navigations but not on
    cross-site POST -- CSRF mitigation for most cases. secure is controlled by
    SECURE_COOKIES and should be on in production.
    """
    refresh_age = int(timedelta(days=_settings.refresh_token_expire_days).total_seconds())
    response.set_cookie(
        "access_token",
        value=tokens.access_token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=tokens.expires_in,
    )
    for name, value in ((REFRESH_COOKIE, tokens.refresh_token), (ACCOUNT_COOKIE, account_id)):
        response.set_cookie(
            name,
            value=value,
            httponly=True,
            samesite="lax",
            secure=_settings.secure_cookies,
            max_age=refresh_age,
            path=_REFRESH_COOKIE_PATH,
        )


def _clear_auth_cookies(response: JSONResponse) -> None:
    response.delete_cookie("access_token")
    response.delete_cookie(REFRESH_COOKIE, path=_REFRESH_COOKIE_PATH)
    response.delete_cookie(ACCOUNT_COOKIE, path=_REFRESH_COOKIE_PATH)


def _token_response(tokens: IssuedTokens, account_id: str, profile: dict | None = None) -> JSONResponse:
    body = TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        account_id=account_id,
        user=ProfileResponse.from_profile(profile) if profile is not None else None,
    )
    resp = JSONResponse(status_code=200, content=body.model_dump(mode="json"))
    _set_auth_cookies(resp, tokens, account_id)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/sign-up", response_model=ProfileResponse, status_code=201)
def sign_up(request: Request, body: SignUpRequest) -> ProfileResponse:
    """Create an account with role "user" and status "active".

    Returns 409 if the email is already registered (compared case-insensitively).
    """
    engine: AuthEngine = request.app.state.auth_engine
    account = engine.register(
        body.name,
        body.email,
        body.password,
        body.location.to_domain() if body.location else None,
    )
    return ProfileResponse.from_account(account)


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/sign-in", response_model=TokenResponse)
def sign_in(request: Request, body: SignInRequest) -> JSONResponse:
    """Authenticate with email and password; return and set the token pair.

    401 for unknown email, wrong password or inactive account (same body for
    all three). 403 with Retry-After while the account is locked.
    """
    engine: AuthEngine = request.app.state.auth_engine
    result = engine.login(body.email, body.password)
    return _token_response(result.tokens, result.account.id, result.profile)


@limiter.limit(_settings.refresh_rate_limit)
@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Redeem a refresh token for a new pair. The presented token is spent.

    account_id and refresh_token come from the body, falling back to the
    cookies set at sign-in. Each call costs one bcrypt verification per live
    session of the account, so the route is throttled like sign-in.
    """
    engine: AuthEngine = request.app.state.auth_engine
    account_id = (body.account_id if body else None) or request.cookies.get(ACCOUNT_COOKIE)
    presented = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not account_id or not presented:
        raise RefreshDeniedError()
    tokens = engine.refresh(account_id, presented)
    return _token_response(tokens, account_id)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/sign-out", response_model=MessageResponse)
def sign_out(request: Request, claims: AccessTokenClaims = Depends(get_current_claims)) -> JSONResponse:
    """Revoke every refresh token of the caller and clear auth cookies."""
    engine: AuthEngine = request.app.state.auth_engine
    engine.logout(claims.sub)
    resp = JSONResponse(content=MessageResponse(message="Logout successful.").model_dump())
    _clear_auth_cookies(resp)
    return resp


@router.get("/auth/me", response_model=ProfileResponse)
def me(request: Request, claims: AccessTokenClaims = Depends(get_current_claims)) -> ProfileResponse:
    """Return the profile of the currently authenticated account."""
    engine: AuthEngine = request.app.state.auth_engine
    account = engine.accounts.find_by_id(claims.sub)
    if account is None:
        raise NotFoundError()
    return ProfileResponse.from_account(account)


@router.patch("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    claims: AccessTokenClaims = Depends(get_current_claims),
) -> JSONResponse:
    """Replace the caller's password.

    400 if current_password is wrong. On success every refresh token of the
    account is revoked, so other sessions must sign in again; the refresh
    cookie of this client is cleared too.
    """
    engine: AuthEngine = request.app.state.auth_engine
    engine.change_password(claims.sub, body.current_password, body.new_password)
    resp = JSONResponse(content=MessageResponse(message="Password changed successfully.").model_dump())
    resp.delete_cookie(REFRESH_COOKIE, path=_REFRESH_COOKIE_PATH)
    return resp
