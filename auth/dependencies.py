"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens are read in priority order:
  1. "access_token" cookie -- set by the sign-in route for browser clients.
  2. Authorization: Bearer <token> header -- API clients.

Verification is stateless: the dependency returns the verified claims and
never touches the account store. Routes that need the full account load it
themselves.

try_get_claims() is the soft variant (returns None on failure).
get_current_claims() raises UnauthorizedError if unauthenticated.
require_roles(...) builds a dependency that additionally raises ForbiddenError
when the caller's role is not in the required set.

Errors are raised as AuthError subclasses; api/main.py renders them.

Layer rule: no imports from api/ or users/.
  auth/dependencies.py may import from fastapi (for Depends/Request) because
  this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.errors import AuthError, UnauthorizedError
from auth.gate import enforce
from auth.models import AccessTokenClaims, Role
from auth.tokens import TokenService

ACCESS_COOKIE = "access_token"


def _presented_token(request: Request) -> str | None:
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def try_get_claims(request: Request) -> AccessTokenClaims | None:
    """Return verified claims for the request, or None. Never raises AuthError."""
    token = _presented_token(request)
    if token is None:
        return None
    tokens: TokenService = request.app.state.tokens
    try:
        return tokens.verify_access_token(token)
    except AuthError:
        return None


def get_current_claims(request: Request) -> AccessTokenClaims:
    """Require authentication.

    Raises UnauthorizedError when no token is presented, InvalidTokenError or
    TokenExpiredError when the presented token does not verify.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: AccessTokenClaims = Depends(get_current_claims)): ...
    """
    token = _presented_token(request)
    if token is None:
        raise UnauthorizedError("Authentication required.")
    tokens: TokenService = request.app.state.tokens
    return tokens.verify_access_token(token)


def require_roles(*roles: Role) -> Callable[..., AccessTokenClaims]:
    """Build a dependency that admits only callers holding one of roles."""

    def dependency(claims: AccessTokenClaims = Depends(get_current_claims)) -> AccessTokenClaims:
        return enforce(claims, roles)

    return dependency


require_admin = require_roles(Role.admin)
