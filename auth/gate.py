"""
auth/gate.py -- Role checks against verified access-token claims.

Pure functions, no I/O. An empty required set admits any verified caller.
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.errors import ForbiddenError
from auth.models import AccessTokenClaims, Role


def authorize(claims: AccessTokenClaims, required_roles: Iterable[Role]) -> bool:
    required = {Role(r) for r in required_roles}
    return not required or Role(claims.role) in required


def enforce(claims: AccessTokenClaims, required_roles: Iterable[Role]) -> AccessTokenClaims:
    """Return claims unchanged if authorized, else raise ForbiddenError."""
    if not authorize(claims, required_roles):
        raise ForbiddenError()
    return claims
