"""
auth/errors.py -- Exception taxonomy for the authentication engine.

Every failure the engine can report is an AuthError subclass carrying a
machine-readable code, a human-readable message, and the HTTP status the
transport layer should use. The engine raises; api/main.py renders. Nothing in
auth/ imports FastAPI to do this -- status_code is plain data.

Authentication failures (UnauthorizedError) always carry the same external
message regardless of cause, so a client cannot tell an unknown email from a
wrong password. The engine logs the real cause before raising.
"""

from __future__ import annotations

INVALID_CREDENTIALS = "Invalid credentials."


class AuthError(Exception):
    """Base class for all engine errors."""

    code = "auth_error"
    status_code = 500
    default_message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ConflictError(AuthError):
    code = "conflict"
    status_code = 409
    default_message = "A user with this email already exists."


class UnauthorizedError(AuthError):
    code = "unauthorized"
    status_code = 401
    default_message = INVALID_CREDENTIALS


class InvalidTokenError(UnauthorizedError):
    """Token failed signature or structure checks."""

    code = "invalid_token"
    default_message = "Invalid token."


class TokenExpiredError(UnauthorizedError):
    code = "token_expired"
    default_message = "Token has expired."


class RefreshDeniedError(UnauthorizedError):
    """Refresh token unknown, revoked, expired, already redeemed, or account inactive."""

    code = "refresh_denied"
    default_message = "Invalid refresh token."


class ForbiddenError(AuthError):
    code = "forbidden"
    status_code = 403
    default_message = "Insufficient role for this operation."


class AccountLockedError(ForbiddenError):
    """Raised while the account is inside its lockout window.

    retry_after is the whole number of seconds until the lock lifts; the API
    layer copies it into a Retry-After header.
    """

    code = "account_locked"
    default_message = "Account is temporarily locked due to too many failed login attempts."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class BadRequestError(AuthError):
    code = "bad_request"
    status_code = 400
    default_message = "Bad request."


class NotFoundError(AuthError):
    code = "not_found"
    status_code = 404
    default_message = "User not found."


class CryptoError(AuthError):
    """Hashing infrastructure failure (oversized input, malformed digest, RNG)."""

    code = "crypto_error"
    status_code = 500
    default_message = "Credential processing failed."


class SigningError(AuthError):
    code = "signing_error"
    status_code = 500
    default_message = "Token signing failed."


class StoreUnavailableError(AuthError):
    """The account store timed out or could not be reached. Safe to retry."""

    code = "store_unavailable"
    status_code = 503
    default_message = "Account store temporarily unavailable."


class LockoutContentionError(StoreUnavailableError):
    """Lockout compare-and-swap lost the race more times than the retry bound."""

    code = "lockout_contention"
    default_message = "Too many concurrent login attempts. Try again."
