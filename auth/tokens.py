"""
auth/tokens.py -- Access-token signing and refresh-token rotation.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are signed with SECRET_KEY and
       carry sub (account id), email, role, iat and exp. Verification checks
       the signature first and expiry second, against a caller-supplied clock,
       so a tampered token is always reported as invalid, never as expired.
       Access tokens are stateless and never stored.

  Refresh tokens: secrets.token_urlsafe(32) gives 256 bits of entropy. The raw
       value goes to the client exactly once; the store keeps only
       CredentialManager.hash(raw). A presented token is accepted iff it
       verifies against a live (non-revoked, within TTL) record of the
       claimed account.

  Rotation-on-use: a redeemed record is revoked and its successor inserted in
       one store transaction (RefreshTokenStore.replace). If the revoke loses a
       race, the redemption is denied and nothing is issued, so a token can be
       spent at most once.

  Session bound: each account keeps at most max_sessions live records; the
       oldest are revoked when a new one is issued. Together with the TTL this
       bounds how many digests a rotation has to check.

Layer rule: no imports from api/ or users/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from jose.exceptions import JOSEError

from auth.credentials import CredentialManager
from auth.errors import (
    InvalidTokenError,
    RefreshDeniedError,
    SigningError,
    TokenExpiredError,
)
from auth.models import AccessTokenClaims, Account, AccountStatus, IssuedTokens, RefreshTokenRecord, Role
from auth.store import AccountStore, RefreshTokenStore

logger = logging.getLogger("accounts.tokens")

_ALGORITHM = "HS256"
_TOKEN_TYPE = "access"
_REFRESH_TOKEN_BYTES = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Issues, verifies and rotates tokens for one signing key.

    Usage:
        tokens = TokenService(secret_key, credentials, accounts, refresh_tokens)
        issued = tokens.issue_tokens(account)
        claims = tokens.verify_access_token(issued.access_token)
        rotated = tokens.rotate_refresh_token(account.id, issued.refresh_token)
    """

    def __init__(
        self,
        secret_key: str,
        credentials: CredentialManager,
        accounts: AccountStore,
        refresh_tokens: RefreshTokenStore,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=30),
        max_sessions: int = 10,
    ) -> None:
        self._secret_key = secret_key
        self._credentials = credentials
        self._accounts = accounts
        self._refresh_tokens = refresh_tokens
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.max_sessions = max_sessions

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access_token(self, subject: str, email: str, role: Role, now: datetime | None = None) -> str:
        """Encode a signed JWT for the given identity.

        Raises SigningError if no signing key is configured or jose refuses to
        sign.
        """
        if not self._secret_key:
            raise SigningError("Signing key unavailable.")
        issued_at = now or _utcnow()
        payload = {
            "sub": subject,
            "email": email,
            "role": Role(role).value,
            "typ": _TOKEN_TYPE,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self.access_ttl).timestamp()),
        }
        try:
            return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        except JOSEError as exc:
            raise SigningError() from exc

    def verify_access_token(self, token: str, now: datetime | None = None) -> AccessTokenClaims:
        """Return the verified claims of token.

        Raises InvalidTokenError on any signature, format or claim problem and
        TokenExpiredError when the signature is good but now is past exp.
        Expiry is checked here rather than by jose so callers control the
        clock.
        """
        if not self._secret_key:
            raise SigningError("Signing key unavailable.")
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise InvalidTokenError() from exc

        try:
            claims = AccessTokenClaims(
                sub=str(payload["sub"]),
                email=str(payload["email"]),
                role=Role(payload["role"]),
                iat=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
                exp=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            )
        except (KeyError, ValueError, TypeError) as exc:
            raise InvalidTokenError() from exc
        if payload.get("typ") != _TOKEN_TYPE:
            raise InvalidTokenError()

        if (now or _utcnow()) > claims.exp:
            raise TokenExpiredError()
        return claims

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def issue_refresh_token(self) -> str:
        """Generate a new opaque refresh token. Store only its hash."""
        return secrets.token_urlsafe(_REFRESH_TOKEN_BYTES)

    def issue_tokens(self, account: Account, now: datetime | None = None) -> IssuedTokens:
        """Issue an access token plus a new stored refresh token for account."""
        now = now or _utcnow()
        raw = self.issue_refresh_token()
        record = RefreshTokenRecord(account_id=account.id, token_hash=self._credentials.hash(raw), created_at=now)
        self._refresh_tokens.insert(record)
        self._refresh_tokens.prune(account.id, keep=self.max_sessions, when=now)
        return IssuedTokens(
            access_token=self.issue_access_token(account.id, account.email, account.role, now),
            refresh_token=raw,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    def rotate_refresh_token(self, account_id: str, presented: str, now: datetime | None = None) -> IssuedTokens:
        """Redeem a refresh token for a new access token and refresh token.

        Raises RefreshDeniedError when the account is unknown or not active,
        when no live record matches, or when a concurrent redemption of the
        same record won the race.
        """
        now = now or _utcnow()
        account = self._accounts.find_by_id(account_id)
        if account is None or account.status != AccountStatus.active:
            logger.info("Refresh denied: account %s missing or not active", account_id)
            raise RefreshDeniedError()

        matched = self._match(account_id, presented, now)
        if matched is None:
            logger.info("Refresh denied: no live record matched for account %s", account_id)
            raise RefreshDeniedError()

        raw = self.issue_refresh_token()
        successor = RefreshTokenRecord(account_id=account_id, token_hash=self._credentials.hash(raw), created_at=now)
        if self._refresh_tokens.replace(matched.id, successor, when=now) is None:
            logger.warning("Refresh denied: record %s already redeemed (possible replay)", matched.id)
            raise RefreshDeniedError()
        self._refresh_tokens.prune(account_id, keep=self.max_sessions, when=now)

        return IssuedTokens(
            access_token=self.issue_access_token(account.id, account.email, account.role, now),
            refresh_token=raw,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    def revoke_all(self, account_id: str, now: datetime | None = None) -> int:
        """Revoke every live refresh token for account_id. Returns the count."""
        revoked = self._refresh_tokens.revoke_all(account_id, when=now)
        logger.info("Revoked %d refresh tokens for account %s", revoked, account_id)
        return revoked

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete refresh records older than the refresh TTL."""
        return self._refresh_tokens.purge_expired((now or _utcnow()) - self.refresh_ttl)

    def _match(self, account_id: str, presented: str, now: datetime) -> RefreshTokenRecord | None:
        if not presented:
            return None
        for record in self._refresh_tokens.list_active(account_id, issued_after=now - self.refresh_ttl):
            if self._credentials.verify(presented, record.token_hash):
                return record
        return None
