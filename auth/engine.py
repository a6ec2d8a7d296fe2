"""
auth/engine.py -- Registration, login, password change and session refresh.

AuthEngine is the component the transport layer calls. It is built by
explicit construction: the caller passes already-built CredentialManager,
LockoutPolicy and TokenService instances (AuthEngine.from_settings() does the
wiring for the application). There is no ambient registry and no implicit
persistence hook -- hash-then-store happens here, as a visible step.

Login pipeline:
  1. Load the account by normalized email. Unknown email: burn one bcrypt
     verification against a dummy digest, then fail.
  2. LockoutPolicy.check_allowed -- locked accounts get AccountLockedError.
  3. Status gate -- non-active accounts fail as unauthorized.
  4. CredentialManager.verify.
  5. LockoutPolicy.on_failure / on_success, persisted by compare-and-swap with
     a bounded retry. A reset that loses the race re-checks the fresh state,
     so a lock set concurrently is never erased.
  6. Stamp last_active, issue tokens.

Every unauthorized outcome carries the same external message. The real cause
is logged with the account id.

Layer rule: no imports from api/ or users/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from auth.credentials import MAX_SECRET_BYTES, CredentialManager
from auth.errors import (
    AccountLockedError,
    BadRequestError,
    ConflictError,
    LockoutContentionError,
    NotFoundError,
    UnauthorizedError,
)
from auth.lockout import LockoutPolicy
from auth.models import Account, AccountStatus, IssuedTokens, Location, LockoutState, Role
from auth.store import AccountStore, RefreshTokenStore, normalize_email
from auth.tokens import TokenService
from core.config import Settings

logger = logging.getLogger("accounts.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def public_profile(account: Account) -> dict:
    """Return the externally visible fields of an account.

    The credential digest and lockout state are never included.
    """
    location = None
    if account.location is not None:
        location = {"city": account.location.city, "country": account.location.country}
    return {
        "id": account.id,
        "name": account.name,
        "email": account.email,
        "role": Role(account.role).value,
        "status": AccountStatus(account.status).value,
        "location": location,
        "created_at": account.created_at.isoformat() if account.created_at else None,
        "last_active": account.last_active.isoformat() if account.last_active else None,
    }


@dataclass(frozen=True)
class LoginResult:
    account: Account
    tokens: IssuedTokens
    profile: dict


class AuthEngine:
    """Orchestrates CredentialManager, LockoutPolicy and TokenService."""

    def __init__(
        self,
        accounts: AccountStore,
        credentials: CredentialManager,
        lockout: LockoutPolicy,
        tokens: TokenService,
        lockout_retries: int = 3,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.accounts = accounts
        self.credentials = credentials
        self.lockout = lockout
        self.tokens = tokens
        self.lockout_retries = lockout_retries
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, accounts: AccountStore, refresh_tokens: RefreshTokenStore
    ) -> "AuthEngine":
        """Wire the engine and its collaborators from application settings."""
        credentials = CredentialManager(rounds=settings.bcrypt_rounds)
        lockout = LockoutPolicy(
            threshold=settings.lockout_threshold,
            lock_duration=timedelta(seconds=settings.lockout_duration_seconds),
        )
        tokens = TokenService(
            settings.secret_key,
            credentials,
            accounts,
            refresh_tokens,
            access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
            max_sessions=settings.max_sessions_per_account,
        )
        return cls(accounts, credentials, lockout, tokens, lockout_retries=settings.lockout_update_retries)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        email: str,
        password: str,
        location: Location | None = None,
        *,
        role: Role = Role.user,
        status: AccountStatus = AccountStatus.active,
    ) -> Account:
        """Create an account. Raises ConflictError if the email is taken.

        Self-registration always uses the defaults (role user, status active);
        role and status are for admin-created accounts.
        """
        email = normalize_email(email)
        if self.accounts.find_by_email(email) is not None:
            raise ConflictError()
        _check_password_length(password)
        account = self.accounts.create_account(
            Account(
                name=name,
                email=email,
                password_hash=self.credentials.hash(password),
                role=role,
                status=status,
                location=location,
                created_at=self._clock(),
            )
        )
        logger.info("Registered account %s (role=%s)", account.id, Role(account.role).value)
        return account

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, now: datetime | None = None) -> LoginResult:
        """Authenticate email/password and issue a token pair.

        Raises AccountLockedError (403) inside the lockout window and
        UnauthorizedError (401) for unknown email, inactive account or wrong
        password.
        """
        now = now or self._clock()
        account = self.accounts.find_by_email(email)
        if account is None or account.password_hash is None:
            self.credentials.burn(password)
            logger.info("Login failed: unknown email")
            raise UnauthorizedError()

        decision = self.lockout.check_allowed(account.lockout, now)
        if not decision.allowed:
            logger.warning("Login rejected: account %s locked for %ds", account.id, decision.retry_after)
            raise AccountLockedError(decision.retry_after)

        if account.status != AccountStatus.active:
            self.credentials.burn(password)
            logger.info("Login failed: account %s is %s", account.id, AccountStatus(account.status).value)
            raise UnauthorizedError()

        if not self.credentials.verify(password, account.password_hash):
            state = self._apply_lockout(account, lambda s: self.lockout.on_failure(s, now))
            logger.info("Login failed: bad password for account %s (attempts=%d)", account.id, state.attempts)
            if self.lockout.is_locked(state, now):
                logger.warning("Account %s locked until %s", account.id, state.locked_until.isoformat())
            raise UnauthorizedError()

        self._persist_success(account, now)
        self.accounts.update_last_active(account.id, now)
        account.last_active = now
        account.lockout = LockoutState()

        tokens = self.tokens.issue_tokens(account, now)
        logger.info("Login succeeded for account %s", account.id)
        return LoginResult(account=account, tokens=tokens, profile=public_profile(account))

    # ------------------------------------------------------------------
    # Password change
    # ------------------------------------------------------------------

    def change_password(
        self, account_id: str, current_password: str, new_password: str, now: datetime | None = None
    ) -> int:
        """Replace the credential and end every other session.

        Raises BadRequestError if current_password is wrong. On success the
        lockout state is reset and every refresh token of the account is
        revoked. Returns the number of revoked refresh tokens.
        """
        account = self.accounts.find_by_id(account_id)
        if account is None or account.password_hash is None:
            raise NotFoundError()
        if not self.credentials.verify(current_password, account.password_hash):
            logger.info("Password change rejected: wrong current password for account %s", account_id)
            raise BadRequestError("Current password is incorrect.")
        _check_password_length(new_password)

        self.accounts.update_password(account_id, self.credentials.hash(new_password))
        revoked = self.tokens.revoke_all(account_id, now or self._clock())
        logger.info("Password changed for account %s", account_id)
        return revoked

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def refresh(self, account_id: str, presented_refresh_token: str, now: datetime | None = None) -> IssuedTokens:
        return self.tokens.rotate_refresh_token(account_id, presented_refresh_token, now or self._clock())

    def logout(self, account_id: str, now: datetime | None = None) -> int:
        return self.tokens.revoke_all(account_id, now or self._clock())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _apply_lockout(self, account: Account, transition: Callable[[LockoutState], LockoutState]) -> LockoutState:
        """Persist transition(current state) with compare-and-swap.

        On a lost race the account is re-read and the transition recomputed
        from the fresh state, so concurrent failures never lose an increment.
        Gives up with LockoutContentionError after lockout_retries attempts.
        """
        for _ in range(self.lockout_retries):
            new_state = transition(account.lockout)
            if self.accounts.atomic_update_lockout(account.id, account.lockout_version, new_state):
                return new_state
            fresh = self.accounts.find_by_id(account.id)
            if fresh is None:
                raise NotFoundError()
            account = fresh
        logger.warning("Lockout update for account %s exhausted %d retries", account.id, self.lockout_retries)
        raise LockoutContentionError()

    def _persist_success(self, account: Account, now: datetime) -> None:
        """Reset the lockout state after a verified password.

        A lost compare-and-swap means a concurrent failure landed first. The
        fresh state is checked again, and a lock set by that failure stands:
        the login is refused instead of erasing it.
        """
        for _ in range(self.lockout_retries):
            decision = self.lockout.check_allowed(account.lockout, now)
            if not decision.allowed:
                logger.warning(
                    "Login rejected: account %s locked concurrently for %ds", account.id, decision.retry_after
                )
                raise AccountLockedError(decision.retry_after)
            if account.lockout == LockoutState():
                return
            new_state = self.lockout.on_success(account.lockout)
            if self.accounts.atomic_update_lockout(account.id, account.lockout_version, new_state):
                return
            fresh = self.accounts.find_by_id(account.id)
            if fresh is None:
                raise NotFoundError()
            account = fresh
        logger.warning("Lockout reset for account %s exhausted %d retries", account.id, self.lockout_retries)
        raise LockoutContentionError()


def _check_password_length(password: str) -> None:
    if len(password.encode("utf-8")) > MAX_SECRET_BYTES:
        raise BadRequestError(f"Password must not exceed {MAX_SECRET_BYTES} bytes.")
