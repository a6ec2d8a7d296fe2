"""
users/service.py -- User directory and follow graph.

UserDirectory sits on top of AccountStore for everything that is not
authentication: listing and searching accounts, profile edits, admin status
and role changes, deletion, statistics, and follow/unfollow.

Status changes away from "active" revoke every refresh token of the account so
a suspended user cannot mint new access tokens. Outstanding access tokens
expire on their own within the access-token TTL.

Layer rule: users/ may import from auth/ and core/, never from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.engine import public_profile
from auth.errors import BadRequestError, NotFoundError
from auth.models import Account, AccountStatus, Location, Role
from auth.store import AccountStore
from auth.tokens import TokenService

logger = logging.getLogger("accounts.users")

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class DirectoryStats:
    total_users: int
    active_users: int
    inactive_users: int
    admin_users: int


class UserDirectory:
    def __init__(self, accounts: AccountStore, tokens: TokenService) -> None:
        self.accounts = accounts
        self.tokens = tokens

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_accounts(
        self,
        page: int = 1,
        limit: int = 10,
        role: Role | None = None,
        status: AccountStatus | None = None,
        search: str | None = None,
    ) -> list[Account]:
        if page < 1:
            raise BadRequestError("page must be at least 1.")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise BadRequestError(f"limit must be between 1 and {MAX_PAGE_SIZE}.")
        return self.accounts.list_accounts(page=page, limit=limit, role=role, status=status, search=search)

    def get_account(self, account_id: str) -> Account:
        account = self.accounts.find_by_id(account_id)
        if account is None:
            raise NotFoundError()
        return account

    def profile(self, account: Account) -> dict:
        """public_profile() plus follower and following counts."""
        followers, following = self.accounts.follow_counts(account.id)
        return {**public_profile(account), "followers": followers, "following": following}

    def stats(self) -> DirectoryStats:
        total = self.accounts.count_accounts()
        active = self.accounts.count_accounts(status=AccountStatus.active)
        return DirectoryStats(
            total_users=total,
            active_users=active,
            inactive_users=total - active,
            admin_users=self.accounts.count_accounts(role=Role.admin),
        )

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_profile(
        self,
        account_id: str,
        *,
        name: str | None = None,
        email: str | None = None,
        location: Location | None = None,
    ) -> Account:
        """Self-service profile edit. Raises ConflictError on a taken email."""
        fields: dict = {}
        if name is not None:
            fields["name"] = name
        if email is not None:
            fields["email"] = email
        if location is not None:
            fields["location"] = location
        return self._update(account_id, fields)

    def update_account(
        self,
        account_id: str,
        *,
        name: str | None = None,
        email: str | None = None,
        location: Location | None = None,
        role: Role | None = None,
    ) -> Account:
        """Admin edit. Same as update_profile() plus role."""
        fields: dict = {}
        if name is not None:
            fields["name"] = name
        if email is not None:
            fields["email"] = email
        if location is not None:
            fields["location"] = location
        if role is not None:
            fields["role"] = role
        account = self._update(account_id, fields)
        if role is not None:
            logger.info("Account %s role set to %s", account_id, Role(role).value)
        return account

    def update_status(self, account_id: str, status: AccountStatus) -> Account:
        account = self._update(account_id, {"status": status})
        if account.status != AccountStatus.active:
            self.tokens.revoke_all(account_id)
        logger.info("Account %s status set to %s", account_id, AccountStatus(status).value)
        return account

    def delete_account(self, account_id: str) -> None:
        if not self.accounts.delete_account(account_id):
            raise NotFoundError()
        logger.info("Deleted account %s", account_id)

    # ------------------------------------------------------------------
    # Follow graph
    # ------------------------------------------------------------------

    def follow(self, account_id: str, target_id: str) -> None:
        if account_id == target_id:
            raise BadRequestError("Cannot follow yourself.")
        self.get_account(account_id)
        self.get_account(target_id)
        if not self.accounts.add_follow(account_id, target_id):
            raise BadRequestError("Already following this user.")

    def unfollow(self, account_id: str, target_id: str) -> None:
        """Remove the edge if present. Unfollowing someone not followed is a no-op."""
        self.get_account(account_id)
        self.get_account(target_id)
        self.accounts.remove_follow(account_id, target_id)

    def followers(self, account_id: str) -> list[Account]:
        self.get_account(account_id)
        return self.accounts.list_followers(account_id)

    def following(self, account_id: str) -> list[Account]:
        self.get_account(account_id)
        return self.accounts.list_following(account_id)

    def _update(self, account_id: str, fields: dict) -> Account:
        if not self.accounts.update_account(account_id, **fields):
            raise NotFoundError()
        return self.get_account(account_id)
