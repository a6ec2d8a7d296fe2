"""Unit tests for auth/store.py -- account, follow-graph and refresh-token repositories.

Covers:
- create/find with case-insensitive email and UNIQUE conflict
- lockout compare-and-swap and version bump on password change
- list_accounts filters, search (with LIKE wildcards escaped), pagination
- update_account whitelist and email conflict
- delete_account cascades to sessions and follow edges
- follow graph add/remove/count
- refresh record replace() is conditional; prune() keeps the newest
- OperationalError surfaces as StoreUnavailableError
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import ConflictError, StoreUnavailableError
from auth.models import Account, AccountStatus, Location, LockoutState, RefreshTokenRecord, Role
from auth.store import AccountStore
from tests.conftest import T0, make_account

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def accounts(stores):
    return stores[0]


@pytest.fixture
def refresh_tokens(stores):
    return stores[1]


def _record(account_id: str, created_at) -> RefreshTokenRecord:
    return RefreshTokenRecord(account_id=account_id, token_hash="$2b$04$digest", created_at=created_at)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def test_create_and_find(accounts, credentials):
    created = make_account(accounts, credentials, email="Alice@Example.com", location=Location(city="Oslo"))
    assert created.id and len(created.id) == 32
    assert created.email == "alice@example.com"
    assert created.location == Location(city="Oslo", country=None)
    assert created.lockout_version == 0
    assert accounts.find_by_email("ALICE@EXAMPLE.COM").id == created.id
    assert accounts.find_by_id(created.id).email == "alice@example.com"
    assert accounts.find_by_id("missing") is None


def test_account_repr_hides_digest(accounts, credentials):
    account = make_account(accounts, credentials)
    assert account.password_hash not in repr(account)


def test_duplicate_email_conflicts(accounts, credentials):
    make_account(accounts, credentials)
    with pytest.raises(ConflictError):
        make_account(accounts, credentials, email="ALICE@example.com")


def test_atomic_update_lockout(accounts, credentials):
    account = make_account(accounts, credentials)
    locked = LockoutState(attempts=5, locked_until=T0 + timedelta(hours=2))
    assert accounts.atomic_update_lockout(account.id, 0, locked)
    stored = accounts.find_by_id(account.id)
    assert stored.lockout == locked
    assert stored.lockout_version == 1
    assert not accounts.atomic_update_lockout(account.id, 0, LockoutState())
    assert not accounts.atomic_update_lockout("missing", 0, LockoutState())


def test_update_password_resets_lockout_and_bumps_version(accounts, credentials):
    account = make_account(accounts, credentials)
    accounts.atomic_update_lockout(account.id, 0, LockoutState(attempts=3))
    assert accounts.update_password(account.id, credentials.hash("N3wPassw0rd!"))
    stored = accounts.find_by_id(account.id)
    assert stored.lockout == LockoutState()
    assert stored.lockout_version == 2
    assert credentials.verify("N3wPassw0rd!", stored.password_hash)
    # An in-flight failure computed against version 1 can no longer land.
    assert not accounts.atomic_update_lockout(account.id, 1, LockoutState(attempts=4))


def test_list_accounts_filters_and_pages(accounts, credentials):
    for i in range(5):
        make_account(
            accounts,
            credentials,
            email=f"user{i}@example.com",
            name=f"User {i}",
            created_at=T0 + timedelta(minutes=i),
        )
    make_account(accounts, credentials, email="boss@example.com", name="Boss", role=Role.admin, created_at=T0)
    make_account(
        accounts,
        credentials,
        email="gone@example.com",
        name="Gone",
        status=AccountStatus.inactive,
        created_at=T0 - timedelta(minutes=1),
    )

    assert [a.name for a in accounts.list_accounts(page=1, limit=2, role=Role.user)] == ["User 4", "User 3"]
    assert [a.name for a in accounts.list_accounts(page=3, limit=2, role=Role.user)] == ["User 0", "Gone"]
    assert [a.email for a in accounts.list_accounts(role=Role.admin)] == ["boss@example.com"]
    assert [a.name for a in accounts.list_accounts(status=AccountStatus.inactive)] == ["Gone"]
    assert accounts.count_accounts() == 7
    assert accounts.count_accounts(status=AccountStatus.active) == 6
    assert accounts.count_accounts(role=Role.admin) == 1


def test_list_accounts_search(accounts, credentials):
    make_account(accounts, credentials, email="alice@example.com", name="Alice Smith")
    make_account(accounts, credentials, email="bob@corp.io", name="Bob")
    make_account(accounts, credentials, email="carol@example.com", name="100% Carol")

    assert {a.name for a in accounts.list_accounts(search="SMITH")} == {"Alice Smith"}
    assert {a.name for a in accounts.list_accounts(search="corp")} == {"Bob"}
    assert {a.name for a in accounts.list_accounts(search="example")} == {"Alice Smith", "100% Carol"}
    # "%" is matched literally, not as a wildcard.
    assert {a.name for a in accounts.list_accounts(search="%")} == {"100% Carol"}


def test_update_account(accounts, credentials):
    account = make_account(accounts, credentials)
    assert accounts.update_account(account.id, name=" Alicia ", role=Role.admin, location=Location(country="NO"))
    stored = accounts.find_by_id(account.id)
    assert stored.name == "Alicia"
    assert stored.role == Role.admin
    assert stored.location == Location(city=None, country="NO")
    assert not accounts.update_account("missing", name="Nobody")


def test_update_account_rejects_unknown_fields(accounts, credentials):
    account = make_account(accounts, credentials)
    with pytest.raises(ValueError):
        accounts.update_account(account.id, password_hash="x")


def test_update_account_email_conflict(accounts, credentials):
    make_account(accounts, credentials)
    bob = make_account(accounts, credentials, email="bob@example.com", name="Bob")
    with pytest.raises(ConflictError):
        accounts.update_account(bob.id, email="ALICE@example.com")


def test_delete_account_cascades(accounts, refresh_tokens, credentials):
    alice = make_account(accounts, credentials)
    bob = make_account(accounts, credentials, email="bob@example.com", name="Bob")
    refresh_tokens.insert(_record(alice.id, T0))
    accounts.add_follow(alice.id, bob.id)
    accounts.add_follow(bob.id, alice.id)

    assert accounts.delete_account(alice.id)
    assert accounts.find_by_id(alice.id) is None
    assert refresh_tokens.list_active(alice.id) == []
    assert accounts.follow_counts(bob.id) == (0, 0)
    assert not accounts.delete_account(alice.id)


# ---------------------------------------------------------------------------
# Follow graph
# ---------------------------------------------------------------------------


def test_follow_graph(accounts, credentials):
    alice = make_account(accounts, credentials)
    bob = make_account(accounts, credentials, email="bob@example.com", name="Bob")
    carol = make_account(accounts, credentials, email="carol@example.com", name="Carol")

    assert accounts.add_follow(alice.id, bob.id)
    assert not accounts.add_follow(alice.id, bob.id)
    assert accounts.add_follow(carol.id, bob.id)
    assert accounts.is_following(alice.id, bob.id)
    assert not accounts.is_following(bob.id, alice.id)

    assert {a.id for a in accounts.list_followers(bob.id)} == {alice.id, carol.id}
    assert [a.id for a in accounts.list_following(alice.id)] == [bob.id]
    assert accounts.follow_counts(bob.id) == (2, 0)
    assert accounts.follow_counts(alice.id) == (0, 1)

    assert accounts.remove_follow(alice.id, bob.id)
    assert not accounts.remove_follow(alice.id, bob.id)
    assert accounts.follow_counts(bob.id) == (1, 0)


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


def test_replace_is_conditional(refresh_tokens):
    original = refresh_tokens.insert(_record("acc1", T0))
    successor = refresh_tokens.replace(original.id, _record("acc1", T0 + timedelta(seconds=1)), when=T0)
    assert successor is not None and successor.id != original.id

    # The original is spent: a second redemption inserts nothing.
    assert refresh_tokens.replace(original.id, _record("acc1", T0 + timedelta(seconds=2)), when=T0) is None
    assert [r.id for r in refresh_tokens.list_active("acc1")] == [successor.id]


def test_revoke(refresh_tokens):
    record = refresh_tokens.insert(_record("acc1", T0))
    assert refresh_tokens.revoke(record.id, when=T0)
    assert not refresh_tokens.revoke(record.id, when=T0)
    assert refresh_tokens.list_active("acc1") == []


def test_list_active_respects_issued_after(refresh_tokens):
    refresh_tokens.insert(_record("acc1", T0))
    newer = refresh_tokens.insert(_record("acc1", T0 + timedelta(days=10)))
    assert [r.id for r in refresh_tokens.list_active("acc1", issued_after=T0 + timedelta(days=1))] == [newer.id]


def test_prune_keeps_newest(refresh_tokens):
    records = [refresh_tokens.insert(_record("acc1", T0 + timedelta(seconds=i))) for i in range(4)]
    assert refresh_tokens.prune("acc1", keep=2, when=T0) == 2
    assert [r.id for r in refresh_tokens.list_active("acc1")] == [records[3].id, records[2].id]
    assert refresh_tokens.prune("acc1", keep=2, when=T0) == 0


def test_purge_expired_deletes_old_records(refresh_tokens):
    old = refresh_tokens.insert(_record("acc1", T0))
    refresh_tokens.revoke(old.id, when=T0)
    refresh_tokens.insert(_record("acc1", T0 + timedelta(days=2)))
    assert refresh_tokens.purge_expired(T0 + timedelta(days=1)) == 1


# ---------------------------------------------------------------------------
# Failure translation
# ---------------------------------------------------------------------------


class _BrokenEngine:
    """Engine stand-in whose connections fail like a database that is gone."""

    def connect(self):
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    begin = connect


def test_operational_error_becomes_store_unavailable():
    store = AccountStore(_BrokenEngine())
    with pytest.raises(StoreUnavailableError):
        store.find_by_email("alice@example.com")
    with pytest.raises(StoreUnavailableError):
        store.create_account(Account(name="Alice", email="alice@example.com", password_hash="$2b$04$x"))


class _LosingReadStore(AccountStore):
    """AccountStore whose read-back after insert finds nothing."""

    def find_by_id(self, account_id):
        return None


def test_create_account_missing_after_insert_is_store_unavailable(db_engine):
    store = _LosingReadStore(db_engine)
    with pytest.raises(StoreUnavailableError):
        store.create_account(Account(name="Alice", email="alice@example.com", password_hash="$2b$04$x"))
