"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and sessions.

Pattern: Repository + Data Mapper. AccountStore and RefreshTokenStore are the
repositories; _row_to_account / _row_to_refresh are the mappers. The engine and
route code never touch SQL directly.

Atomicity:
  Lockout writes are compare-and-swap on accounts.lockout_version:
      UPDATE accounts SET ... , lockout_version = :expected + 1
      WHERE id = :id AND lockout_version = :expected
  A zero rowcount means another request wrote first; the caller re-reads and
  recomputes. Password changes bump the same version so an in-flight failure
  cannot resurrect a counter that the change just reset.

  Refresh rotation revokes the matched record and inserts its successor inside
  one transaction, and the revoke is conditional on the record still being
  live. Two concurrent redemptions of the same token cannot both succeed.

Timeouts:
  Every connection is opened with store_timeout_seconds (SQLite busy timeout,
  pool checkout timeout elsewhere). OperationalError -- lock wait exceeded,
  database unreachable -- is translated to StoreUnavailableError so callers
  see one retryable error type.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are lower-cased on every write and lookup.

Layer rule: no imports from api/ or users/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.errors import ConflictError, StoreUnavailableError
from auth.models import Account, AccountStatus, Location, LockoutState, RefreshTokenRecord, Role

logger = logging.getLogger("accounts.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(50), nullable=False, index=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),
    Column("role", String(16), nullable=False, server_default=Role.user.value, index=True),
    Column("status", String(16), nullable=False, server_default=AccountStatus.active.value, index=True),
    Column("city", String(100)),
    Column("country", String(100)),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("lockout_version", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_active", String(32)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("account_id", String(32), nullable=False, index=True),
    Column("token_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
)

_follows = Table(
    "follows",
    _metadata,
    Column("follower_id", String(32), nullable=False, index=True),
    Column("followee_id", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    PrimaryKeyConstraint("follower_id", "followee_id"),
)

# Fields update_account() accepts. Column names come from this whitelist,
# never from caller input.
_UPDATABLE_FIELDS = {"name", "email", "role", "status", "location"}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases ignore WAL silently.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def build_engine(db_url: str, timeout_seconds: float = 5.0) -> Engine:
    """Create the SQLAlchemy engine shared by AccountStore and RefreshTokenStore.

    The schema is created on first use. The same engine can back both stores
    or each can get its own.
    """
    if db_url.startswith("sqlite"):
        engine = create_engine(
            db_url,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
        )
        event.listen(engine, "connect", _set_sqlite_pragmas)
    else:
        engine = create_engine(db_url, pool_timeout=timeout_seconds, pool_pre_ping=True)
    with _translate_errors():
        _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _new_id() -> str:
    return uuid.uuid4().hex


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _edge(follower_id: str, followee_id: str):
    return (_follows.c.follower_id == follower_id) & (_follows.c.followee_id == followee_id)


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except OperationalError as exc:
        logger.warning("Account store unavailable: %s", exc.orig)
        raise StoreUnavailableError() from exc


# ---------------------------------------------------------------------------
# Account repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account records and the follow graph.

    Usage:
        store = AccountStore(build_engine("sqlite:///accounts.db"))
        account = store.create_account(Account(name="Alice", email="alice@example.com", password_hash=digest))
        store.find_by_email("ALICE@example.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_by_email(self, email: str) -> Account | None:
        with _translate_errors(), self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_by_id(self, account_id: str) -> Account | None:
        with _translate_errors(), self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(
        self,
        page: int = 1,
        limit: int = 10,
        role: Role | None = None,
        status: AccountStatus | None = None,
        search: str | None = None,
    ) -> list[Account]:
        """Return one page of accounts, newest first.

        search matches case-insensitively against name or email. LIKE
        wildcards in the search term are escaped, so "%" matches a literal
        percent sign.
        """
        query = _accounts.select()
        if role is not None:
            query = query.where(_accounts.c.role == Role(role).value)
        if status is not None:
            query = query.where(_accounts.c.status == AccountStatus(status).value)
        if search:
            term = search.strip().lower()
            query = query.where(
                or_(
                    func.lower(_accounts.c.name, type_=String()).contains(term, autoescape=True),
                    _accounts.c.email.contains(term, autoescape=True),
                )
            )
        query = query.order_by(_accounts.c.created_at.desc()).offset((page - 1) * limit).limit(limit)
        with _translate_errors(), self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_account(r) for r in rows]

    def count_accounts(self, role: Role | None = None, status: AccountStatus | None = None) -> int:
        query = select(func.count()).select_from(_accounts)
        if role is not None:
            query = query.where(_accounts.c.role == Role(role).value)
        if status is not None:
            query = query.where(_accounts.c.status == AccountStatus(status).value)
        with _translate_errors(), self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> Account:
        """Insert a new account and return it as stored.

        Raises ConflictError if the email is already taken. The UNIQUE index
        is the final arbiter, so two concurrent registrations of the same
        email cannot both succeed even if both passed an earlier lookup.
        """
        account_id = _new_id()
        location = account.location or Location()
        try:
            with _translate_errors(), self.engine.begin() as conn:
                conn.execute(
                    _accounts.insert().values(
                        id=account_id,
                        name=account.name.strip(),
                        email=normalize_email(account.email),
                        password_hash=account.password_hash,
                        role=Role(account.role).value,
                        status=AccountStatus(account.status).value,
                        city=location.city,
                        country=location.country,
                        login_attempts=0,
                        locked_until=None,
                        lockout_version=0,
                        created_at=_to_iso(account.created_at or _now()),
                        last_active=_to_iso(account.last_active),
                    )
                )
        except IntegrityError as exc:
            raise ConflictError() from exc
        created = self.find_by_id(account_id)
        if created is None:
            logger.error("Account %s vanished right after insert", account_id)
            raise StoreUnavailableError()
        return created

    def atomic_update_lockout(self, account_id: str, expected_version: int, new_state: LockoutState) -> bool:
        """Write new_state only if the stored version still equals expected_version.

        Returns True when the write landed, False when another writer got
        there first (or the account no longer exists).
        """
        with _translate_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.lockout_version == expected_version))
                .values(
                    login_attempts=new_state.attempts,
                    locked_until=_to_iso(new_state.locked_until),
                    lockout_version=expected_version + 1,
                )
            )
        return result.rowcount == 1

    def update_password(self, account_id: str, password_hash: str) -> bool:
        """Replace the credential wholesale and reset lockout state."""
        with _translate_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    password_hash=password_hash,
                    login_attempts=0,
                    locked_until=None,
                    lockout_version=_accounts.c.lockout_version + 1,
                )
            )
        return result.rowcount > 0

    def update_last_active(self, account_id: str, when: datetime | None = None) -> None:
        with _translate_errors(), self.engine.begin() as conn:
            conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(last_active=_to_iso(when or _now()))
            )

    def update_account(self, account_id: str, **fields) -> bool:
        """Update mutable profile fields on an existing account.

        Accepted fields: name, email, role, status, location (a Location or
        None to clear it). Unknown keys raise ValueError. Returns True if a
        row was updated, False if account_id was not found. Raises
        ConflictError if the new email belongs to another account.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        values: dict = {}
        if "name" in fields:
            values["name"] = fields["name"].strip()
        if "email" in fields:
            values["email"] = normalize_email(fields["email"])
        if "role" in fields:
            values["role"] = Role(fields["role"]).value
        if "status" in fields:
            values["status"] = AccountStatus(fields["status"]).value
        if "location" in fields:
            location = fields["location"] or Location()
            values["city"] = location.city
            values["country"] = location.country
        if not values:
            return self.find_by_id(account_id) is not None
        try:
            with _translate_errors(), self.engine.begin() as conn:
                result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**values))
        except IntegrityError as exc:
            raise ConflictError() from exc
        return result.rowcount > 0

    def delete_account(self, account_id: str) -> bool:
        """Delete an account together with its sessions and follow edges."""
        with _translate_errors(), self.engine.begin() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.account_id == account_id))
            conn.execute(
                _follows.delete().where(
                    (_follows.c.follower_id == account_id) | (_follows.c.followee_id == account_id)
                )
            )
            result = conn.execute(_accounts.delete().where(_accounts.c.id == account_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Follow graph
    # ------------------------------------------------------------------

    def add_follow(self, follower_id: str, followee_id: str) -> bool:
        """Record follower -> followee. Returns False if the edge already exists."""
        try:
            with _translate_errors(), self.engine.begin() as conn:
                conn.execute(
                    _follows.insert().values(
                        follower_id=follower_id,
                        followee_id=followee_id,
                        created_at=_to_iso(_now()),
                    )
                )
        except IntegrityError:
            return False
        return True

    def remove_follow(self, follower_id: str, followee_id: str) -> bool:
        with _translate_errors(), self.engine.begin() as conn:
            result = conn.execute(_follows.delete().where(_edge(follower_id, followee_id)))
        return result.rowcount > 0

    def is_following(self, follower_id: str, followee_id: str) -> bool:
        with _translate_errors(), self.engine.connect() as conn:
            row = conn.execute(_follows.select().where(_edge(follower_id, followee_id))).fetchone()
        return row is not None

    def list_followers(self, account_id: str) -> list[Account]:
        query = (
            _accounts.select()
            .join(_follows, _follows.c.follower_id == _accounts.c.id)
            .where(_follows.c.followee_id == account_id)
            .order_by(_follows.c.created_at.desc())
        )
        with _translate_errors(), self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_account(r) for r in rows]

    def list_following(self, account_id: str) -> list[Account]:
        query = (
            _accounts.select()
            .join(_follows, _follows.c.followee_id == _accounts.c.id)
            .where(_follows.c.follower_id == account_id)
            .order_by(_follows.c.created_at.desc())
        )
        with _translate_errors(), self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_account(r) for r in rows]

    def follow_counts(self, account_id: str) -> tuple[int, int]:
        """Return (followers, following) for an account."""
        with _translate_errors(), self.engine.connect() as conn:
            followers = conn.execute(
                select(func.count()).select_from(_follows).where(_follows.c.followee_id == account_id)
            ).scalar()
            following = conn.execute(
                select(func.count()).select_from(_follows).where(_follows.c.follower_id == account_id)
            ).scalar()
        return followers or 0, following or 0


# ---------------------------------------------------------------------------
# Refresh token repository
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Repository for hashed refresh-token records.

    Only digests are stored. Records are never un-revoked; purge_expired()
    deletes records past their TTL so the table does not grow without bound.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list_active(self, account_id: str, issued_after: datetime | None = None) -> list[RefreshTokenRecord]:
        """Return non-revoked records for an account, newest first.

        issued_after filters out records older than the refresh TTL so an
        expired token is rejected even before the sweep deletes it.
        """
        query = _refresh_tokens.select().where(
            (_refresh_tokens.c.account_id == account_id) & (_refresh_tokens.c.revoked == 0)
        )
        if issued_after is not None:
            query = query.where(_refresh_tokens.c.created_at > _to_iso(issued_after))
        query = query.order_by(_refresh_tokens.c.created_at.desc())
        with _translate_errors(), self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_refresh(r) for r in rows]

    def insert(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with _translate_errors(), self.engine.begin() as conn:
            stored = self._insert(conn, record)
        return stored

    def revoke(self, record_id: str, when: datetime | None = None) -> bool:
        """Revoke one record. Returns False if it was already revoked or unknown."""
        with _translate_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == record_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=_to_iso(when or _now()))
            )
        return result.rowcount == 1

    def revoke_all(self, account_id: str, when: datetime | None = None) -> int:
        """Revoke every live record for an account. Returns the number revoked."""
        with _translate_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.account_id == account_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=_to_iso(when or _now()))
            )
        return result.rowcount

    def replace(
        self, record_id: str, successor: RefreshTokenRecord, when: datetime | None = None
    ) -> RefreshTokenRecord | None:
        """Revoke record_id and insert successor as one unit.

        Returns the stored successor, or None if record_id was no longer live
        (a concurrent rotation or logout won). Nothing is inserted in that case.
        """
        with _translate_errors(), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == record_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=_to_iso(when or _now()))
            )
            if result.rowcount != 1:
                return None
            return self._insert(conn, successor)

    def prune(self, account_id: str, keep: int, when: datetime | None = None) -> int:
        """Revoke all but the newest `keep` live records. Returns the number revoked."""
        with _translate_errors(), self.engine.begin() as conn:
            rows = conn.execute(
                select(_refresh_tokens.c.id)
                .where((_refresh_tokens.c.account_id == account_id) & (_refresh_tokens.c.revoked == 0))
                .order_by(_refresh_tokens.c.created_at.desc())
                .offset(keep)
            ).fetchall()
            stale = [r.id for r in rows]
            if not stale:
                return 0
            conn.execute(
                _refresh_tokens.update()
                .where(_refresh_tokens.c.id.in_(stale))
                .values(revoked=1, revoked_at=_to_iso(when or _now()))
            )
        return len(stale)

    def purge_expired(self, issued_before: datetime) -> int:
        """Delete records (revoked or not) created before issued_before."""
        with _translate_errors(), self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.created_at < _to_iso(issued_before)))
        return result.rowcount

    def _insert(self, conn, record: RefreshTokenRecord) -> RefreshTokenRecord:
        record_id = record.id or _new_id()
        created_at = record.created_at or _now()
        conn.execute(
            _refresh_tokens.insert().values(
                id=record_id,
                account_id=record.account_id,
                token_hash=record.token_hash,
                created_at=_to_iso(created_at),
                revoked=0,
            )
        )
        return RefreshTokenRecord(
            id=record_id,
            account_id=record.account_id,
            token_hash=record.token_hash,
            created_at=created_at,
        )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    location = None
    if row.city is not None or row.country is not None:
        location = Location(city=row.city, country=row.country)
    return Account(
        id=row.id,
        name=row.name,
        email=row.email,
        password_hash=row.password_hash,
        role=Role(row.role),
        status=AccountStatus(row.status),
        location=location,
        lockout=LockoutState(attempts=row.login_attempts, locked_until=_from_iso(row.locked_until)),
        lockout_version=row.lockout_version,
        created_at=_from_iso(row.created_at),
        last_active=_from_iso(row.last_active),
    )


def _row_to_refresh(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        created_at=_from_iso(row.created_at),
        revoked=bool(row.revoked),
        revoked_at=_from_iso(row.revoked_at),
    )
