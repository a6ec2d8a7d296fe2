"""
tests/conftest.py -- Shared test fixtures for the account service.

This module provides:
  - make_test_engine(): builds an isolated in-memory account store engine
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - db_engine / stores / credentials / tokens / auth_engine: unit-level fixtures
    over a fresh database per test
  - api_client: TestClient with an admin JWT for API integration tests
  - sign_in(): helper that signs in over HTTP and clears the auth cookies

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any api/auth/core import:
  DEBUG=true          -- get_settings() auto-generates SECRET_KEY
  BCRYPT_ROUNDS=4     -- bcrypt minimum cost keeps the suite fast
  LOGIN_RATE_LIMIT    -- raised so lockout tests are not cut short by 429s
  REFRESH_RATE_LIMIT  -- pinned so the 429 test knows the budget
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core import so get_settings() sees them.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("REFRESH_RATE_LIMIT", "30/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from auth.credentials import CredentialManager
from auth.engine import AuthEngine
from auth.lockout import LockoutPolicy
from auth.models import Account, Role
from auth.store import AccountStore, RefreshTokenStore, build_engine
from auth.tokens import TokenService

TEST_SECRET = "test-secret-key-with-at-least-32-characters"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_test_engine(db_suffix: str):
    """Create an isolated named shared-memory SQLite engine.

    Args:
        db_suffix: Unique string appended to the DB name so test modules and
                   test cases don't share state.
    """
    return build_engine(f"sqlite:///file:test_accounts_{db_suffix}?mode=memory&cache=shared&uri=true")


def make_account(
    accounts: AccountStore,
    credentials: CredentialManager,
    email: str = "alice@example.com",
    password: str = "Passw0rd!",
    name: str = "Alice",
    **kwargs,
) -> Account:
    return accounts.create_account(
        Account(name=name, email=email, password_hash=credentials.hash(password), **kwargs)
    )


def sign_in(client: TestClient, email: str, password: str):
    """POST /auth/sign-in and drop the cookies it sets.

    The access cookie takes priority over the Authorization header, so leaving
    it in the client jar would silently change the identity of later requests.
    """
    resp = client.post("/api/v1/auth/sign-in", json={"email": email, "password": password})
    client.cookies.clear()
    return resp


def _patch_lifespan(db_engine):
    """Return an async context manager that replaces the real lifespan.

    Wires services over the test engine with the same wire_services() the
    real lifespan uses. The sweep_task is a long-sleeping coroutine that keeps
    asyncio happy (a real asyncio.Task is required; MagicMock would fail on
    .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, db_engine)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit fixtures -- one fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def db_engine():
    engine = make_test_engine(uuid.uuid4().hex)
    yield engine
    engine.dispose()


@pytest.fixture
def stores(db_engine) -> tuple[AccountStore, RefreshTokenStore]:
    return AccountStore(db_engine), RefreshTokenStore(db_engine)


@pytest.fixture(scope="session")
def credentials() -> CredentialManager:
    return CredentialManager(rounds=4)


@pytest.fixture
def tokens(stores, credentials) -> TokenService:
    accounts, refresh_tokens = stores
    return TokenService(
        TEST_SECRET,
        credentials,
        accounts,
        refresh_tokens,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=30),
        max_sessions=10,
    )


@pytest.fixture
def auth_engine(stores, credentials, tokens) -> AuthEngine:
    accounts, _ = stores
    return AuthEngine(
        accounts,
        credentials,
        LockoutPolicy(threshold=5, lock_duration=timedelta(hours=2)),
        tokens,
        clock=lambda: T0,
    )


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    The admin account is registered once the services are wired and an
    access token is issued for use in Authorization headers.
    """
    db_engine = make_test_engine(request.module.__name__.rsplit(".", 1)[-1])
    app.router.lifespan_context = _patch_lifespan(db_engine)

    with TestClient(app, raise_server_exceptions=True) as client:
        engine: AuthEngine = app.state.auth_engine
        admin = engine.register("Test Admin", "admin@example.com", "adminpass123", role=Role.admin)
        token = app.state.tokens.issue_access_token(admin.id, admin.email, Role.admin)
        yield client, token, admin.id

    db_engine.dispose()
