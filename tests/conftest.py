"""
tests/conftest.py -- Shared test fixtures for the Service Portal test suite.

This module provides:
  - FakeClock: injectable clock for lockout / expiry tests
  - engine + store fixtures: isolated sqlite:///:memory: databases per test
  - auth_service: AuthService wired to the in-memory stores and a FakeClock
  - make_account: helper that inserts an account with a bcrypt hash
  - app_env: TestClient against the real app with a patched lifespan
  - login_as: fixture; logs a TestClient in and returns its anti-forgery token

Design: HTTP tests use named shared-memory SQLite URIs (not plain :memory:)
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG, BCRYPT_ROUNDS and ALLOWED_HOSTS must be set before any project import:
get_settings() is evaluated at import time by auth.tokens and api.main.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

# CRITICAL: Set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["*"]')

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.limiter import limiter
from api.main import app, init_app_state
from auth.audit import AuditLogger
from auth.models import Account
from auth.permissions import PermissionResolver, seed_default_grants
from auth.service import AuthService
from auth.store import AccountStore, SessionStore
from auth.tokens import hash_password
from core.database import create_db_engine
from questionnaire.store import QuestionnaireStore

START = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable returning a controllable aware UTC datetime."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Unit-level fixtures (plain in-memory DB, single thread)
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = create_db_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def accounts(engine: Engine) -> AccountStore:
    store = AccountStore(engine)
    seed_default_grants(store)
    return store


@pytest.fixture
def sessions(engine: Engine) -> SessionStore:
    return SessionStore(engine)


@pytest.fixture
def audit(engine: Engine, clock: FakeClock) -> AuditLogger:
    return AuditLogger(engine, clock=clock)


@pytest.fixture
def questionnaires(engine: Engine) -> QuestionnaireStore:
    return QuestionnaireStore(engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def auth_service(
    accounts: AccountStore, sessions: SessionStore, audit: AuditLogger, clock: FakeClock
) -> AuthService:
    return AuthService(accounts, sessions, PermissionResolver(accounts), audit, clock=clock)


def _create_account(
    store: AccountStore,
    username: str,
    password: str = "correct-horse",
    role: str = "editor",
    email: Optional[str] = None,
    is_active: bool = True,
) -> int:
    return store.create_account(
        Account(
            username=username,
            role=role,
            email=email,
            first_name=username.capitalize(),
            last_name="Tester",
            password_hash=hash_password(password),
            is_active=is_active,
        )
    )


@pytest.fixture
def make_account(accounts: AccountStore):
    """make_account("alice", role="admin", email="alice@example.com") -> account id."""

    def _make(username: str, **kwargs) -> int:
        return _create_account(accounts, username, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------

PASSWORD = "correct-horse"


@dataclass
class AppEnv:
    client: TestClient
    engine: Engine
    accounts: AccountStore
    ids: dict[str, int]
    password: str = PASSWORD


def _patch_lifespan(engine: Engine):
    """Return an async context manager that replaces the real lifespan.

    Wires the test engine into app.state through the same init_app_state()
    the production lifespan uses.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_app_state(app, engine)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def app_env() -> Generator[AppEnv, None, None]:
    """One TestClient per test module, with admin / editor / viewer accounts.

    All three share PASSWORD. Use the login_as fixture to switch identity; it clears
    the client's cookies first.
    """
    url = f"sqlite:///file:test_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    eng = create_db_engine(url)
    store = AccountStore(eng)
    ids = {
        "admin": _create_account(store, "admin", PASSWORD, role="admin", email="admin@example.com"),
        "editor": _create_account(store, "editor", PASSWORD, role="editor"),
        "viewer": _create_account(store, "viewer", PASSWORD, role="viewer"),
    }

    app.router.lifespan_context = _patch_lifespan(eng)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield AppEnv(client=client, engine=eng, accounts=store, ids=ids)

    eng.dispose()


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """The limiter is a process-wide singleton; start every test with empty buckets."""
    limiter.reset()


def _login(client: TestClient, username: str, password: str = PASSWORD, remember: bool = False) -> str:
    client.cookies.clear()
    resp = client.post(
        "/api/v1/auth/login",
        json={"username": username, "password": password, "remember": remember},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["csrf_token"]


@pytest.fixture
def login_as():
    """login_as(client, "admin") logs the client in and returns its anti-forgery token."""
    return _login
