"""
tests/conftest.py -- Shared test fixtures for CaseGate.

This module provides:
  - ManualClock / clock: a controllable time source so expiry tests never sleep
  - settings: Settings with a fixed key and bcrypt cost 4 (fast hashing)
  - store / service: isolated in-memory AuthStore and AuthService
  - make_account: factory for accounts with a known password and role
  - api: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the TestClient because it runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit-level fixtures run on one thread and use :memory:.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# Route-level rate limits would otherwise trip across many login tests.
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import Account, AccountStatus
from auth.passwords import hash_secret
from auth.permissions import Role
from auth.service import AuthService
from auth.store import AuthStore
from core.config import Settings

TEST_SECRET_KEY = "test-secret-key-0123456789abcdef0123456789"
PASSWORD = "Correct#Horse1"


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": TEST_SECRET_KEY, "bcrypt_rounds": 4}
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    """make_settings with overrides, e.g. settings_factory(max_sessions=2)."""
    return make_settings


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def service(store: AuthStore, settings: Settings, clock: ManualClock) -> AuthService:
    return AuthService(store, settings, clock)


@pytest.fixture
def make_account(store: AuthStore) -> Callable[..., Account]:
    """Factory: make_account("a@example.com", role=Role.ADMIN) -> stored Account."""

    def _make(
        email: str = "user@example.com",
        role: Role = Role.CLIENT,
        status: AccountStatus = AccountStatus.ACTIVE,
        password: str = PASSWORD,
    ) -> Account:
        return store.create_account(
            Account(email=email, hashed_secret=hash_secret(password, 4), role=role, status=status)
        )

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiContext:
    client: TestClient
    service: AuthService
    admin: Account
    client_account: Account
    reset_tokens: dict[str, str] = field(default_factory=dict)
    verifications: dict[str, tuple[str, str]] = field(default_factory=dict)

    def login(self, email: str, password: str = PASSWORD) -> dict:
        resp = self.client.post("/api/v1/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        return resp.json()

    @staticmethod
    def bearer(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}


def _patch_lifespan(
    store: AuthStore,
    service: AuthService,
    reset_tokens: dict[str, str],
    verifications: dict[str, tuple[str, str]],
):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test store and service into app.state so TestClient
    routes see an isolated test DB rather than the configured database.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_store = store
        app.state.auth_service = service
        app.state.reset_notifier = reset_tokens.__setitem__
        app.state.verification_notifier = lambda email, token, code: verifications.__setitem__(email, (token, code))
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api() -> Generator[ApiContext, None, None]:
    """Yield an ApiContext with a super_admin and a client account already created.

    Each test gets its own named in-memory database so state never leaks
    between tests.
    """
    store = AuthStore(f"sqlite:///file:test_api_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    service = AuthService(store, make_settings())
    admin = service.bootstrap_admin("root@example.com", PASSWORD)
    client_account = store.create_account(
        Account(email="client@example.com", hashed_secret=hash_secret(PASSWORD, 4), role=Role.CLIENT)
    )
    reset_tokens: dict[str, str] = {}
    verifications: dict[str, tuple[str, str]] = {}

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(store, service, reset_tokens, verifications)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(client, service, admin, client_account, reset_tokens, verifications)

    store.close()
