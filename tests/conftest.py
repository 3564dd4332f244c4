"""
tests/conftest.py -- Shared test fixtures for idcore.

This module provides:
  - settings: an explicit Settings instance (no .env, fixed signing key)
  - store / registry / issuer / engine / accounts: the service graph over a
    private in-memory SQLite database, rebuilt for every test
  - notifier: a RecordingNotifier that keeps every confirmation it was asked to send
  - make_user: factory for users in a given state with given roles
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API fixtures because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process. Unit fixtures stay on one thread
and use plain sqlite://.

DEBUG and ALLOWED_HOSTS must be set before any api/ import: api.main reads
get_settings() at import time, and TestClient sends Host: testserver.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any auth/core/api import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')

import pytest
from fastapi.testclient import TestClient

import auth.passwords
from api.main import app
from auth.accounts import AccountLifecycleManager
from auth.engine import AuthenticationEngine
from auth.models import User
from auth.registry import PermissionRegistry
from auth.store import IdentityStore, new_security_stamp
from auth.tokens import TokenIssuer
from core.config import Settings
from main import create_admin

# Minimum bcrypt cost. Hashes stay valid; the suite just stops paying for them.
auth.passwords.BCRYPT_ROUNDS = 4

TEST_SECRET_KEY = "test-signing-key-0123456789abcdef0123456789"
GOOD_PASSWORD = "Corr3ct!horse"


class RecordingNotifier:
    """Notifier fake: records (to, link) for every confirmation mail."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send_confirmation(self, to: str, link: str) -> None:
        self.sent.append((to, link))


# ---------------------------------------------------------------------------
# Service graph (unit tests)
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=False,
        secret_key=TEST_SECRET_KEY,
        jwt_issuer="idcore-test",
        jwt_audience="idcore-test-clients",
        confirmation_base_url="https://id.example.test",
    )


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = IdentityStore("sqlite://")
    yield s
    s.close()


@pytest.fixture
def registry(store: IdentityStore, settings: Settings) -> PermissionRegistry:
    reg = PermissionRegistry(store, store, settings)
    reg.seed_system_roles()
    return reg


@pytest.fixture
def issuer(registry: PermissionRegistry, settings: Settings) -> TokenIssuer:
    return TokenIssuer(registry, settings)


@pytest.fixture
def engine(store: IdentityStore, issuer: TokenIssuer, settings: Settings) -> AuthenticationEngine:
    return AuthenticationEngine(store, issuer, settings)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def accounts(
    engine: AuthenticationEngine,
    registry: PermissionRegistry,
    notifier: RecordingNotifier,
    settings: Settings,
) -> AccountLifecycleManager:
    return AccountLifecycleManager(engine, registry, notifier, settings)


@pytest.fixture
def make_user(store: IdentityStore, registry: PermissionRegistry) -> Callable[..., User]:
    """Return a factory: make_user("a@x.com", roles=["Admin"], email_confirmed=False, ...).

    Extra keyword arguments are User fields. The user is re-read from the
    store so version and timestamps are real.
    """

    def _make(email: str, password: str = GOOD_PASSWORD, roles: tuple[str, ...] = ("User",), **fields) -> User:
        fields.setdefault("email_confirmed", True)
        user = User(
            email=email,
            password_hash=auth.passwords.hash_password(password),
            security_stamp=new_security_stamp(),
            **fields,
        )
        user.id = store.create_user(user)
        for role_name in roles:
            assert registry.assign_user_to_role(user.id, role_name).is_ok
        return store.get_by_id(user.id)

    return _make


# ---------------------------------------------------------------------------
# API integration
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> IdentityStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'health').
    """
    return IdentityStore(f"sqlite:///file:test_idcore_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: IdentityStore, settings: Settings, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and a recording notifier into app.state so
    TestClient routes hit real handlers without touching idcore.db or SMTP.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        registry = PermissionRegistry(store, store, settings)
        registry.seed_system_roles()
        issuer = TokenIssuer(registry, settings)
        engine = AuthenticationEngine(store, issuer, settings)
        app.state.store = store
        app.state.registry = registry
        app.state.issuer = issuer
        app.state.engine = engine
        app.state.accounts = AccountLifecycleManager(engine, registry, notifier, settings)
        yield

    return test_lifespan


class ApiHarness:
    """What API tests need: the client, an admin token, and the collaborators behind them."""

    def __init__(self, client: TestClient, admin: User, admin_token: str, notifier: RecordingNotifier) -> None:
        self.client = client
        self.admin = admin
        self.admin_token = admin_token
        self.notifier = notifier

    @property
    def state(self):
        return self.client.app.state

    def auth_headers(self, token: str | None = None) -> dict[str, str]:
        return {"Authorization": f"Bearer {token or self.admin_token}"}


@pytest.fixture(scope="module")
def api_client(request: pytest.FixtureRequest) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan, so
    tests hit real route handlers against an isolated in-memory store. An
    Admin user is created once startup has seeded the roles.
    """
    settings = Settings(debug=False, secret_key=TEST_SECRET_KEY)
    store = _make_test_store(request.module.__name__.rsplit(".", 1)[-1])
    notifier = RecordingNotifier()
    app.router.lifespan_context = _patch_lifespan(store, settings, notifier)

    with TestClient(app, raise_server_exceptions=True) as client:
        registry = client.app.state.registry
        admin = create_admin(store, registry, "admin@idcore.test", GOOD_PASSWORD).value
        token = client.app.state.issuer.generate_token(admin).token
        yield ApiHarness(client, admin, token, notifier)

    store.close()
