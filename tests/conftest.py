"""
tests/conftest.py -- Shared test fixtures for Warden.

This module provides:
  - run(): drives one engine coroutine to completion from a sync test
  - FakeProvider: an IdentityProviderPort with call counters, no network
  - FlakyStore: a MemoryStore whose chosen operations fail once
  - make_engine: factory fixture building an AuthEngine over a fresh MemoryStore
  - api_client: TestClient over the real app with a patched lifespan

Async engine code is driven with asyncio.run() inside each test. Every test
builds its own MemoryStore inside that loop, because the store's asyncio.Lock
must not be shared across event loops.

The DEBUG env var must be set before any core/api import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: Set env before any core/api import -- get_settings() is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.config import AuthConfig
from auth.engine import AuthEngine
from auth.memory import MemoryStore
from auth.models import OAuthProfile
from auth.ports import CredentialsProvider

TEST_SECRET = "test-secret-key-that-is-at-least-32-chars"

# bcrypt's minimum cost keeps the suite fast.
TEST_COST = 4


def run(coro):
    return asyncio.run(coro)


@dataclass
class FakeProvider:
    """OAuth provider double. Records every call; never touches the network."""

    id: str = "fake"
    label: str = "Fake"
    profile: OAuthProfile | None = field(
        default_factory=lambda: OAuthProfile(
            external_id="ext-1",
            email="Oauth.User@Example.com",
            name="OAuth User",
            avatar_url="https://img.example/u.png",
        )
    )
    type: str = "oauth"
    authorize_calls: int = 0
    exchange_calls: int = 0

    async def get_authorization_url(self, state: str) -> str:
        self.authorize_calls += 1
        return f"https://idp.example/authorize?client_id=abc&state={state}"

    async def exchange_code_for_profile(self, code: str) -> OAuthProfile:
        self.exchange_calls += 1
        return self.profile


class StorageFailure(RuntimeError):
    pass


class FlakyStore(MemoryStore):
    """MemoryStore whose named operations raise StorageFailure on their first call.

    The failure happens before the store is touched, like a dropped
    connection, so the stored state shows what the engine had already written.
    """

    def __init__(self, *failing: str) -> None:
        super().__init__()
        self.failing = set(failing)

    def _trip(self, operation: str) -> None:
        if operation in self.failing:
            self.failing.discard(operation)
            raise StorageFailure(operation)

    async def create_user_with_account(self, user, account):
        self._trip("create_user_with_account")
        return await super().create_user_with_account(user, account)

    async def reset_credentials(self, user_id, reset_token, account_id, password_hash):
        self._trip("reset_credentials")
        return await super().reset_credentials(user_id, reset_token, account_id, password_hash)


@pytest.fixture
def make_engine():
    """Return a factory: make_engine(**config_overrides) -> AuthEngine.

    Call it inside the coroutine passed to run() so the MemoryStore is
    created on the loop that uses it.
    """

    def factory(providers=None, store=None, **overrides) -> AuthEngine:
        options = {"secret": TEST_SECRET, "password_cost": TEST_COST, **overrides}
        if providers is None:
            providers = [CredentialsProvider(), FakeProvider()]
        return AuthEngine(AuthConfig(**options), store or MemoryStore(), providers)

    return factory


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    engine: AuthEngine
    provider: FakeProvider
    deliveries: list = field(default_factory=list)

    def last_token(self, purpose: str) -> str:
        for kind, _user, token in reversed(self.deliveries):
            if kind == purpose:
                return token
        raise AssertionError(f"no {purpose} token delivered")


def _patch_lifespan(harness_state: dict, **config_overrides):
    """Return a lifespan that wires a MemoryStore-backed engine into app.state.

    The engine is built inside the lifespan so the store's lock lives on the
    TestClient's event loop.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        provider = FakeProvider()
        options = {"secret": TEST_SECRET, "password_cost": TEST_COST, **config_overrides}
        store = MemoryStore()
        engine = AuthEngine(AuthConfig(**options), store, [CredentialsProvider(), provider])
        deliveries: list = []
        app.state.store = store
        app.state.auth_engine = engine
        app.state.token_delivery = lambda purpose, user, token: deliveries.append((purpose, user, token))
        harness_state.update(engine=engine, provider=provider, deliveries=deliveries)
        yield

    return test_lifespan


def _client(**config_overrides) -> Generator[ApiHarness, None, None]:
    state: dict = {}
    original = app.router.lifespan_context
    app.router.lifespan_context = _patch_lifespan(state, **config_overrides)
    try:
        with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
            yield ApiHarness(client=client, **state)
    finally:
        app.router.lifespan_context = original


@pytest.fixture
def api_client() -> Generator[ApiHarness, None, None]:
    """TestClient over the real routes with the default jwt strategy."""
    yield from _client()


@pytest.fixture
def refresh_api_client() -> Generator[ApiHarness, None, None]:
    """TestClient with refresh tokens enabled, so sign-in persists sessions."""
    yield from _client(refresh_token_enabled=True)
