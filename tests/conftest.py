"""
tests/conftest.py -- Shared test fixtures for RoleGate tests.

This module provides:
  - FakeClock: injectable clock so expiry, throttling and sweeping are tested
    without sleeping
  - make_store(): isolated named shared-memory credential store
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - app_client: (client, clock) -- TestClient on the real app with a fake clock
  - helpers to sign up, log in and bootstrap an admin

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Environment variables must be set before any auth/core import:
  DEBUG=true             get_settings() auto-generates SECRET_KEY
  BCRYPT_ROUNDS=4        keeps every hash in the suite fast
  LOGIN_RATE_LIMIT       high enough that the per-IP limit never trips; the
                         per-identifier throttle is what the tests exercise
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any auth/core import -- settings are read at import time.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "10000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_components
from auth.store import CredentialStore
from core.config import get_settings
from main import create_admin

START_TIME = 1_700_000_000.0

USER_PASSWORD = "user-pass-123"
ADMIN_PASSWORD = "admin-pass-123"


class FakeClock:
    """Callable clock returning a controllable epoch time in seconds."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store(prefix: str = "rolegate") -> CredentialStore:
    """Create an isolated named shared-memory credential store.

    A random suffix keeps every store separate even within one test module.
    """
    url = f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    return CredentialStore(db_url=url, max_retries=0)


def _patch_lifespan(store: CredentialStore, clock: FakeClock):
    """Return an async context manager that replaces the real lifespan.

    Wires the same component graph as production, but around a test store
    and a fake clock. The sweep_task is a long-sleeping coroutine so shutdown
    still has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_components(app, get_settings(), store, clock=clock)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = make_store("unit")
    yield s
    s.close()


@pytest.fixture
def app_client(clock: FakeClock) -> Generator[tuple[TestClient, FakeClock], None, None]:
    """Yield (client, clock) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    """
    store = make_store("api")
    app.router.lifespan_context = _patch_lifespan(store, clock)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, clock

    store.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def signup(client: TestClient, identifier: str, phone: str, password: str = USER_PASSWORD, **extra):
    body = {"identifier": identifier, "password": password, "phone": phone, **extra}
    return client.post("/signup", json=body)


def login(client: TestClient, identifier: str, password: str = USER_PASSWORD):
    return client.post("/login", json={"identifier": identifier, "password": password})


def user_token(client: TestClient, identifier: str = "alice@example.com", phone: str = "010-1111-2222") -> str:
    """Sign up a user and return a fresh token for it."""
    resp = signup(client, identifier, phone)
    assert resp.status_code == 201, resp.text
    resp = login(client, identifier)
    assert resp.status_code == 200, resp.text
    return resp.json()["token"]


def admin_token(client: TestClient, identifier: str = "root@example.com", phone: str = "010-9999-0000") -> str:
    """Bootstrap an admin the way the CLI does, then log in through the API."""
    create_admin(client.app.state.store, identifier, phone, ADMIN_PASSWORD)
    resp = login(client, identifier, ADMIN_PASSWORD)
    assert resp.status_code == 200, resp.text
    return resp.json()["token"]
