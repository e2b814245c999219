"""
tests/conftest.py -- Shared test fixtures for BankDVWA tests.

This module provides:
  - FakeClock: a settable clock injected into the time-based components
  - make_services(): isolated in-memory stores wired the same way lifespan does
  - patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_services / web_services: module-scoped stores with an admin and a customer
  - api_client / web_client: a fresh TestClient (fresh cookie jar) per test
  - helpers to fetch CSRF tokens and log in through the API and the web forms

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any core/ import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import re
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace

# CRITICAL: Set DEBUG before any core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

import asgi  # noqa: F401 -- mounts the web router and the web error handler
from api.limiter import limiter
from api.main import app, wire_services
from auth.audit import AuditLog
from auth.models import User
from auth.passwords import hash_password
from auth.store import UserStore
from bank.models import Account
from bank.store import BankStore
from core.config import Settings
from security.levels import SecurityLevelStore
from sessions.store import SessionStore

ADMIN_USERNAME = "testadmin"
ADMIN_PASSWORD = "testpass123"
USER_USERNAME = "alice"
USER_PASSWORD = "alicepass123"

_CSRF_INPUT_RE = re.compile(r'name="csrf_token" value="([0-9a-f]+)"')


class FakeClock:
    """Callable clock for the components that take clock=..."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def memory_url(prefix: str) -> str:
    """Unique named shared-memory SQLite URL, so modules never share state."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def build_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "rate_limit_max_requests": 3,
        "rate_limit_period": 60,
        "items_per_page": 10,
    }
    values.update(overrides)
    return Settings(**values)


def make_services(prefix: str, settings: Settings | None = None, with_users: bool = True) -> SimpleNamespace:
    """Create isolated stores on one named shared-memory database."""
    settings = settings or build_settings()
    url = memory_url(prefix)
    services = SimpleNamespace(
        settings=settings,
        user_store=UserStore(url),
        levels=SecurityLevelStore(url, default_level=settings.default_security_level),
        bank=BankStore(url),
        audit=AuditLog(url),
        session_store=SessionStore(settings.secret_key, db_path=":memory:"),
        admin_id=None,
        user_id=None,
    )
    if with_users:
        services.admin_id = services.user_store.create_user(
            User(username=ADMIN_USERNAME, role="admin", email="admin@example.com", password_hash=hash_password(ADMIN_PASSWORD))
        )
        services.user_id = services.user_store.create_user(
            User(
                username=USER_USERNAME,
                role="user",
                email="alice@example.com",
                password_hash=hash_password(USER_PASSWORD),
                first_name="Alice",
                last_name="Liddell",
            )
        )
        services.bank.create_account(
            Account(user_id=services.user_id, username=USER_USERNAME, account_number="1000000001")
        )
    return services


def close_services(services: SimpleNamespace) -> None:
    for name in ("user_store", "levels", "bank", "audit", "session_store"):
        getattr(services, name).close()


def patch_lifespan(services: SimpleNamespace):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(
            app,
            services.settings,
            user_store=services.user_store,
            levels=services.levels,
            bank=services.bank,
            audit=services.audit,
            session_store=services.session_store,
        )
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_services() -> Generator[SimpleNamespace, None, None]:
    services = make_services("test_api")
    yield services
    close_services(services)


@pytest.fixture(scope="module")
def web_services() -> Generator[SimpleNamespace, None, None]:
    services = make_services("test_web")
    yield services
    close_services(services)


@pytest.fixture
def api_client(api_services: SimpleNamespace) -> Generator[TestClient, None, None]:
    """Fresh TestClient (and cookie jar) per test against the module's stores."""
    limiter.reset()
    app.router.lifespan_context = patch_lifespan(api_services)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture
def web_client(web_services: SimpleNamespace) -> Generator[TestClient, None, None]:
    """follow_redirects=False: web tests assert on redirect Location headers."""
    limiter.reset()
    app.router.lifespan_context = patch_lifespan(web_services)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client


# ---------------------------------------------------------------------------
# Client helpers
# ---------------------------------------------------------------------------


def api_csrf(client: TestClient) -> str:
    resp = client.get("/api/v1/auth/csrf")
    assert resp.status_code == 200
    return resp.json()["csrf_token"]


def api_login(client: TestClient, username: str, password: str) -> str:
    """Log in through the API and return the post-login CSRF token."""
    token = api_csrf(client)
    resp = client.post(
        "/api/v1/auth/login",
        json={"username": username, "password": password},
        headers={"X-CSRF-Token": token},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["csrf_token"]


def page_csrf(client: TestClient, path: str = "/login") -> str:
    resp = client.get(path)
    assert resp.status_code == 200, resp.text
    match = _CSRF_INPUT_RE.search(resp.text)
    assert match is not None, f"no csrf_token field on {path}"
    return match.group(1)


def web_login(client: TestClient, username: str, password: str) -> None:
    token = page_csrf(client, "/login")
    resp = client.post("/login", data={"username": username, "password": password, "csrf_token": token, "next": "/"})
    assert resp.status_code == 303
    assert resp.headers["location"] == "/"
