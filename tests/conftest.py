"""
tests/conftest.py -- Shared test fixtures for TravelAuth unit and integration tests.

This module provides:
  - engine: a fresh file-backed SQLite database per test (tmp_path)
  - notifications / service: an AuthService wired around that engine
  - register_user(): helper that registers an account with a valid password
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient plus an admin access token for API integration tests

Design: file-backed SQLite under pytest's tmp_path rather than an in-memory
URI. TestClient runs sync route handlers in a thread pool and the concurrency
tests race two threads against the same refresh token; a file database gives
every connection the same data and real SQLite write locking.

DEBUG and RATE_LIMIT_ENABLED must be set before any app import: DEBUG lets
get_settings() auto-generate SECRET_KEY, and the shared limiter reads its
enabled flag once at import time.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# Set before any auth/core import so get_settings() generates a dev SECRET_KEY
# and the module-level limiter is created disabled.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import AuthResult
from auth.notifications import NotificationQueue
from auth.rbac import ROLE_ADMIN
from auth.service import AuthService, build_auth_service
from auth.store import create_store_engine
from core.config import get_settings

TEST_PASSWORD = "correct-horse-42"


# ---------------------------------------------------------------------------
# Unit-level fixtures -- one database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def engine(tmp_path):
    eng = create_store_engine(f"sqlite:///{tmp_path / 'auth.db'}")
    yield eng
    eng.dispose()


@pytest.fixture
def notifications() -> NotificationQueue:
    return NotificationQueue()


@pytest.fixture
def service(engine, notifications) -> AuthService:
    return build_auth_service(engine, get_settings(), notifications)


def register_user(
    service: AuthService,
    username: str,
    tenant_id: str = "default",
    password: str = TEST_PASSWORD,
    email: str | None = None,
) -> AuthResult:
    """Register username in tenant_id with a policy-compliant password."""
    return service.register(username, email or f"{username}@example.com", password, tenant_id)


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(engine, service: AuthService, notifications: NotificationQueue):
    """Return an async context manager that replaces the real lifespan.

    The notification delivery task is NOT started, so tests can drain the
    queue themselves to read verification and reset tokens. The purge_task is
    a long-sleeping coroutine (a real asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.notifications = notifications
        app.state.auth = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app (all middleware, including the
    edge filter) with a patched lifespan. The admin is a ROLE_ADMIN user in
    the "default" tenant; its token is issued after the role grant so the
    snapshot includes every RBAC permission.
    """
    db_path = tmp_path_factory.mktemp("api") / "auth.db"
    engine = create_store_engine(f"sqlite:///{db_path}")
    notifications = NotificationQueue()
    service = build_auth_service(engine, get_settings(), notifications)

    admin = register_user(service, "testadmin", password="testpass123")
    role = service.rbac.get_role_by_name("default", ROLE_ADMIN)
    service.rbac.assign_role(admin.user.id, role.id)
    token = service.login("testadmin", "testpass123", "default").tokens.access.token
    notifications.drain()

    app.router.lifespan_context = _patch_lifespan(engine, service, notifications)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.user.id

    engine.dispose()
