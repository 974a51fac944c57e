"""
tests/conftest.py -- Shared test fixtures for the Plannr auth core.

This module provides:
  - make_store(): isolated in-memory identity store (named shared-memory SQLite)
  - RecordingMailer: Mailer stand-in that keeps every message in memory
  - _patch_lifespan(): wires test stores and services into app.state
  - app_env / client: TestClient (follow_redirects=False) against the real app
  - bearer(): Authorization header for a user id + role

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. Concurrency tests use a file database in tmp_path instead, because
shared-cache memory databases fail fast on lock contention rather than
waiting on the busy timeout.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone

# CRITICAL: Set DEBUG before any auth/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.models import Role, User
from auth.reset import PasswordResetService
from auth.roles import RoleService
from auth.store import UserStore, to_iso
from auth.sync import SessionChannel
from auth.tokens import hash_password, mint_session_token
from auth.verification import EmailVerificationService
from core.config import get_settings

# Rate limits are exercised by slowapi's own suite; here they would only make
# test order matter.
limiter.enabled = False


# ---------------------------------------------------------------------------
# Store and mailer helpers
# ---------------------------------------------------------------------------


def make_store(name: str | None = None) -> UserStore:
    """Create an isolated named shared-memory SQLite store."""
    name = name or uuid.uuid4().hex
    return UserStore(db_url=f"sqlite:///file:test_auth_{name}?mode=memory&cache=shared&uri=true")


def create_user(
    store: UserStore,
    email: str | None = None,
    password: str = "correct-horse",
    role: Role | None = Role.MEMBER,
    name: str | None = None,
    verified: bool = True,
) -> str:
    email = email or f"user-{uuid.uuid4().hex[:8]}@example.com"
    user = User(email=email, hashed_password=hash_password(password), role=role, name=name)
    if verified:
        user.email_verified_at = to_iso(datetime.now(timezone.utc))
    return store.create_user(user)


def bearer(user_id: str, role: Role | None = Role.MEMBER) -> dict[str, str]:
    return {"Authorization": f"Bearer {mint_session_token(user_id, role)}"}


@dataclass
class SentEmail:
    to: str
    subject: str
    html_body: str
    text_body: str | None


@dataclass
class RecordingMailer:
    """Mailer that records messages. deliver=False simulates a failing SMTP server."""

    deliver: bool = True
    sent: list[SentEmail] = field(default_factory=list)

    def send(self, to: str, subject: str, html_body: str, text_body: str | None = None) -> bool:
        self.sent.append(SentEmail(to, subject, html_body, text_body))
        return self.deliver


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def file_store(tmp_path) -> Generator[UserStore, None, None]:
    """File-backed store for tests that write from several threads at once."""
    s = UserStore(db_url=f"sqlite:///{tmp_path / 'auth.db'}", timeout=10.0)
    yield s
    s.close()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


@dataclass
class AppEnv:
    client: TestClient
    store: UserStore
    mailer: RecordingMailer
    channel: SessionChannel


def _patch_lifespan(store: UserStore, mailer: RecordingMailer, channel: SessionChannel):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = store
        app.state.mailer = mailer
        app.state.role_service = RoleService(store)
        app.state.reset_service = PasswordResetService(store, mailer, get_settings())
        app.state.verification_service = EmailVerificationService(store, mailer, get_settings())
        app.state.session_channel = channel
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def app_env() -> Generator[AppEnv, None, None]:
    """Yield an AppEnv with a TestClient over the real app and isolated stores.

    follow_redirects=False is essential: tests assert on redirect Location
    headers, which disappear once the client follows them.
    """
    store = make_store()
    mailer = RecordingMailer()
    channel = SessionChannel()
    app.router.lifespan_context = _patch_lifespan(store, mailer, channel)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield AppEnv(client=client, store=store, mailer=mailer, channel=channel)

    store.close()


@pytest.fixture
def env(app_env: AppEnv) -> AppEnv:
    """Per-test view of app_env with an empty cookie jar and mailbox."""
    app_env.client.cookies.clear()
    app_env.mailer.sent.clear()
    return app_env
