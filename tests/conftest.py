"""
tests/conftest.py -- Shared fixtures for the auth core tests.

This module provides:
  - FrozenClock: a controllable UTC clock injected into managers and issuer
  - store: an isolated in-memory AuthStore per test
  - service: a fully wired AuthService on that store (bcrypt cost 4)
  - register_user / make_admin: helpers returning (User, Identity)

Design: each test gets its own in-memory SQLite database. Tests that need
several threads to share one database (the double-rotation race) build a
file-backed store under tmp_path instead -- see test_refresh_concurrency.py.

The DEBUG env var must be set before any core.config import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest

from auth.access import identity_from_claims
from auth.models import Identity, Role, User
from auth.refresh import RefreshTokenManager
from auth.reset import PasswordResetTokenManager
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import AccessTokenIssuer

TEST_SECRET = "unit-test-signing-key-0123456789abcdef"
TEST_PASSWORD = "correct horse battery"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def build_service(store: AuthStore, clock: FrozenClock) -> AuthService:
    return AuthService(
        store=store,
        issuer=AccessTokenIssuer(TEST_SECRET, expire_seconds=900, clock=clock),
        refresh_tokens=RefreshTokenManager(store, ttl=timedelta(days=7), clock=clock),
        reset_tokens=PasswordResetTokenManager(store, ttl=timedelta(minutes=10), clock=clock),
        bcrypt_rounds=4,
        default_role=Role.seller,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def service(store: AuthStore, clock: FrozenClock) -> AuthService:
    return build_service(store, clock)


@pytest.fixture
def register_user(service: AuthService) -> Callable[..., tuple[User, Identity]]:
    """Factory: register a user and return (user, caller identity)."""
    counter = {"n": 0}

    def _register(username: str | None = None, email: str | None = None, password: str = TEST_PASSWORD):
        counter["n"] += 1
        username = username or f"user{counter['n']}"
        email = email or f"{username}@example.com"
        user = service.register(username=username, email=email, password=password, phone="555-0100")
        return user, Identity(user_id=user.id, role=user.role)

    return _register


@pytest.fixture
def make_admin(service: AuthService, register_user) -> Callable[..., tuple[User, Identity]]:
    """Factory: register a user, promote it to admin, and return (user, identity)."""

    def _make(username: str = "admin"):
        user, _ = register_user(username)
        service.store.update_user(user.id, role=Role.admin)
        user = service.store.get_by_id(user.id)
        return user, Identity(user_id=user.id, role=Role.admin)

    return _make


@pytest.fixture
def identity_of(service: AuthService) -> Callable[[str], Identity]:
    """Decode an access token string into the caller Identity it proves."""

    def _identity(token: str) -> Identity:
        payload = service.issuer.decode(token)
        assert payload is not None
        return identity_from_claims(payload)

    return _identity
