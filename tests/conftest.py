"""
tests/conftest.py -- Shared test fixtures for SessionGuard.

This module provides:
  - FakeClock / clock: a frozen, manually advanced UTC clock injected into
    every component so expiry is tested without sleeping
  - signer: one RSA keypair per session (key generation is slow)
  - ttl_store: in-memory SQLiteTTLStore on the fake clock
  - engine / users / refresh_store: in-memory SQLAlchemy stores
  - principal: a persisted user with a known password
  - service: a fully wired AuthenticationService with a MagicMock notifier

The DEBUG env var must be set before any core import so get_settings() in
code paths under test turns on key generation instead of failing on a
missing keypair.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# Set DEBUG before any core import so Settings() allows key generation.
os.environ.setdefault("DEBUG", "true")

import pytest

from auth.attempts import AttemptTracker
from auth.captcha import CaptchaChallenge
from auth.keys import TokenSigner
from auth.models import Principal
from auth.revocation import RevocationRegistry
from auth.service import AuthenticationService
from auth.store import RefreshTokenStore, UserStore, make_engine
from auth.tokens import TokenIssuer, hash_password
from cache.store import SQLiteTTLStore

PASSWORD = "correct horse battery staple"

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock frozen at a fixed instant until advance() is called."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.current += timedelta(seconds=seconds, **kwargs)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Keys / tokens
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def signer() -> TokenSigner:
    return TokenSigner.generate()


@pytest.fixture
def issuer(signer, clock) -> TokenIssuer:
    return TokenIssuer(signer, issuer="sessionguard-test", clock=clock)


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture
def ttl_store(clock):
    store = SQLiteTTLStore(":memory:", clock=clock)
    yield store
    store.close()


@pytest.fixture
def engine():
    eng = make_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def users(engine, clock) -> UserStore:
    return UserStore(engine, clock=clock)


@pytest.fixture
def refresh_store(engine, clock) -> RefreshTokenStore:
    return RefreshTokenStore(engine, max_per_principal=5, clock=clock)


@pytest.fixture(scope="session")
def password_hash() -> str:
    return hash_password(PASSWORD)


@pytest.fixture
def principal(users, password_hash) -> Principal:
    uid = users.create_user(
        Principal(email="a@b.com", password_hash=password_hash, roles=("ROLE_USER", "ROLE_ADMIN"))
    )
    return users.get_by_id(uid)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@pytest.fixture
def notifier() -> MagicMock:
    mock = MagicMock()
    mock.send_password_reset.return_value = True
    mock.send_verification.return_value = True
    return mock


@pytest.fixture
def service(users, issuer, refresh_store, ttl_store, notifier, clock) -> AuthenticationService:
    return AuthenticationService(
        users=users,
        issuer=issuer,
        refresh_tokens=refresh_store,
        revocation=RevocationRegistry(ttl_store, issuer, clock=clock),
        attempts=AttemptTracker(ttl_store, max_attempts=5, window_seconds=1800, rate_limit_seconds=60),
        captcha=CaptchaChallenge(ttl_store),
        ttl_store=ttl_store,
        notifier=notifier,
        clock=clock,
    )
