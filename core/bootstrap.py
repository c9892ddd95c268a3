"""
core/bootstrap.py -- Build the session-security components from Settings.

No request handling, no printing. Called by both the CLI (via main.py) and the
REST API lifespan (via api/main.py), so the two entry points always wire the
same stores with the same lifetimes.

TTL store selection: REDIS_URL set -> RedisTTLStore (shared across nodes);
otherwise SQLiteTTLStore at TTL_STORE_PATH (single node only).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from auth.attempts import AttemptTracker
from auth.captcha import CaptchaChallenge
from auth.keys import TokenSigner
from auth.revocation import RevocationRegistry
from auth.service import AuthenticationService, LoggingNotifier, Notifier
from auth.store import RefreshTokenStore, UserStore, make_engine
from auth.tokens import TokenIssuer
from cache.store import KeyedTTLStore, RedisTTLStore, SQLiteTTLStore
from core.config import Settings

logger = logging.getLogger("sessionguard.bootstrap")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Components:
    """Everything the entry points need, built once per process."""

    signer: TokenSigner
    issuer: TokenIssuer
    ttl_store: KeyedTTLStore
    users: UserStore
    refresh_tokens: RefreshTokenStore
    revocation: RevocationRegistry
    attempts: AttemptTracker
    captcha: CaptchaChallenge
    service: AuthenticationService

    def close(self) -> None:
        self.ttl_store.close()
        self.refresh_tokens.close()


def make_ttl_store(settings: Settings, clock: Callable[[], datetime] = _utcnow) -> KeyedTTLStore:
    if settings.redis_url:
        logger.info("TTL store: Redis")
        return RedisTTLStore.from_url(settings.redis_url)
    logger.info("TTL store: SQLite at %s", settings.ttl_store_path)
    return SQLiteTTLStore(settings.ttl_store_path, clock=clock)


def build_components(
    settings: Settings,
    *,
    signer: Optional[TokenSigner] = None,
    ttl_store: Optional[KeyedTTLStore] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = _utcnow,
) -> Components:
    """Wire every component. signer and ttl_store may be injected (tests, CLI)."""
    signer = signer or TokenSigner.load_or_create(settings.keys_dir, generate=settings.generate_missing_keys)
    ttl_store = ttl_store or make_ttl_store(settings, clock)

    engine = make_engine(settings.database_url)
    users = UserStore(engine, clock=clock)
    refresh_tokens = RefreshTokenStore(
        engine,
        ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
        max_per_principal=settings.refresh_token_max_per_principal,
        revoked_retention=timedelta(days=settings.refresh_token_revoked_retention_days),
        clock=clock,
    )
    issuer = TokenIssuer(
        signer,
        issuer=settings.token_issuer,
        access_ttl=settings.access_token_ttl_seconds,
        refresh_ttl=settings.refresh_token_ttl_seconds,
        clock=clock,
    )
    revocation = RevocationRegistry(
        ttl_store,
        issuer,
        global_ttl=timedelta(seconds=settings.global_revocation_ttl_seconds),
        clock=clock,
    )
    attempts = AttemptTracker(
        ttl_store,
        max_attempts=settings.max_attempts_before_captcha,
        window_seconds=settings.attempt_window_seconds,
        rate_limit_seconds=settings.password_reset_rate_limit_seconds,
    )
    captcha = CaptchaChallenge(
        ttl_store,
        length=settings.captcha_length,
        ttl_seconds=settings.captcha_ttl_seconds,
    )
    service = AuthenticationService(
        users=users,
        issuer=issuer,
        refresh_tokens=refresh_tokens,
        revocation=revocation,
        attempts=attempts,
        captcha=captcha,
        ttl_store=ttl_store,
        notifier=notifier or LoggingNotifier(),
        reset_token_ttl=timedelta(seconds=settings.password_reset_token_ttl_seconds),
        verification_ttl=timedelta(seconds=settings.email_verification_ttl_seconds),
        clock=clock,
    )
    return Components(
        signer=signer,
        issuer=issuer,
        ttl_store=ttl_store,
        users=users,
        refresh_tokens=refresh_tokens,
        revocation=revocation,
        attempts=attempts,
        captcha=captcha,
        service=service,
    )
