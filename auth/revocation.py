"""
auth/revocation.py -- Blacklist for access tokens that must die before their exp.

Two mechanisms, both on the KeyedTTLStore:

  Per-token:      revoked:token:<identifier> -> "revoked"
                  TTL = the token's remaining lifetime, so the registry never
                  holds an entry for a token that could no longer be used.

  Per-principal:  revoked:principal:<principal_id> -> cutoff (epoch seconds)
                  Every token whose iat predates the cutoff is rejected.
                  TTL = the configured global-revocation TTL, which must cover
                  the longest access-token lifetime.

Identifier: the jti claim. Tokens without one fall back to "sha256:" + a
digest of the decoded header, claims and signature, so any base64url spelling
of a revoked token maps to the same entry. Two distinct tokens can only
collide through a SHA-256 collision.

Failure policy: reads fail OPEN. A TTL-store outage treats tokens as not
revoked and logs a WARNING, so the request path keeps working. Writes
(revoke, revoke_all_for_principal) propagate StoreUnavailableError to the
caller.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Optional

from auth.errors import StoreUnavailableError, TokenError
from auth.tokens import TokenIssuer, content_digest
from cache.store import KeyedTTLStore

logger = logging.getLogger("sessionguard.revocation")

TOKEN_KEY_PREFIX = "revoked:token:"
PRINCIPAL_KEY_PREFIX = "revoked:principal:"
DEFAULT_GLOBAL_REVOCATION_TTL = timedelta(days=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def fallback_identifier(token: str) -> str:
    return "sha256:" + content_digest(token)


class RevocationRegistry:
    """Per-token and per-principal revocation backed by a KeyedTTLStore."""

    def __init__(
        self,
        store: KeyedTTLStore,
        issuer: TokenIssuer,
        *,
        global_ttl: timedelta = DEFAULT_GLOBAL_REVOCATION_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.global_ttl = global_ttl
        self._clock = clock

    def identifier_for(self, token: str) -> str:
        """jti when the token carries one, else the hash fallback.

        Uses unverified claims so an expired or foreign token still maps to a
        stable key.
        """
        try:
            jti = self.issuer.peek(token).jti
        except TokenError:
            jti = None
        return jti if jti else fallback_identifier(token)

    def _token_key(self, token: str) -> str:
        return TOKEN_KEY_PREFIX + self.identifier_for(token)

    @staticmethod
    def _principal_key(principal_id: int) -> str:
        return f"{PRINCIPAL_KEY_PREFIX}{principal_id}"

    # ------------------------------------------------------------------
    # Per-token
    # ------------------------------------------------------------------

    def revoke(self, token: str) -> bool:
        """Blacklist token for the rest of its lifetime.

        Returns False without storing anything when the token is invalid or
        already expired.
        """
        try:
            claims = self.issuer.validate(token)
        except TokenError as exc:
            logger.info("Revocation skipped, token not valid: %s", exc)
            return False
        remaining = (claims.expires_at - self._clock()).total_seconds()
        if remaining <= 0:
            return False
        identifier = claims.jti or fallback_identifier(token)
        self.store.set(TOKEN_KEY_PREFIX + identifier, "revoked", ttl=remaining)
        logger.info("Token revoked (id=%s, ttl=%.0fs)", identifier[:24], remaining)
        return True

    def is_revoked(self, token: str) -> bool:
        try:
            return self.store.exists(self._token_key(token))
        except StoreUnavailableError as exc:
            logger.warning("Revocation check failed open: %s", exc)
            return False

    def unrevoke(self, token: str) -> bool:
        """Drop a blacklist entry. Absent entries are a no-op (False)."""
        removed = self.store.delete(self._token_key(token)) > 0
        if removed:
            logger.info("Token un-revoked (id=%s)", self.identifier_for(token)[:24])
        return removed

    def remaining_ttl(self, token: str) -> Optional[float]:
        """Seconds until the blacklist entry lapses; None when not blacklisted."""
        return self.store.ttl_remaining(self._token_key(token))

    def size(self) -> dict:
        """Live blacklist entries: individual tokens and principal-wide cutoffs."""
        return {
            "tokens": self.store.count_prefix(TOKEN_KEY_PREFIX),
            "principals": self.store.count_prefix(PRINCIPAL_KEY_PREFIX),
        }

    # ------------------------------------------------------------------
    # Per-principal
    # ------------------------------------------------------------------

    def revoke_all_for_principal(self, principal_id: int) -> datetime:
        """Reject every token issued to principal_id before now. Returns the cutoff."""
        now = self._clock()
        cutoff = round(now.timestamp(), 3)
        self.store.set(self._principal_key(principal_id), repr(cutoff), ttl=self.global_ttl.total_seconds())
        logger.info("All tokens revoked for principal_id=%s", principal_id)
        return datetime.fromtimestamp(cutoff, tz=timezone.utc)

    def global_cutoff(self, principal_id: int) -> Optional[datetime]:
        raw = self.store.get(self._principal_key(principal_id))
        if raw is None:
            return None
        try:
            return datetime.fromtimestamp(float(raw), tz=timezone.utc)
        except ValueError:
            logger.warning("Ignoring unreadable revocation cutoff for principal_id=%s", principal_id)
            return None

    def is_globally_revoked(self, token: str, principal_id: int) -> bool:
        """True iff a cutoff exists for principal_id and the token's iat predates it."""
        try:
            cutoff = self.global_cutoff(principal_id)
        except StoreUnavailableError as exc:
            logger.warning("Global revocation check failed open: %s", exc)
            return False
        if cutoff is None:
            return False
        try:
            issued_at = self.issuer.peek(token).issued_at
        except TokenError:
            return False
        return issued_at < cutoff

    def is_token_rejected(self, token: str, principal_id: Optional[int]) -> bool:
        if self.is_revoked(token):
            return True
        return principal_id is not None and self.is_globally_revoked(token, principal_id)
