"""
auth/service.py -- Orchestration of login, refresh, logout and one-time tokens.

AuthenticationService is the only place the components meet:

  login    captcha gate -> credential check (timing-equalized) -> access JWT
           + opaque refresh token -> attempt counter reset
  refresh  find valid refresh token -> revoke it -> new refresh token + access JWT
  authenticate
           validate access JWT -> per-token blacklist -> per-principal cutoff
  logout / logout_everywhere
           blacklist the access token, revoke refresh tokens, set a cutoff

Password-reset and email-verification tokens are opaque random values. Only
their SHA-256 is stored in the TTL store, keyed by purpose, holding the
principal's email. They are single use.

Notifier failures are logged and never roll back state: a reset token that
was stored stays valid even if the email could not be sent.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from auth.attempts import AttemptTracker, Purpose
from auth.captcha import CaptchaChallenge
from auth.device import DeviceContext
from auth.errors import (
    CaptchaRequiredError,
    InvalidCredentialsError,
    PrincipalDisabledError,
    PrincipalNotFoundError,
    RateLimitedError,
    StoreUnavailableError,
    UnknownTokenError,
)
from auth.models import CleanupResult, Principal, TokenClaims, TokenPair, TokenType
from auth.revocation import RevocationRegistry
from auth.store import RefreshTokenStore, UserDirectory
from auth.tokens import TokenIssuer, verify_password_equalized
from cache.store import KeyedTTLStore

logger = logging.getLogger("sessionguard.auth")

PASSWORD_RESET_PREFIX = "password_reset:"
EMAIL_VERIFICATION_PREFIX = "email_verification:"
DEFAULT_RESET_TOKEN_TTL = timedelta(hours=2)
DEFAULT_VERIFICATION_TTL = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class Notifier(Protocol):
    """Outbound delivery of one-time tokens (email, SMS, ...)."""

    def send_verification(self, principal: Principal, token: str) -> bool: ...

    def send_password_reset(self, principal: Principal, token: str) -> bool: ...


class LoggingNotifier:
    """Development notifier: records that a message would be sent. Never logs the token."""

    def send_verification(self, principal: Principal, token: str) -> bool:
        logger.info("Verification email queued for user_id=%s", principal.id)
        return True

    def send_password_reset(self, principal: Principal, token: str) -> bool:
        logger.info("Password reset email queued for user_id=%s", principal.id)
        return True


class AuthenticationService:
    def __init__(
        self,
        *,
        users: UserDirectory,
        issuer: TokenIssuer,
        refresh_tokens: RefreshTokenStore,
        revocation: RevocationRegistry,
        attempts: AttemptTracker,
        captcha: CaptchaChallenge,
        ttl_store: KeyedTTLStore,
        notifier: Optional[Notifier] = None,
        reset_token_ttl: timedelta = DEFAULT_RESET_TOKEN_TTL,
        verification_ttl: timedelta = DEFAULT_VERIFICATION_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.users = users
        self.issuer = issuer
        self.refresh_tokens = refresh_tokens
        self.revocation = revocation
        self.attempts = attempts
        self.captcha = captcha
        self.ttl_store = ttl_store
        self.notifier = notifier
        self.reset_token_ttl = reset_token_ttl
        self.verification_ttl = verification_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Login / refresh
    # ------------------------------------------------------------------

    def _check_captcha(
        self, identifier: str, purpose: Purpose, captcha_id: Optional[str], captcha_answer: Optional[str]
    ) -> None:
        if not self.attempts.is_captcha_required(identifier, purpose):
            return
        if not captcha_id:
            raise CaptchaRequiredError("Captcha required.")
        self.captcha.verify_or_raise(captcha_id, captcha_answer)

    def _issue_pair(self, principal: Principal, device: Optional[DeviceContext]) -> TokenPair:
        access = self.issuer.issue_access(principal)
        refresh = self.refresh_tokens.create(principal, device)
        return TokenPair(
            access_token=access,
            refresh_token=refresh.token,
            expires_in=int(self.issuer.access_ttl.total_seconds()),
            refresh_expires_at=refresh.expires_at,
        )

    def login(
        self,
        email: str,
        password: str,
        identifier: str,
        device: Optional[DeviceContext] = None,
        captcha_id: Optional[str] = None,
        captcha_answer: Optional[str] = None,
    ) -> TokenPair:
        """Authenticate with email + password.

        Raises CaptchaRequiredError / CaptchaError when the identifier is past
        the attempt threshold, InvalidCredentialsError on a bad email or
        password, PrincipalDisabledError for a disabled account, and
        StoreUnavailableError if the refresh token cannot be persisted.
        """
        self._check_captcha(identifier, Purpose.LOGIN, captcha_id, captcha_answer)

        principal = self.users.lookup_by_email(email)
        password_ok = verify_password_equalized(password, principal.password_hash if principal else None)
        if principal is None or not password_ok:
            count = self.attempts.record_failure(identifier, Purpose.LOGIN)
            logger.info("Login failed for %s (attempt %d)", identifier, count)
            raise InvalidCredentialsError("Invalid email or password.")
        if not principal.enabled:
            raise PrincipalDisabledError("Account is disabled.")

        pair = self._issue_pair(principal, device)
        self.attempts.record_success(identifier, Purpose.LOGIN)
        logger.info("Login succeeded for user_id=%s", principal.id)
        return pair

    def refresh(self, refresh_token: str, device: Optional[DeviceContext] = None) -> TokenPair:
        """Rotate a refresh token: the presented one is revoked, a new pair is issued."""
        current = self.refresh_tokens.find_valid(refresh_token)
        if current is None:
            raise UnknownTokenError("Refresh token is invalid, expired or revoked.")
        principal = self.users.get_by_id(current.principal_id)
        if principal is None:
            self.refresh_tokens.revoke(refresh_token)
            raise PrincipalNotFoundError("Token owner no longer exists.")
        if not principal.enabled:
            self.refresh_tokens.revoke(refresh_token)
            raise PrincipalDisabledError("Account is disabled.")
        if not self.refresh_tokens.revoke(refresh_token):
            # lost a race with a concurrent refresh of the same token
            raise UnknownTokenError("Refresh token is invalid, expired or revoked.")
        return self._issue_pair(principal, device)

    # ------------------------------------------------------------------
    # Request authentication
    # ------------------------------------------------------------------

    def authenticate(self, access_token: str) -> TokenClaims:
        """Validate an access token and check it against both revocation lists.

        Raises a TokenError subclass; UnknownTokenError when revoked.
        """
        claims = self.issuer.validate(access_token, TokenType.ACCESS)
        if self.revocation.is_revoked(access_token):
            raise UnknownTokenError("Token has been revoked.")
        if claims.user_id is not None and self.revocation.is_globally_revoked(access_token, claims.user_id):
            raise UnknownTokenError("Token has been revoked.")
        return claims

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, access_token: Optional[str] = None, refresh_token: Optional[str] = None) -> None:
        """Revoke whichever credentials were presented. Already-dead ones are ignored."""
        if access_token:
            self.revocation.revoke(access_token)
        if refresh_token:
            self.refresh_tokens.revoke(refresh_token)

    def logout_everywhere(self, principal_id: int) -> int:
        """Cut off every access token and revoke every refresh token. Returns refresh tokens revoked."""
        self.revocation.revoke_all_for_principal(principal_id)
        count = self.refresh_tokens.revoke_all(principal_id)
        logger.info("Logged out everywhere: user_id=%s (%d refresh tokens)", principal_id, count)
        return count

    # ------------------------------------------------------------------
    # One-time tokens
    # ------------------------------------------------------------------

    def _store_one_time_token(self, prefix: str, principal: Principal, ttl: timedelta) -> str:
        token = secrets.token_urlsafe(32)
        self.ttl_store.set(prefix + _digest(token), principal.email, ttl=ttl.total_seconds())
        return token

    def _consume_one_time_token(self, prefix: str, token: Optional[str]) -> Optional[str]:
        if not token or not token.strip():
            return None
        key = prefix + _digest(token.strip())
        email = self.ttl_store.get(key)
        if email is None:
            return None
        if self.ttl_store.delete(key) == 0:
            return None
        return email

    def request_password_reset(
        self,
        email: str,
        identifier: str,
        captcha_id: Optional[str] = None,
        captcha_answer: Optional[str] = None,
    ) -> bool:
        """Start a password reset.

        Returns True whether or not the email exists, so callers cannot use it
        to enumerate accounts. Raises CaptchaRequiredError / CaptchaError and
        RateLimitedError (with retry_after).
        """
        self._check_captcha(identifier, Purpose.PASSWORD_RESET, captcha_id, captcha_answer)
        if not self.attempts.acquire_rate_limit(identifier, Purpose.PASSWORD_RESET):
            retry_after = self.attempts.rate_limit_remaining_seconds(identifier, Purpose.PASSWORD_RESET)
            raise RateLimitedError("Password reset requested too recently.", retry_after=retry_after)

        principal = self.users.lookup_by_email(email)
        if principal is None or not principal.enabled:
            self.attempts.record_failure(identifier, Purpose.PASSWORD_RESET)
            logger.info("Password reset requested for unknown or disabled account from %s", identifier)
            return True

        token = self._store_one_time_token(PASSWORD_RESET_PREFIX, principal, self.reset_token_ttl)
        self.attempts.record_success(identifier, Purpose.PASSWORD_RESET)
        send = self.notifier.send_password_reset if self.notifier else None
        self._notify(send, principal, "password reset", token)
        return True

    def consume_password_reset_token(self, token: Optional[str]) -> Optional[str]:
        """Return the email the token was issued for, or None. Single use."""
        return self._consume_one_time_token(PASSWORD_RESET_PREFIX, token)

    def send_email_verification(self, principal: Principal) -> bool:
        """Store a verification token and hand it to the notifier. Returns whether delivery succeeded."""
        token = self._store_one_time_token(EMAIL_VERIFICATION_PREFIX, principal, self.verification_ttl)
        send = self.notifier.send_verification if self.notifier else None
        return self._notify(send, principal, "verification", token)

    def confirm_email_verification(self, token: Optional[str]) -> Optional[str]:
        return self._consume_one_time_token(EMAIL_VERIFICATION_PREFIX, token)

    def _notify(self, send, principal: Principal, kind: str, token: str) -> bool:
        if send is None:
            logger.warning("No notifier configured; %s message for user_id=%s not sent", kind, principal.id)
            return False
        try:
            delivered = bool(send(principal, token))
        except Exception as exc:
            logger.warning("Notifier failed sending %s to user_id=%s: %s", kind, principal.id, exc)
            return False
        if not delivered:
            logger.warning("Notifier declined %s message for user_id=%s", kind, principal.id)
        return delivered

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> tuple[CleanupResult, int]:
        """One cleanup pass: refresh-token rows, then expired TTL-store rows."""
        result = self.refresh_tokens.cleanup(self._clock())
        try:
            purged = self.ttl_store.purge_expired()
        except StoreUnavailableError as exc:
            logger.warning("TTL store purge skipped: %s", exc)
            purged = 0
        return result, purged
