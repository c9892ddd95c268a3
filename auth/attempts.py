"""
auth/attempts.py -- Failed-attempt counters, captcha gating, password-reset rate limit.

State machine per (identifier, purpose):

  Clean (count == 0) -> Accumulating (0 < count < threshold)
                     -> CaptchaRequired (count >= threshold)

record_failure() increments the counter and resets its TTL to the full window
on every call (a sliding window, not a fixed one). Reaching the threshold also
sets a captcha_required flag with its own TTL, so enforcement does not depend
on the counter alone. record_success() deletes both and returns to Clean.

Password-reset requests carry a separate rate limit: one TTL flag per
identifier, independent of the counter, that caps successful submissions.

Keys:
  attempts:<purpose>:<identifier>          integer counter
  captcha_required:<purpose>:<identifier>  "1"
  rate_limit:<purpose>:<identifier>        "1"

Store failures degrade instead of raising: counts read as 0 and captcha is not
required. Brute-force protection lapses for the length of an outage; logins
keep working. Every degraded call is logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from auth.errors import StoreUnavailableError
from cache.store import KeyedTTLStore

logger = logging.getLogger("sessionguard.attempts")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_WINDOW_SECONDS = 30 * 60
DEFAULT_RATE_LIMIT_SECONDS = 60


class Purpose(str, Enum):
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"

    @property
    def rate_limited(self) -> bool:
        return self is Purpose.PASSWORD_RESET


@dataclass
class AttemptStatistics:
    identifier: str
    login_attempts: int = 0
    password_reset_attempts: int = 0
    login_captcha_required: bool = False
    password_reset_captcha_required: bool = False
    password_reset_rate_limited: bool = False


def make_identifier(ip: Optional[str], extra: Optional[str] = None) -> str:
    """Compose a tracking identifier from the client IP and an optional qualifier."""
    base = ip or "unknown"
    return f"{base}:{extra or 'anonymous'}"


class AttemptTracker:
    def __init__(
        self,
        store: KeyedTTLStore,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        rate_limit_seconds: int = DEFAULT_RATE_LIMIT_SECONDS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.rate_limit_seconds = rate_limit_seconds

    @staticmethod
    def _attempts_key(identifier: str, purpose: Purpose) -> str:
        return f"attempts:{purpose.value}:{identifier}"

    @staticmethod
    def _flag_key(identifier: str, purpose: Purpose) -> str:
        return f"captcha_required:{purpose.value}:{identifier}"

    @staticmethod
    def _rate_key(identifier: str, purpose: Purpose) -> str:
        return f"rate_limit:{purpose.value}:{identifier}"

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def record_failure(self, identifier: str, purpose: Purpose = Purpose.LOGIN) -> int:
        """Count one failed attempt. Returns the new count (0 if the store is down)."""
        try:
            count = self.store.increment(self._attempts_key(identifier, purpose), ttl=self.window_seconds)
            if count >= self.max_attempts:
                self.store.set(self._flag_key(identifier, purpose), "1", ttl=self.window_seconds)
        except StoreUnavailableError as exc:
            logger.warning("Could not record %s failure for %s: %s", purpose.value, identifier, exc)
            return 0
        if count == self.max_attempts:
            logger.warning("Captcha now required for %s on %s", identifier, purpose.value)
        else:
            logger.debug("Failed %s attempt %d for %s", purpose.value, count, identifier)
        return count

    def record_success(self, identifier: str, purpose: Purpose = Purpose.LOGIN) -> None:
        """Reset to Clean. For password resets, also start the rate-limit window."""
        try:
            self.store.delete(self._attempts_key(identifier, purpose), self._flag_key(identifier, purpose))
            if purpose.rate_limited:
                self.store.set(self._rate_key(identifier, purpose), "1", ttl=self.rate_limit_seconds)
        except StoreUnavailableError as exc:
            logger.warning("Could not reset %s attempts for %s: %s", purpose.value, identifier, exc)

    def get_attempt_count(self, identifier: str, purpose: Purpose = Purpose.LOGIN) -> int:
        try:
            raw = self.store.get(self._attempts_key(identifier, purpose))
        except StoreUnavailableError as exc:
            logger.warning("Could not read %s attempts for %s: %s", purpose.value, identifier, exc)
            return 0
        try:
            return max(0, int(raw)) if raw is not None else 0
        except ValueError:
            return 0

    def is_captcha_required(self, identifier: str, purpose: Purpose = Purpose.LOGIN) -> bool:
        try:
            if self.store.exists(self._flag_key(identifier, purpose)):
                return True
        except StoreUnavailableError as exc:
            logger.warning("Could not read captcha flag for %s: %s", identifier, exc)
            return False
        return self.get_attempt_count(identifier, purpose) >= self.max_attempts

    def remaining_attempts(self, identifier: str, purpose: Purpose = Purpose.LOGIN) -> int:
        return max(0, self.max_attempts - self.get_attempt_count(identifier, purpose))

    # ------------------------------------------------------------------
    # Rate limit (password reset only)
    # ------------------------------------------------------------------

    def acquire_rate_limit(self, identifier: str, purpose: Purpose = Purpose.PASSWORD_RESET) -> bool:
        """Atomically claim the rate-limit slot. False means the caller is rate limited.

        Purposes without a rate limit always succeed.
        """
        if not purpose.rate_limited:
            return True
        try:
            return self.store.set_if_absent(self._rate_key(identifier, purpose), "1", ttl=self.rate_limit_seconds)
        except StoreUnavailableError as exc:
            logger.warning("Rate-limit check failed open for %s: %s", identifier, exc)
            return True

    def is_rate_limited(self, identifier: str, purpose: Purpose = Purpose.PASSWORD_RESET) -> bool:
        if not purpose.rate_limited:
            return False
        try:
            return self.store.exists(self._rate_key(identifier, purpose))
        except StoreUnavailableError as exc:
            logger.warning("Rate-limit check failed open for %s: %s", identifier, exc)
            return False

    def rate_limit_remaining_seconds(self, identifier: str, purpose: Purpose = Purpose.PASSWORD_RESET) -> int:
        if not purpose.rate_limited:
            return 0
        try:
            remaining = self.store.ttl_remaining(self._rate_key(identifier, purpose))
        except StoreUnavailableError:
            return 0
        if remaining is None:
            return 0
        # round up so "retry after" never tells a client to come back too early
        return int(remaining) + (0 if remaining == int(remaining) else 1)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def statistics(self, identifier: str) -> AttemptStatistics:
        return AttemptStatistics(
            identifier=identifier,
            login_attempts=self.get_attempt_count(identifier, Purpose.LOGIN),
            password_reset_attempts=self.get_attempt_count(identifier, Purpose.PASSWORD_RESET),
            login_captcha_required=self.is_captcha_required(identifier, Purpose.LOGIN),
            password_reset_captcha_required=self.is_captcha_required(identifier, Purpose.PASSWORD_RESET),
            password_reset_rate_limited=self.is_rate_limited(identifier, Purpose.PASSWORD_RESET),
        )
