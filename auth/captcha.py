"""
auth/captcha.py -- Single-use captcha challenges stored as answer hashes.

generate() picks a random answer, stores SHA-256(normalized answer) under
captcha:<id> with a short TTL, and returns the id plus a rendered challenge.
The plaintext answer is never stored.

validate():
  match     -> entry deleted (single use), True
  mismatch  -> entry left alone until its own TTL lapses, False
  missing   -> False, no exception

Normalization is strip() + lower(), so answers are case-insensitive.
Rendering is pluggable. Image and audio renderers live outside this package;
PlainTextRenderer just returns the text.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Optional, Protocol

from auth.errors import CaptchaExpiredOrUnknownError, CaptchaMismatchError
from cache.store import KeyedTTLStore

logger = logging.getLogger("sessionguard.captcha")

# No 0/O, 1/I: easy to confuse when rendered.
ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
DEFAULT_LENGTH = 5
DEFAULT_TTL_SECONDS = 600
KEY_PREFIX = "captcha:"


class ChallengeRenderer(Protocol):
    def render(self, text: str) -> str: ...


class PlainTextRenderer:
    def render(self, text: str) -> str:
        return text


@dataclass(frozen=True)
class Challenge:
    id: str
    rendered: str
    expires_in: int


def _normalize(answer: str) -> str:
    return answer.strip().lower()


def _hash_answer(answer: str) -> str:
    return hashlib.sha256(_normalize(answer).encode("utf-8")).hexdigest()


class CaptchaChallenge:
    def __init__(
        self,
        store: KeyedTTLStore,
        *,
        renderer: Optional[ChallengeRenderer] = None,
        length: int = DEFAULT_LENGTH,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        if length < 1:
            raise ValueError("captcha length must be at least 1")
        self.store = store
        self.renderer = renderer or PlainTextRenderer()
        self.length = length
        self.ttl_seconds = ttl_seconds

    def _random_text(self) -> str:
        return "".join(secrets.choice(ALPHABET) for _ in range(self.length))

    def generate(self) -> Challenge:
        """Create and store a new challenge. Raises StoreUnavailableError if it cannot be stored."""
        text = self._random_text()
        digest = _hash_answer(text)
        while True:
            captcha_id = secrets.token_urlsafe(32)
            if self.store.set_if_absent(KEY_PREFIX + captcha_id, digest, ttl=self.ttl_seconds):
                break
        logger.debug("Captcha generated (id=%s...)", captcha_id[:8])
        return Challenge(id=captcha_id, rendered=self.renderer.render(text), expires_in=self.ttl_seconds)

    def validate(self, captcha_id: Optional[str], answer: Optional[str]) -> bool:
        if not captcha_id or answer is None:
            return False
        key = KEY_PREFIX + captcha_id
        stored = self.store.get(key)
        if stored is None:
            return False
        if not hmac.compare_digest(stored, _hash_answer(answer)):
            logger.info("Captcha mismatch (id=%s...)", captcha_id[:8])
            return False
        # delete() reports whether this call consumed it; a concurrent winner leaves 0.
        return self.store.delete(key) > 0

    def verify_or_raise(self, captcha_id: Optional[str], answer: Optional[str]) -> None:
        """validate() that explains failure: unknown/expired vs wrong answer."""
        if not captcha_id or not self.exists(captcha_id):
            raise CaptchaExpiredOrUnknownError("Captcha expired or unknown.")
        if not self.validate(captcha_id, answer):
            if not self.exists(captcha_id):
                raise CaptchaExpiredOrUnknownError("Captcha expired or unknown.")
            raise CaptchaMismatchError("Captcha answer does not match.")

    def exists(self, captcha_id: str) -> bool:
        return self.store.exists(KEY_PREFIX + captcha_id)

    def invalidate(self, captcha_id: str) -> bool:
        return self.store.delete(KEY_PREFIX + captcha_id) > 0

    def statistics(self) -> dict:
        """Live challenge count plus the configured shape, for diagnostics."""
        return {
            "active_challenges": self.store.count_prefix(KEY_PREFIX),
            "length": self.length,
            "ttl_seconds": self.ttl_seconds,
        }
