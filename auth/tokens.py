"""
auth/tokens.py -- RS256 JWT issue/validate and password hashing.

Security design decisions:
  JWT: python-jose with RS256. Tokens are signed with the private key held by
       TokenSigner and verified with the public key only, so any node can
       validate without a shared secret. Claims are typed (TokenClaims) rather
       than passed around as dicts.

  Validation order: structure -> signature -> claim shape -> expiry -> type.
       Each stage raises its own TokenError subclass. Expiry is evaluated
       against the injected clock (python-jose's own exp check is disabled)
       so every component agrees on "now". iat/exp carry millisecond
       precision, which the global-revocation cutoff relies on.
       Every segment must be canonical base64url (no padding, zero trailing
       bits). A signature with a second spelling is SignatureInvalid, never
       an equivalent token.

  Safe boundary: is_valid_*_safe(), is_valid_for_principal() and friends
       catch TokenError and return a bool. Nothing past those methods sees a
       parse/signature/expiry exception.

  jti: every token gets a random jti by default so revocation can key on it.
       include_jti=False exists for callers that need jti-less tokens; the
       revocation registry then falls back to content_digest(), a hash of
       the decoded segments.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH enables timing
       equalization in the login flow so response time does not reveal whether
       an email exists.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError
from jose.utils import base64url_decode, base64url_encode

from auth.errors import (
    ExpiredTokenError,
    MalformedTokenError,
    SignatureInvalidError,
    TokenError,
    UnsupportedTokenTypeError,
)
from auth.keys import ALGORITHM, TokenSigner
from auth.models import Principal, TokenClaims, TokenType, ordered_roles

logger = logging.getLogger("sessionguard.tokens")

DEFAULT_ACCESS_TTL = timedelta(hours=1)
DEFAULT_REFRESH_TTL = timedelta(days=180)

_RESERVED_CLAIMS = {"sub", "iss", "iat", "exp", "nbf", "aud", "type", "user_id", "roles", "jti"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_timedelta(ttl: timedelta | int | float) -> timedelta:
    return ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)


def _numeric_date(value: datetime) -> float:
    return round(value.timestamp(), 3)


def _from_numeric_date(value: Any, name: str) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedTokenError(f"Claim '{name}' is not a NumericDate.")
    return datetime.fromtimestamp(value, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash. Computed once at module load so the first
# login attempt is not measurably slower than later ones.
_DUMMY_HASH: str = hash_password("sessionguard_timing_dummy")


def verify_password_equalized(plain: str, hashed: str | None) -> bool:
    """verify_password() that always pays the bcrypt cost, even with no hash."""
    if hashed is None:
        verify_password(plain, _DUMMY_HASH)
        return False
    return verify_password(plain, hashed)


# ---------------------------------------------------------------------------
# Issuer / validator
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Issues and verifies signed, claim-bearing tokens.

    Stateless apart from the immutable keypair, so one instance is shared by
    every request worker.
    """

    def __init__(
        self,
        signer: TokenSigner,
        *,
        issuer: str = "sessionguard",
        access_ttl: timedelta | int = DEFAULT_ACCESS_TTL,
        refresh_ttl: timedelta | int = DEFAULT_REFRESH_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.signer = signer
        self.issuer = issuer
        self.access_ttl = _as_timedelta(access_ttl)
        self.refresh_ttl = _as_timedelta(refresh_ttl)
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def default_ttl(self, kind: TokenType) -> timedelta:
        if kind is TokenType.ACCESS:
            return self.access_ttl
        if kind is TokenType.REFRESH:
            return self.refresh_ttl
        raise UnsupportedTokenTypeError(f"No TTL configured for token type {kind!r}.")

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(
        self,
        principal: Principal,
        kind: TokenType = TokenType.ACCESS,
        ttl: timedelta | int | None = None,
        *,
        include_jti: bool = True,
        extra: Mapping[str, str] | None = None,
    ) -> str:
        """Sign a token for principal.

        subject is the principal's email; expiry is now + ttl (defaulting to
        the configured lifetime for kind). extra may only add string pairs
        that do not collide with the typed claims.
        """
        lifetime = self.default_ttl(kind) if ttl is None else _as_timedelta(ttl)
        if lifetime <= timedelta(0):
            raise ValueError("Token TTL must be positive.")
        now = self._now()
        payload: dict[str, Any] = {}
        for key, value in (extra or {}).items():
            if key in _RESERVED_CLAIMS:
                raise ValueError(f"Extra claim '{key}' collides with a reserved claim.")
            payload[key] = str(value)
        payload.update(
            {
                "sub": principal.email,
                "iss": self.issuer,
                "iat": _numeric_date(now),
                "exp": _numeric_date(now + lifetime),
                "type": kind.value,
                "user_id": principal.id,
                "roles": list(ordered_roles(principal.roles)),
            }
        )
        if include_jti:
            payload["jti"] = uuid.uuid4().hex
        token = jwt.encode(
            payload,
            self.signer.private_pem,
            algorithm=ALGORITHM,
            headers={"kid": self.signer.key_id},
        )
        logger.debug("Issued %s token for user_id=%s (jti=%s)", kind.value, principal.id, payload.get("jti"))
        return token

    def issue_access(self, principal: Principal, ttl: timedelta | int | None = None) -> str:
        return self.issue(principal, TokenType.ACCESS, ttl)

    def issue_refresh(self, principal: Principal, ttl: timedelta | int | None = None) -> str:
        return self.issue(principal, TokenType.REFRESH, ttl)

    # ------------------------------------------------------------------
    # Parse / validate
    # ------------------------------------------------------------------

    def peek(self, token: str) -> TokenClaims:
        """Parse claims WITHOUT verifying signature or expiry.

        Only for lookups that need no trust (e.g. revocation keys). Raises
        MalformedTokenError / UnsupportedTokenTypeError.
        """
        return _claims_from_payload(_unverified_payload(token))

    def validate(self, token: str, expected_type: TokenType | None = None) -> TokenClaims:
        """Verify token and return its claims.

        Raises MalformedTokenError, SignatureInvalidError, ExpiredTokenError
        or UnsupportedTokenTypeError.
        """
        claims = self._verified_claims(token)
        if self._now() >= claims.expires_at:
            raise ExpiredTokenError("Token has expired.")
        if expected_type is not None and claims.token_type is not expected_type:
            raise UnsupportedTokenTypeError(
                f"Expected a {expected_type.value} token, got {claims.token_type.value}."
            )
        return claims

    def _verified_claims(self, token: str) -> TokenClaims:
        """Signature-checked claims, expiry NOT enforced."""
        _unverified_payload(token)
        _check_signature_segment(token)
        try:
            payload = jwt.decode(
                token,
                self.signer.public_pem,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTClaimsError as exc:
            raise MalformedTokenError(f"Token claims rejected: {exc}") from exc
        except JWTError as exc:
            raise SignatureInvalidError(f"Token signature invalid: {exc}") from exc
        return _claims_from_payload(payload)

    # ------------------------------------------------------------------
    # Claim accessors (raise TokenError on invalid tokens)
    # ------------------------------------------------------------------

    def extract_claim(self, token: str, name: str):
        return self.validate(token).get(name)

    def extract_username(self, token: str) -> str:
        return self.validate(token).subject

    def extract_roles(self, token: str) -> tuple[str, ...]:
        return self.validate(token).roles

    def extract_jti(self, token: str) -> str | None:
        return self.validate(token).jti

    def extract_issued_at(self, token: str) -> datetime:
        return self.validate(token).issued_at

    def extract_expiration(self, token: str) -> datetime:
        return self._verified_claims(token).expires_at

    def extract_token_type(self, token: str) -> TokenType:
        return self.validate(token).token_type

    def is_expired(self, token: str) -> bool:
        """Compare the verified exp claim with now.

        An unverifiable token has no trustworthy expiry and counts as expired.
        """
        try:
            expires_at = self._verified_claims(token).expires_at
        except TokenError:
            return True
        return self._now() >= expires_at

    # ------------------------------------------------------------------
    # Safe boundary checks -- never raise TokenError
    # ------------------------------------------------------------------

    def is_valid_safe(self, token: str) -> bool:
        try:
            self.validate(token)
        except TokenError as exc:
            logger.info("Token rejected: %s", exc)
            return False
        return True

    def is_valid_access_token_safe(self, token: str) -> bool:
        try:
            self.validate(token, TokenType.ACCESS)
        except TokenError as exc:
            logger.warning("Invalid access token: %s", exc)
            return False
        return True

    def is_valid_refresh_token_safe(self, token: str) -> bool:
        try:
            self.validate(token, TokenType.REFRESH)
        except TokenError as exc:
            logger.warning("Invalid refresh token: %s", exc)
            return False
        return True

    def is_valid_for_principal(self, token: str, principal: Principal) -> bool:
        """True iff the token verifies, is unexpired, and its subject is principal.email."""
        try:
            claims = self.validate(token)
        except TokenError as exc:
            logger.warning("Token invalid for user_id=%s: %s", principal.id, exc)
            return False
        return claims.subject == principal.email

    def time_to_expiration(self, token: str) -> int:
        """Whole seconds until exp; 0 when expired or unverifiable."""
        try:
            expires_at = self._verified_claims(token).expires_at
        except TokenError:
            return 0
        return max(0, int((expires_at - self._now()).total_seconds()))

    def token_info(self, token: str) -> dict:
        """Human-readable summary for diagnostics. Never raises TokenError."""
        try:
            claims = self._verified_claims(token)
        except TokenError as exc:
            return {"error": str(exc)}
        return {
            "username": claims.subject,
            "user_id": claims.user_id,
            "roles": list(claims.roles),
            "token_type": claims.token_type.value,
            "issuer": claims.issuer,
            "jti": claims.jti,
            "issued_at": claims.issued_at.isoformat(),
            "expires_at": claims.expires_at.isoformat(),
            "expired": self._now() >= claims.expires_at,
        }


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


_SEGMENT_RE = re.compile(r"[A-Za-z0-9_-]*")


def _decode_segment(segment: str) -> bytes:
    """Strict base64url: URL-safe alphabet, no padding, zero trailing bits.

    Exactly one spelling is accepted per byte string. Raises ValueError.
    """
    if not _SEGMENT_RE.fullmatch(segment):
        raise ValueError("characters outside the base64url alphabet")
    raw = segment.encode("ascii")
    decoded = base64url_decode(raw)
    if base64url_encode(decoded) != raw:
        raise ValueError("non-canonical base64url encoding")
    return decoded


def _check_signature_segment(token: str) -> None:
    try:
        _decode_segment(token.rsplit(".", 1)[1])
    except ValueError as exc:
        raise SignatureInvalidError(f"Token signature invalid: {exc}") from exc


def content_digest(token: str) -> str:
    """SHA-256 hex digest of the decoded segments.

    Decoding is lenient here, so every base64url spelling of the same header,
    claims and signature maps to one digest. Undecodable input falls back to
    hashing the raw string.
    """
    digest = hashlib.sha256()
    try:
        parts = [base64url_decode(segment.encode("ascii")) for segment in token.split(".")]
    except ValueError:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()
    for part in parts:
        digest.update(len(part).to_bytes(4, "big"))
        digest.update(part)
    return digest.hexdigest()


def _unverified_payload(token: str) -> dict:
    if not isinstance(token, str) or not token.strip():
        raise MalformedTokenError("Token is empty.")
    if token.count(".") != 2:
        raise MalformedTokenError("Token must have three dot-separated segments.")
    header_segment, payload_segment, _ = token.split(".")
    for name, segment in (("header", header_segment), ("claims", payload_segment)):
        try:
            _decode_segment(segment)
        except ValueError as exc:
            raise MalformedTokenError(f"Token {name} segment rejected: {exc}") from exc
    try:
        jwt.get_unverified_header(token)
        payload = jwt.get_unverified_claims(token)
    except JWTError as exc:
        raise MalformedTokenError(f"Token could not be decoded: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedTokenError("Token claims are not a JSON object.")
    return payload


def _claims_from_payload(payload: dict) -> TokenClaims:
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise MalformedTokenError("Token has no subject.")
    if "iat" not in payload or "exp" not in payload:
        raise MalformedTokenError("Token lacks iat/exp.")
    try:
        token_type = TokenType(payload.get("type"))
    except ValueError as exc:
        raise UnsupportedTokenTypeError(f"Unsupported token type {payload.get('type')!r}.") from exc
    user_id = payload.get("user_id")
    roles = payload.get("roles") or []
    if not isinstance(roles, list):
        raise MalformedTokenError("Claim 'roles' is not a list.")
    extra = {k: v for k, v in payload.items() if k not in _RESERVED_CLAIMS and isinstance(v, str)}
    return TokenClaims(
        subject=subject,
        issuer=str(payload.get("iss", "")),
        issued_at=_from_numeric_date(payload["iat"], "iat"),
        expires_at=_from_numeric_date(payload["exp"], "exp"),
        token_type=token_type,
        user_id=user_id if isinstance(user_id, int) and not isinstance(user_id, bool) else None,
        roles=ordered_roles(roles),
        jti=payload.get("jti") or None,
        extra=extra,
    )
