"""
auth/errors.py -- Exception hierarchy for the session-security core.

Every failure a caller can meaningfully react to has its own class, rooted at
AuthError so the FastAPI dependency layer can map the whole family to 401/403
in one place.

Expected, user-facing conditions (CaptchaRequiredError, RateLimitedError) are
exceptions only at the orchestration layer. The component APIs below them
return booleans for those states.

Revoking a credential that is already revoked or unknown is NOT an error:
those calls return False / 0.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all session-security errors."""

    code = "auth_error"


# ---------------------------------------------------------------------------
# Token errors -- raised by TokenIssuer.validate(), caught by *_safe() checks
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    code = "invalid_token"


class MalformedTokenError(TokenError):
    """Not three base64url segments, or header/claims are not valid JSON."""

    code = "malformed_token"


class SignatureInvalidError(TokenError):
    code = "signature_invalid"


class ExpiredTokenError(TokenError):
    code = "token_expired"


class UnsupportedTokenTypeError(TokenError):
    """The `type` claim is missing, unknown, or not the type the caller expected."""

    code = "unsupported_token_type"


class UnknownTokenError(TokenError):
    """The credential is well-formed but not (or no longer) recognised: revoked or never issued."""

    code = "unknown_token"


# ---------------------------------------------------------------------------
# Brute-force mitigation
# ---------------------------------------------------------------------------


class CaptchaRequiredError(AuthError):
    code = "captcha_required"


class CaptchaError(AuthError):
    code = "captcha_invalid"


class CaptchaMismatchError(CaptchaError):
    code = "captcha_mismatch"


class CaptchaExpiredOrUnknownError(CaptchaError):
    code = "captcha_expired"


class RateLimitedError(AuthError):
    code = "rate_limited"

    def __init__(self, message: str = "Too many requests.", retry_after: int = 0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Principal lookup
# ---------------------------------------------------------------------------


class InvalidCredentialsError(AuthError):
    code = "invalid_credentials"


class PrincipalDisabledError(AuthError):
    code = "principal_disabled"


class PrincipalNotFoundError(AuthError):
    code = "principal_not_found"


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class StoreUnavailableError(AuthError):
    """A backing store (TTL store or relational store) failed or timed out.

    Components decide per call site whether to fail open or closed.
    """

    code = "store_unavailable"


class KeyMaterialError(AuthError):
    """RSA key material is missing, unreadable, or mismatched.

    Startup-class failure: never caught inside the core.
    """

    code = "key_material"
