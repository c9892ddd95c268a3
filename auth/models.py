"""
auth/models.py -- Domain dataclasses for the session-security core.

Pattern: Data class (pure data container, near-zero logic). Stores, the token
issuer and the orchestration service do the work; these types only carry shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TokenType(str, Enum):
    """Closed set of values for the JWT `type` claim."""

    ACCESS = "access"
    REFRESH = "refresh"


def ordered_roles(roles: Iterable[str]) -> tuple[str, ...]:
    """De-duplicate roles while keeping first-seen order."""
    return tuple(dict.fromkeys(str(r) for r in roles))


@dataclass
class Principal:
    """An authenticated identity as seen by this core.

    Read-only here: the user directory owns these records. The only fields the
    token issuer reads are id, email and roles.
    """

    email: str
    id: int | None = None
    password_hash: str | None = None
    roles: tuple[str, ...] = ("ROLE_USER",)
    enabled: bool = True
    email_verified: bool = False
    created_at: datetime | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Typed view of an access/refresh JWT claim set.

    extra carries opaque string pairs only; anything structured belongs in a
    named field.
    """

    subject: str
    issuer: str
    issued_at: datetime
    expires_at: datetime
    token_type: TokenType
    user_id: int | None = None
    roles: tuple[str, ...] = ()
    jti: str | None = None
    extra: Mapping[str, str] = field(default_factory=dict)

    def get(self, name: str):
        """Generic accessor by claim name (JWT short names or field names)."""
        aliases = {
            "sub": "subject",
            "iss": "issuer",
            "iat": "issued_at",
            "exp": "expires_at",
            "type": "token_type",
        }
        attr = aliases.get(name, name)
        if attr in self.__dataclass_fields__ and attr != "extra":
            return getattr(self, attr)
        return self.extra.get(name)


@dataclass
class RefreshToken:
    """A persisted, device-bound refresh credential.

    token is the opaque value handed to the client (512 bits, base64url, no
    padding). is_revoked rows stay in the table until cleanup() reaps them.
    """

    token: str
    principal_id: int
    expires_at: datetime
    id: int | None = None
    is_revoked: bool = False
    device_info: str = "Unknown Device"
    ip_address: str = "Unknown IP"
    user_agent: str = "Unknown"
    created_at: datetime | None = None
    last_used_at: datetime | None = None
    revoked_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_valid(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass
class TokenStats:
    total: int = 0
    valid: int = 0
    expired: int = 0
    revoked: int = 0


@dataclass
class CleanupResult:
    expired: int = 0
    revoked: int = 0

    @property
    def total(self) -> int:
        return self.expired + self.revoked


@dataclass
class TokenPair:
    """What a successful login or refresh hands back to the caller."""

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"
    refresh_expires_at: datetime | None = None
