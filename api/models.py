"""
API response models for SessionGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from auth.models import TokenClaims


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


class SessionResponse(BaseModel):
    """Response for GET /api/v1/session -- the caller's verified claims."""

    model_config = ConfigDict(frozen=True)

    username: str
    user_id: Optional[int] = None
    roles: list[str]
    jti: Optional[str] = None
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> "SessionResponse":
        return cls(
            username=claims.subject,
            user_id=claims.user_id,
            roles=list(claims.roles),
            jti=claims.jti,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
        )
