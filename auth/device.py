"""
auth/device.py -- Best-effort device context for refresh-token rows.

The values recorded here are informational only (shown on "active sessions"
screens). Nothing in the core makes a security decision from them: headers
like X-Forwarded-For are client-controlled unless a trusted proxy rewrites
them.

IP precedence: first X-Forwarded-For entry -> X-Real-IP -> socket peer.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from starlette.requests import Request

UNKNOWN_DEVICE = "Unknown Device"
UNKNOWN_IP = "Unknown IP"
UNKNOWN_AGENT = "Unknown"

# First match wins; order matters ("mobile" before "tablet" mirrors UA strings
# such as iPad Safari that advertise both).
_DEVICE_MARKERS: tuple[tuple[str, str], ...] = (
    ("mobile", "Mobile Device"),
    ("tablet", "Tablet"),
    ("postman", "Postman"),
    ("curl", "cURL"),
)


@dataclass(frozen=True)
class DeviceContext:
    device_info: str = UNKNOWN_DEVICE
    ip_address: str = UNKNOWN_IP
    user_agent: str = UNKNOWN_AGENT

    @classmethod
    def from_headers(cls, headers: Mapping[str, str] | None, remote_addr: str | None = None) -> "DeviceContext":
        """Build a context from raw headers (case-insensitive) and the peer address."""
        normalized = {k.lower(): v for k, v in (headers or {}).items()}
        user_agent = normalized.get("user-agent") or None
        return cls(
            device_info=classify_device(user_agent),
            ip_address=extract_ip(normalized, remote_addr),
            user_agent=user_agent or UNKNOWN_AGENT,
        )

    @classmethod
    def from_request(cls, request: Request | None) -> "DeviceContext":
        if request is None:
            return cls()
        remote = request.client.host if request.client else None
        return cls.from_headers(dict(request.headers), remote)


def classify_device(user_agent: str | None) -> str:
    if not user_agent:
        return UNKNOWN_DEVICE
    lowered = user_agent.lower()
    for marker, label in _DEVICE_MARKERS:
        if marker in lowered:
            return label
    return "Desktop"


def extract_ip(headers: Mapping[str, str], remote_addr: str | None) -> str:
    """headers must already have lower-case keys."""
    forwarded = headers.get("x-forwarded-for", "")
    if forwarded.strip():
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    return remote_addr or UNKNOWN_IP
