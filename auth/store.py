"""
auth/store.py -- SQLAlchemy Core persistence for principals and refresh tokens.

Pattern: Repository + Data Mapper.
UserStore and RefreshTokenStore are the repositories; _row_to_principal /
_row_to_refresh_token are the mappers. Nothing above this module touches SQL.

Refresh tokens are the system of record for long-lived sessions, so every
database failure on this path surfaces as StoreUnavailableError (fail
closed): no credential is issued or honoured when the database is unhealthy.

Cap enforcement (read valid tokens -> revoke oldest -> insert) is a
read-then-write sequence. Two concurrent logins by the same principal can
leave it one over the cap; the next login or cleanup sweep heals that.

Timestamps are stored as naive UTC DateTime columns and handed out as
timezone-aware UTC datetimes.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
import secrets
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Protocol

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.device import DeviceContext
from auth.errors import StoreUnavailableError
from auth.models import CleanupResult, Principal, RefreshToken, TokenStats, ordered_roles

logger = logging.getLogger("sessionguard.refresh")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'sessionguard_auth.db'}"

DEFAULT_REFRESH_TTL = timedelta(days=180)
DEFAULT_MAX_PER_PRINCIPAL = 5
DEFAULT_REVOKED_RETENTION = timedelta(days=30)

# 64 random bytes -> 512 bits -> 86 base64url chars, no padding.
_TOKEN_BYTES = 64

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),
    Column("roles", Text, nullable=False, server_default='["ROLE_USER"]'),  # JSON list, ordered
    Column("enabled", Boolean, nullable=False, server_default="1"),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("principal_id", Integer, nullable=False, index=True),
    Column("expires_at", DateTime, nullable=False, index=True),
    Column("is_revoked", Boolean, nullable=False, server_default="0"),
    Column("device_info", String(100)),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("created_at", DateTime, nullable=False),
    Column("last_used_at", DateTime),
    Column("revoked_at", DateTime),
)


# ---------------------------------------------------------------------------
# Engine / helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind the cleanup sweep."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str = _DEFAULT_DB_URL) -> Engine:
    """Create an engine and make sure both tables exist."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def generate_refresh_token_value() -> str:
    return secrets.token_urlsafe(_TOKEN_BYTES)


@contextmanager
def _unavailable_on_error(action: str) -> Iterator[None]:
    """Turn SQLAlchemyError into StoreUnavailableError, logging at ERROR."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Refresh token %s failed: %s", action, exc)
        raise StoreUnavailableError("refresh token store unavailable") from exc


# ---------------------------------------------------------------------------
# User directory
# ---------------------------------------------------------------------------


class UserDirectory(Protocol):
    """Read-only view of principals consumed by the authentication service."""

    def lookup_by_email(self, email: str) -> Optional[Principal]: ...

    def get_by_id(self, principal_id: int) -> Optional[Principal]: ...


class UserStore:
    """SQL implementation of UserDirectory.

    Emails are stored lower-cased; lookups are case-insensitive as a result.

    Usage:
        store = UserStore(make_engine("sqlite:///:memory:"))
        uid = store.create_user(Principal(email="a@b.com", password_hash=hash_password("pw")))
        principal = store.lookup_by_email("A@B.com")
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = _utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def create_user(self, principal: Principal) -> int:
        """Insert a principal and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=principal.email.strip().lower(),
                    password_hash=principal.password_hash,
                    roles=json.dumps(list(ordered_roles(principal.roles))),
                    enabled=principal.enabled,
                    email_verified=principal.email_verified,
                    created_at=_to_db(self._clock()),
                )
            )
            return result.inserted_primary_key[0]

    def lookup_by_email(self, email: str) -> Optional[Principal]:
        if not email or not email.strip():
            return None
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_id(self, principal_id: int) -> Optional[Principal]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def set_enabled(self, principal_id: int, enabled: bool) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == principal_id).values(enabled=enabled))
        return result.rowcount > 0

    def mark_email_verified(self, principal_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == principal_id).values(email_verified=True)
            )
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Durable, device-bound, rotating refresh credentials with a per-principal cap."""

    def __init__(
        self,
        engine: Engine,
        *,
        ttl: timedelta = DEFAULT_REFRESH_TTL,
        max_per_principal: int = DEFAULT_MAX_PER_PRINCIPAL,
        revoked_retention: timedelta = DEFAULT_REVOKED_RETENTION,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_per_principal < 1:
            raise ValueError("max_per_principal must be at least 1")
        self.engine = engine
        self.ttl = ttl
        self.max_per_principal = max_per_principal
        self.revoked_retention = revoked_retention
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def _valid_clause(self, now: datetime):
        return and_(_refresh_tokens.c.is_revoked.is_(False), _refresh_tokens.c.expires_at > _to_db(now))

    # ------------------------------------------------------------------
    # Create / rotate
    # ------------------------------------------------------------------

    def create(self, principal: Principal, device: DeviceContext | None = None) -> RefreshToken:
        """Issue a refresh token for principal, evicting the oldest valid ones over the cap.

        Raises StoreUnavailableError if the database write fails.
        """
        if principal.id is None:
            raise ValueError("principal.id is required to issue a refresh token")
        return self._create_for(principal.id, device or DeviceContext())

    def _create_for(self, principal_id: int, device: DeviceContext) -> RefreshToken:
        now = self._now()
        record = RefreshToken(
            token=generate_refresh_token_value(),
            principal_id=principal_id,
            expires_at=now + self.ttl,
            device_info=device.device_info,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            created_at=now,
            last_used_at=now,
        )
        try:
            with self.engine.begin() as conn:
                evicted = self._enforce_cap(conn, principal_id, now)
                result = conn.execute(
                    _refresh_tokens.insert().values(
                        token=record.token,
                        principal_id=principal_id,
                        expires_at=_to_db(record.expires_at),
                        is_revoked=False,
                        device_info=record.device_info,
                        ip_address=record.ip_address,
                        user_agent=record.user_agent,
                        created_at=_to_db(now),
                        last_used_at=_to_db(now),
                    )
                )
                record.id = result.inserted_primary_key[0]
        except SQLAlchemyError as exc:
            logger.error("Refresh token write failed for principal_id=%s: %s", principal_id, exc)
            raise StoreUnavailableError("refresh token store unavailable") from exc
        if evicted:
            logger.info("Evicted %d oldest refresh token(s) for principal_id=%s", evicted, principal_id)
        logger.info("Refresh token created for principal_id=%s (id=%s, %s)", principal_id, record.id, record.device_info)
        return record

    def _enforce_cap(self, conn, principal_id: int, now: datetime) -> int:
        """Revoke the oldest valid tokens until max_per_principal - 1 remain."""
        rows = conn.execute(
            select(_refresh_tokens.c.id)
            .where(and_(_refresh_tokens.c.principal_id == principal_id, self._valid_clause(now)))
            .order_by(_refresh_tokens.c.created_at.asc(), _refresh_tokens.c.id.asc())
        ).fetchall()
        excess = len(rows) - self.max_per_principal + 1
        if excess <= 0:
            return 0
        ids = [r.id for r in rows[:excess]]
        conn.execute(
            _refresh_tokens.update()
            .where(_refresh_tokens.c.id.in_(ids))
            .values(is_revoked=True, revoked_at=_to_db(now))
        )
        return len(ids)

    def rotate(self, token: str, device: DeviceContext | None = None) -> Optional[RefreshToken]:
        """Exchange a valid refresh token for a new one. Returns None if token is not valid.

        Revoke-then-create: if the revoke loses a race with a concurrent
        rotation, this call returns None rather than minting a second child.
        """
        current = self.find_valid(token)
        if current is None:
            return None
        if not self.revoke(token):
            return None
        return self._create_for(current.principal_id, device or DeviceContext())

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find_valid(self, token: Optional[str]) -> Optional[RefreshToken]:
        """Return the token row if unrevoked and unexpired, bumping last_used_at.

        Blank input short-circuits without a query.
        """
        if token is None or not token.strip():
            return None
        now = self._now()
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    _refresh_tokens.select().where(and_(_refresh_tokens.c.token == token, self._valid_clause(now)))
                ).fetchone()
                if row is None:
                    return None
                conn.execute(
                    _refresh_tokens.update().where(_refresh_tokens.c.id == row.id).values(last_used_at=_to_db(now))
                )
        except SQLAlchemyError as exc:
            logger.error("Refresh token lookup failed: %s", exc)
            raise StoreUnavailableError("refresh token store unavailable") from exc
        record = _row_to_refresh_token(row)
        record.last_used_at = now
        return record

    def list_valid(self, principal_id: int) -> list[RefreshToken]:
        """Valid tokens for a principal, newest first."""
        now = self._now()
        with _unavailable_on_error("list valid"), self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(and_(_refresh_tokens.c.principal_id == principal_id, self._valid_clause(now)))
                .order_by(_refresh_tokens.c.created_at.desc(), _refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def count_valid(self, principal_id: int) -> int:
        now = self._now()
        with _unavailable_on_error("count valid"), self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_refresh_tokens)
                .where(and_(_refresh_tokens.c.principal_id == principal_id, self._valid_clause(now)))
            ).scalar()
        return result or 0

    def has_reached_limit(self, principal_id: int) -> bool:
        return self.count_valid(principal_id) >= self.max_per_principal

    def stats(self, principal_id: int) -> TokenStats:
        """Total / valid / expired / revoked counts for one principal.

        A token that is both revoked and expired counts as revoked.
        """
        now = _to_db(self._now())
        with _unavailable_on_error("stats"), self.engine.connect() as conn:
            rows = conn.execute(
                select(_refresh_tokens.c.is_revoked, _refresh_tokens.c.expires_at).where(
                    _refresh_tokens.c.principal_id == principal_id
                )
            ).fetchall()
        stats = TokenStats(total=len(rows))
        for row in rows:
            if row.is_revoked:
                stats.revoked += 1
            elif row.expires_at <= now:
                stats.expired += 1
            else:
                stats.valid += 1
        return stats

    def expiring_soon(self, within: timedelta = timedelta(days=7)) -> list[RefreshToken]:
        now = self._now()
        with _unavailable_on_error("expiring soon"), self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(and_(self._valid_clause(now), _refresh_tokens.c.expires_at <= _to_db(now + within)))
                .order_by(_refresh_tokens.c.expires_at.asc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def inactive(self, idle: timedelta = timedelta(days=30)) -> list[RefreshToken]:
        """Valid tokens not used for at least `idle`."""
        now = self._now()
        with _unavailable_on_error("inactive"), self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(and_(self._valid_clause(now), _refresh_tokens.c.last_used_at < _to_db(now - idle)))
                .order_by(_refresh_tokens.c.last_used_at.asc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, token: Optional[str]) -> bool:
        """Revoke one token. Unknown or already-revoked tokens are a no-op (False)."""
        if token is None or not token.strip():
            return False
        with _unavailable_on_error("revoke"), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(and_(_refresh_tokens.c.token == token, _refresh_tokens.c.is_revoked.is_(False)))
                .values(is_revoked=True, revoked_at=_to_db(self._now()))
            )
        if result.rowcount:
            logger.info("Refresh token revoked")
        return result.rowcount > 0

    def revoke_all(self, principal_id: int) -> int:
        with _unavailable_on_error("revoke all"), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(and_(_refresh_tokens.c.principal_id == principal_id, _refresh_tokens.c.is_revoked.is_(False)))
                .values(is_revoked=True, revoked_at=_to_db(self._now()))
            )
        logger.info("Revoked %d refresh token(s) for principal_id=%s", result.rowcount, principal_id)
        return result.rowcount

    def revoke_all_except(self, principal_id: int, keep_token: str) -> int:
        with _unavailable_on_error("revoke all except"), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    and_(
                        _refresh_tokens.c.principal_id == principal_id,
                        _refresh_tokens.c.is_revoked.is_(False),
                        _refresh_tokens.c.token != keep_token,
                    )
                )
                .values(is_revoked=True, revoked_at=_to_db(self._now()))
            )
        logger.info("Revoked %d other refresh token(s) for principal_id=%s", result.rowcount, principal_id)
        return result.rowcount

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup(self, now: Optional[datetime] = None) -> CleanupResult:
        """Hard-delete expired rows and revoked rows older than the retention window.

        Touches only rows no request can use any more, so it is safe to run
        alongside live traffic.
        """
        now = now or self._now()
        cutoff = _to_db(now - self.revoked_retention)
        with _unavailable_on_error("cleanup"), self.engine.begin() as conn:
            expired = conn.execute(
                _refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= _to_db(now))
            ).rowcount
            revoked = conn.execute(
                _refresh_tokens.delete().where(
                    and_(
                        _refresh_tokens.c.is_revoked.is_(True),
                        or_(
                            _refresh_tokens.c.revoked_at < cutoff,
                            and_(_refresh_tokens.c.revoked_at.is_(None), _refresh_tokens.c.created_at < cutoff),
                        ),
                    )
                )
            ).rowcount
        result = CleanupResult(expired=expired, revoked=revoked)
        logger.info("Refresh token cleanup: %d expired, %d revoked removed", expired, revoked)
        return result

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    try:
        roles = ordered_roles(json.loads(row.roles or "[]"))
    except (TypeError, ValueError):
        roles = ()
    return Principal(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        roles=roles,
        enabled=bool(row.enabled),
        email_verified=bool(row.email_verified),
        created_at=_from_db(row.created_at),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token=row.token,
        principal_id=row.principal_id,
        expires_at=_from_db(row.expires_at),
        is_revoked=bool(row.is_revoked),
        device_info=row.device_info or "Unknown Device",
        ip_address=row.ip_address or "Unknown IP",
        user_agent=row.user_agent or "Unknown",
        created_at=_from_db(row.created_at),
        last_used_at=_from_db(row.last_used_at),
        revoked_at=_from_db(row.revoked_at),
    )
