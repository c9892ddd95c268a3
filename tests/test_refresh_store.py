"""Unit tests for auth/store.py -- RefreshTokenStore and UserStore.

Covers:
- create() issues 512-bit URL-safe tokens bound to device context
- the per-principal cap evicts the oldest valid tokens first
- find_valid() honours revocation, expiry and blank input, bumps last_used_at
- revoke() is idempotent; revoke_all() / revoke_all_except() return counts
- cleanup() deletes expired rows and revoked rows past retention only
- stats(), list_valid(), expiring_soon(), inactive(), rotate()
- database failures on every read and write path raise StoreUnavailableError
- UserStore create/lookup (case-insensitive email) and role ordering
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from auth.device import DeviceContext
from auth.errors import StoreUnavailableError
from auth.models import Principal
from auth.store import RefreshTokenStore

# ---------------------------------------------------------------------------
# create / cap
# ---------------------------------------------------------------------------


class TestCreate:
    def test_token_shape_and_device(self, refresh_store, principal, clock):
        device = DeviceContext(device_info="cURL", ip_address="10.0.0.1", user_agent="curl/8.0")
        record = refresh_store.create(principal, device)
        assert len(record.token) == 86
        assert "=" not in record.token and "+" not in record.token and "/" not in record.token
        assert record.principal_id == principal.id
        assert record.expires_at == clock() + timedelta(days=180)
        assert record.ip_address == "10.0.0.1"
        assert record.id is not None

    def test_default_device_context(self, refresh_store, principal):
        record = refresh_store.create(principal)
        assert record.device_info == "Unknown Device"
        assert record.ip_address == "Unknown IP"
        assert record.user_agent == "Unknown"

    def test_principal_without_id_rejected(self, refresh_store):
        with pytest.raises(ValueError):
            refresh_store.create(Principal(email="x@y.com"))

    def test_cap_evicts_oldest(self, refresh_store, principal, clock):
        tokens = []
        for _ in range(6):
            tokens.append(refresh_store.create(principal).token)
            clock.advance(1)
        assert refresh_store.count_valid(principal.id) == 5
        assert refresh_store.find_valid(tokens[0]) is None
        for token in tokens[1:]:
            assert refresh_store.find_valid(token) is not None

    def test_cap_breaks_ties_by_insert_order(self, refresh_store, principal):
        tokens = [refresh_store.create(principal).token for _ in range(7)]
        assert refresh_store.count_valid(principal.id) == 5
        assert refresh_store.find_valid(tokens[0]) is None
        assert refresh_store.find_valid(tokens[1]) is None
        assert refresh_store.find_valid(tokens[2]) is not None

    def test_has_reached_limit(self, refresh_store, principal):
        for _ in range(4):
            refresh_store.create(principal)
        assert refresh_store.has_reached_limit(principal.id) is False
        refresh_store.create(principal)
        assert refresh_store.has_reached_limit(principal.id) is True

    def test_write_failure_fails_closed(self, principal, clock):
        engine = MagicMock()
        engine.begin.side_effect = OperationalError("INSERT", {}, Exception("disk I/O error"))
        store = RefreshTokenStore(engine, clock=clock)
        with pytest.raises(StoreUnavailableError):
            store.create(principal)

    @pytest.mark.parametrize(
        "call",
        [
            lambda store: store.revoke("some-token"),
            lambda store: store.revoke_all(1),
            lambda store: store.revoke_all_except(1, "keep"),
            lambda store: store.cleanup(),
        ],
        ids=["revoke", "revoke_all", "revoke_all_except", "cleanup"],
    )
    def test_revocation_failure_fails_closed(self, clock, call):
        engine = MagicMock()
        engine.begin.side_effect = OperationalError("UPDATE", {}, Exception("disk I/O error"))
        store = RefreshTokenStore(engine, clock=clock)
        with pytest.raises(StoreUnavailableError):
            call(store)

    @pytest.mark.parametrize(
        "call",
        [
            lambda store: store.list_valid(1),
            lambda store: store.count_valid(1),
            lambda store: store.stats(1),
            lambda store: store.expiring_soon(),
            lambda store: store.inactive(),
        ],
        ids=["list_valid", "count_valid", "stats", "expiring_soon", "inactive"],
    )
    def test_read_failure_raises_store_unavailable(self, clock, call):
        engine = MagicMock()
        engine.connect.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
        store = RefreshTokenStore(engine, clock=clock)
        with pytest.raises(StoreUnavailableError):
            call(store)


# ---------------------------------------------------------------------------
# find / revoke
# ---------------------------------------------------------------------------


class TestFindRevoke:
    def test_find_then_revoke_scenario(self, refresh_store, principal):
        token = refresh_store.create(principal).token
        assert refresh_store.find_valid(token) is not None
        assert refresh_store.revoke(token) is True
        assert refresh_store.find_valid(token) is None
        assert refresh_store.revoke(token) is False

    @pytest.mark.parametrize("token", [None, "", "   "])
    def test_blank_input(self, refresh_store, token):
        assert refresh_store.find_valid(token) is None
        assert refresh_store.revoke(token) is False

    def test_unknown_token(self, refresh_store):
        assert refresh_store.find_valid("does-not-exist") is None
        assert refresh_store.revoke("does-not-exist") is False

    def test_expired_not_found(self, refresh_store, principal, clock):
        token = refresh_store.create(principal).token
        clock.advance(days=180)
        assert refresh_store.find_valid(token) is None

    def test_last_used_slides(self, refresh_store, principal, clock):
        token = refresh_store.create(principal).token
        clock.advance(hours=5)
        found = refresh_store.find_valid(token)
        assert found.last_used_at == clock()
        assert refresh_store.list_valid(principal.id)[0].last_used_at == clock()

    def test_revoke_all(self, refresh_store, principal):
        for _ in range(3):
            refresh_store.create(principal)
        assert refresh_store.revoke_all(principal.id) == 3
        assert refresh_store.count_valid(principal.id) == 0
        assert refresh_store.revoke_all(principal.id) == 0

    def test_revoke_all_except(self, refresh_store, principal):
        keep = refresh_store.create(principal).token
        refresh_store.create(principal)
        refresh_store.create(principal)
        assert refresh_store.revoke_all_except(principal.id, keep) == 2
        assert [t.token for t in refresh_store.list_valid(principal.id)] == [keep]

    def test_rotate(self, refresh_store, principal):
        old = refresh_store.create(principal).token
        new = refresh_store.rotate(old, DeviceContext(device_info="Tablet"))
        assert new is not None and new.token != old
        assert new.device_info == "Tablet"
        assert refresh_store.find_valid(old) is None
        assert refresh_store.rotate(old) is None


# ---------------------------------------------------------------------------
# cleanup / reporting
# ---------------------------------------------------------------------------


class TestCleanup:
    def test_cleanup_removes_expired_and_old_revoked(self, refresh_store, principal, clock):
        refresh_store.create(principal)
        revoked_old = refresh_store.create(principal).token
        refresh_store.revoke(revoked_old)
        clock.advance(days=31)
        revoked_recent = refresh_store.create(principal).token
        refresh_store.revoke(revoked_recent)
        live = refresh_store.create(principal).token

        result = refresh_store.cleanup()
        assert result.expired == 0
        assert result.revoked == 1
        assert result.total == 1
        stats = refresh_store.stats(principal.id)
        assert stats.total == 3
        assert stats.revoked == 1
        assert refresh_store.find_valid(live) is not None

    def test_cleanup_removes_expired(self, refresh_store, principal, clock):
        refresh_store.create(principal)
        clock.advance(days=181)
        result = refresh_store.cleanup()
        assert result.expired == 1
        assert refresh_store.stats(principal.id).total == 0

    def test_stats(self, refresh_store, principal, clock):
        a = refresh_store.create(principal).token
        refresh_store.create(principal)
        refresh_store.revoke(a)
        stats = refresh_store.stats(principal.id)
        assert (stats.total, stats.valid, stats.expired, stats.revoked) == (2, 1, 0, 1)
        clock.advance(days=181)
        stats = refresh_store.stats(principal.id)
        assert (stats.valid, stats.expired, stats.revoked) == (0, 1, 1)

    def test_list_valid_newest_first(self, refresh_store, principal, clock):
        first = refresh_store.create(principal).token
        clock.advance(10)
        second = refresh_store.create(principal).token
        assert [t.token for t in refresh_store.list_valid(principal.id)] == [second, first]

    def test_expiring_soon_and_inactive(self, refresh_store, principal, clock):
        token = refresh_store.create(principal).token
        assert refresh_store.expiring_soon() == []
        assert refresh_store.inactive() == []
        clock.advance(days=175)
        assert [t.token for t in refresh_store.expiring_soon()] == [token]
        assert [t.token for t in refresh_store.inactive()] == [token]


# ---------------------------------------------------------------------------
# UserStore
# ---------------------------------------------------------------------------


class TestUserStore:
    def test_lookup_case_insensitive(self, users, principal):
        found = users.lookup_by_email("  A@B.COM ")
        assert found is not None
        assert found.id == principal.id
        assert found.roles == ("ROLE_USER", "ROLE_ADMIN")

    def test_lookup_missing(self, users):
        assert users.lookup_by_email("nobody@b.com") is None
        assert users.lookup_by_email("") is None
        assert users.get_by_id(9999) is None

    def test_set_enabled_and_verified(self, users, principal):
        assert users.set_enabled(principal.id, False) is True
        assert users.mark_email_verified(principal.id) is True
        reloaded = users.get_by_id(principal.id)
        assert reloaded.enabled is False
        assert reloaded.email_verified is True
