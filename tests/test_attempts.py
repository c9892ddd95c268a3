"""Unit tests for auth/attempts.py -- AttemptTracker.

Covers:
- Clean -> Accumulating -> CaptchaRequired at the threshold
- record_success() returns to Clean (counter and flag deleted)
- the window slides: every failure refreshes the counter TTL
- the captcha flag survives independently of the counter
- password-reset rate limit: atomic acquire, remaining seconds, expiry
- purposes are tracked independently; login is never rate limited
- store failures degrade to "no count, no captcha"
"""

from unittest.mock import MagicMock

import pytest

from auth.attempts import AttemptTracker, Purpose, make_identifier
from auth.errors import StoreUnavailableError

IP = "10.0.0.1"


@pytest.fixture
def tracker(ttl_store) -> AttemptTracker:
    return AttemptTracker(ttl_store, max_attempts=5, window_seconds=1800, rate_limit_seconds=60)


class TestStateMachine:
    def test_threshold_scenario(self, tracker):
        for expected in range(1, 5):
            assert tracker.record_failure(IP) == expected
            assert tracker.is_captcha_required(IP) is False
        assert tracker.record_failure(IP) == 5
        assert tracker.is_captcha_required(IP) is True
        tracker.record_success(IP)
        assert tracker.get_attempt_count(IP) == 0
        assert tracker.is_captcha_required(IP) is False

    def test_remaining_attempts(self, tracker):
        assert tracker.remaining_attempts(IP) == 5
        tracker.record_failure(IP)
        tracker.record_failure(IP)
        assert tracker.remaining_attempts(IP) == 3

    def test_sliding_window(self, tracker, clock):
        tracker.record_failure(IP)
        clock.advance(1700)
        tracker.record_failure(IP)
        clock.advance(1700)
        assert tracker.get_attempt_count(IP) == 2
        clock.advance(101)
        assert tracker.get_attempt_count(IP) == 0

    def test_flag_outlives_deleted_counter(self, tracker, ttl_store):
        for _ in range(5):
            tracker.record_failure(IP)
        ttl_store.delete(f"attempts:login:{IP}")
        assert tracker.get_attempt_count(IP) == 0
        assert tracker.is_captcha_required(IP) is True

    def test_purposes_independent(self, tracker):
        for _ in range(5):
            tracker.record_failure(IP, Purpose.LOGIN)
        assert tracker.is_captcha_required(IP, Purpose.LOGIN) is True
        assert tracker.is_captcha_required(IP, Purpose.PASSWORD_RESET) is False
        assert tracker.get_attempt_count(IP, Purpose.PASSWORD_RESET) == 0

    def test_statistics(self, tracker):
        tracker.record_failure(IP)
        tracker.record_success(IP, Purpose.PASSWORD_RESET)
        stats = tracker.statistics(IP)
        assert stats.login_attempts == 1
        assert stats.password_reset_attempts == 0
        assert stats.login_captcha_required is False
        assert stats.password_reset_rate_limited is True


class TestRateLimit:
    def test_acquire_once_per_window(self, tracker, clock):
        assert tracker.acquire_rate_limit(IP) is True
        assert tracker.acquire_rate_limit(IP) is False
        assert tracker.is_rate_limited(IP) is True
        assert tracker.rate_limit_remaining_seconds(IP) == 60
        clock.advance(59.5)
        assert tracker.rate_limit_remaining_seconds(IP) == 1
        clock.advance(0.5)
        assert tracker.is_rate_limited(IP) is False
        assert tracker.acquire_rate_limit(IP) is True

    def test_success_sets_rate_limit_for_password_reset_only(self, tracker):
        tracker.record_success(IP, Purpose.LOGIN)
        assert tracker.is_rate_limited(IP) is False
        tracker.record_success(IP, Purpose.PASSWORD_RESET)
        assert tracker.is_rate_limited(IP) is True

    def test_login_never_rate_limited(self, tracker):
        assert tracker.acquire_rate_limit(IP, Purpose.LOGIN) is True
        assert tracker.acquire_rate_limit(IP, Purpose.LOGIN) is True
        assert tracker.is_rate_limited(IP, Purpose.LOGIN) is False
        assert tracker.rate_limit_remaining_seconds(IP, Purpose.LOGIN) == 0

    def test_rate_limit_independent_of_counter(self, tracker):
        tracker.acquire_rate_limit(IP)
        assert tracker.get_attempt_count(IP, Purpose.PASSWORD_RESET) == 0
        assert tracker.is_captcha_required(IP, Purpose.PASSWORD_RESET) is False


class TestDegraded:
    @pytest.fixture
    def broken(self) -> AttemptTracker:
        store = MagicMock()
        for name in ("get", "set", "set_if_absent", "delete", "exists", "ttl_remaining", "increment"):
            getattr(store, name).side_effect = StoreUnavailableError("down")
        return AttemptTracker(store)

    def test_store_failures_degrade(self, broken):
        assert broken.record_failure(IP) == 0
        assert broken.get_attempt_count(IP) == 0
        assert broken.is_captcha_required(IP) is False
        assert broken.acquire_rate_limit(IP) is True
        assert broken.is_rate_limited(IP) is False
        assert broken.rate_limit_remaining_seconds(IP) == 0
        broken.record_success(IP)


def test_make_identifier():
    assert make_identifier("10.0.0.1") == "10.0.0.1:anonymous"
    assert make_identifier("10.0.0.1", "a@b.com") == "10.0.0.1:a@b.com"
    assert make_identifier(None) == "unknown:anonymous"
