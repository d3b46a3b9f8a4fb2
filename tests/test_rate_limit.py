"""Tests for sliding-window lockout."""

from datetime import timedelta

import pytest

from warden.service.clock import ManualClock
from warden.service.errors import ErrorKind
from warden.service.rate_limit import LOGIN, PASSWORD_RESET, RateLimitGuard, normalize_email
from warden.storage.memory import MemoryStore


@pytest.fixture
def ledger():
    return MemoryStore()


@pytest.fixture
def guard(ledger, clock):
    return RateLimitGuard(ledger, clock=clock, config=LOGIN)


def _fail(guard, times, email="victim@example.com", ip="203.0.113.9"):
    for _ in range(times):
        guard.record_attempt(email, ip, False)


class TestLockout:
    def test_below_threshold_is_allowed(self, guard):
        _fail(guard, 4)

        assert guard.check("victim@example.com", "203.0.113.9").limited is False
        assert guard.enforce("victim@example.com").ok

    def test_threshold_locks_email(self, guard, clock):
        _fail(guard, 5)

        status = guard.check("victim@example.com")

        assert status.limited
        assert status.locked_until == clock.now() + timedelta(minutes=30)
        assert status.retry_after == 30 * 60

    def test_enforce_reports_retry_after(self, guard):
        _fail(guard, 5)

        result = guard.enforce("VICTIM@example.com ")

        assert result.kind is ErrorKind.RATE_LIMITED
        assert result.failure.detail["retry_after"] == 1800

    def test_origin_is_tracked_independently(self, guard):
        for index in range(5):
            guard.record_attempt(f"user{index}@example.com", "198.51.100.7", False)

        assert guard.check("fresh@example.com", "198.51.100.7").limited
        assert not guard.check("fresh@example.com", "198.51.100.8").limited

    def test_failures_spread_beyond_window_do_not_lock(self, guard, clock):
        for _ in range(5):
            guard.record_attempt("victim@example.com", None, False)
            clock.advance(minutes=4)

        assert guard.check("victim@example.com").limited is False

    def test_lock_expires_after_lockout(self, guard, clock):
        _fail(guard, 5)
        clock.advance(minutes=30, seconds=1)

        assert guard.check("victim@example.com").limited is False

    def test_successes_do_not_count(self, guard):
        for _ in range(10):
            guard.record_attempt("victim@example.com", "203.0.113.9", True)

        assert guard.check("victim@example.com", "203.0.113.9").limited is False

    def test_clear_forgets_failures(self, guard):
        _fail(guard, 5)

        assert guard.clear("victim@example.com") == 5
        assert guard.check("victim@example.com").limited is False

    def test_scopes_do_not_mix(self, ledger, clock, guard):
        reset_guard = RateLimitGuard(ledger, clock=clock, config=PASSWORD_RESET)
        _fail(guard, 5)

        assert reset_guard.check("victim@example.com").limited is False


class TestLedgerFailures:
    class BrokenLedger:
        def list_login_attempts(self, **kwargs):
            raise ConnectionError("ledger offline")

        def record_login_attempt(self, attempt):
            raise ConnectionError("ledger offline")

    def test_check_fails_open(self):
        guard = RateLimitGuard(self.BrokenLedger(), clock=ManualClock())

        assert guard.check("victim@example.com", "203.0.113.9").limited is False

    def test_record_swallows_ledger_errors(self):
        guard = RateLimitGuard(self.BrokenLedger(), clock=ManualClock())

        guard.record_attempt("victim@example.com", "203.0.113.9", False)


class TestReporting:
    def test_login_stats(self, guard):
        guard.record_attempt("victim@example.com", "10.0.0.1", True)
        guard.record_attempt("victim@example.com", "10.0.0.2", False)
        guard.record_attempt("victim@example.com", "10.0.0.1", False)

        stats = guard.login_stats("victim@example.com")

        assert (stats.total, stats.successful, stats.failed) == (3, 1, 2)
        assert stats.recent_ip_addresses == ["10.0.0.1", "10.0.0.2"]

    def test_cleanup_prunes_old_attempts(self, guard, clock):
        _fail(guard, 2)
        clock.advance(days=31)
        _fail(guard, 1)

        assert guard.cleanup() == 2
        assert guard.login_stats("victim@example.com").total == 1


def test_normalize_email():
    assert normalize_email("  Mixed@Example.COM ") == "mixed@example.com"
    assert normalize_email(None) == ""
