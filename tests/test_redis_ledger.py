"""Tests for the Redis-backed attempt ledger against an in-process fake client."""

import fnmatch
from datetime import timedelta

import pytest

from warden.service.rate_limit import LOGIN, RateLimitGuard
from warden.storage.redis_cache import RedisAttemptLedger
from warden.storage.models import LoginAttempt, new_id


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def zadd(self, key, mapping):
        self.ops.append(("zadd", key, mapping))
        return self

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))
        return self

    def execute(self):
        for op, key, arg in self.ops:
            if op == "zadd":
                self.client.zadd(key, arg)
            else:
                self.client.expirations[key] = arg
        self.ops = []


class FakeRedis:
    """Just enough of the sorted-set API for the ledger."""

    def __init__(self):
        self.sets = {}
        self.expirations = {}
        self.pings = 0

    def ping(self):
        self.pings += 1
        return True

    def pipeline(self):
        return FakePipeline(self)

    def zadd(self, key, mapping):
        self.sets.setdefault(key, {}).update(mapping)

    @staticmethod
    def _bound(value, *, upper):
        if value in ("-inf", "+inf"):
            return float(value)
        text = str(value)
        if text.startswith("("):
            number = float(text[1:])
            return number - 1e-9 if upper else number + 1e-9
        return float(text)

    def zrangebyscore(self, key, low, high):
        lo = self._bound(low, upper=False)
        hi = self._bound(high, upper=True)
        members = self.sets.get(key, {})
        return [m for m, s in sorted(members.items(), key=lambda kv: kv[1]) if lo <= s <= hi]

    def zrem(self, key, member):
        return 1 if self.sets.get(key, {}).pop(member, None) is not None else 0

    def zremrangebyscore(self, key, low, high):
        doomed = self.zrangebyscore(key, low, high)
        for member in doomed:
            self.sets[key].pop(member)
        return len(doomed)

    def scan_iter(self, match):
        return [key for key in list(self.sets) if fnmatch.fnmatchcase(key, match)]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def redis_ledger(fake_redis):
    return RedisAttemptLedger(client=fake_redis, retention_days=2)


def _attempt(clock, email="victim@example.com", ip="203.0.113.9", success=False):
    return LoginAttempt(
        id=new_id(),
        email=email,
        ip_address=ip,
        success=success,
        attempted_at=clock.now(),
        scope="login",
    )


class TestRedisAttemptLedger:
    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisAttemptLedger()

    def test_verify_connection_pings(self, redis_ledger, fake_redis):
        redis_ledger.verify_connection()

        assert fake_redis.pings == 1

    def test_attempt_written_to_email_and_origin_sets(self, redis_ledger, fake_redis, clock):
        redis_ledger.record_login_attempt(_attempt(clock))

        assert len(fake_redis.sets) == 2
        assert set(fake_redis.expirations.values()) == {2 * 86400}
        # Raw emails never appear in key names
        assert all("victim@example.com" not in key for key in fake_redis.sets)

    def test_list_filters_by_email_and_outcome(self, redis_ledger, clock):
        redis_ledger.record_login_attempt(_attempt(clock))
        redis_ledger.record_login_attempt(_attempt(clock, success=True))
        redis_ledger.record_login_attempt(_attempt(clock, email="other@example.com"))

        failures = redis_ledger.list_login_attempts(email="victim@example.com", success=False)

        assert len(failures) == 1
        assert failures[0].attempted_at == clock.now()

    def test_list_by_origin(self, redis_ledger, clock):
        redis_ledger.record_login_attempt(_attempt(clock, email="a@example.com"))
        redis_ledger.record_login_attempt(_attempt(clock, email="b@example.com"))

        assert len(redis_ledger.list_login_attempts(ip_address="203.0.113.9")) == 2

    def test_since_bounds_the_range(self, redis_ledger, clock):
        redis_ledger.record_login_attempt(_attempt(clock))
        clock.advance(hours=1)
        redis_ledger.record_login_attempt(_attempt(clock))

        recent = redis_ledger.list_login_attempts(
            email="victim@example.com", since=clock.now() - timedelta(minutes=5)
        )

        assert len(recent) == 1

    def test_clear_removes_failures_from_both_sets(self, redis_ledger, clock):
        redis_ledger.record_login_attempt(_attempt(clock))
        redis_ledger.record_login_attempt(_attempt(clock, success=True))

        assert redis_ledger.clear_login_attempts("victim@example.com") == 1
        assert redis_ledger.list_login_attempts(ip_address="203.0.113.9", success=False) == []
        assert len(redis_ledger.list_login_attempts(email="victim@example.com")) == 1

    def test_delete_before_counts_each_attempt_once(self, redis_ledger, clock):
        redis_ledger.record_login_attempt(_attempt(clock))
        clock.advance(days=1)
        redis_ledger.record_login_attempt(_attempt(clock))

        removed = redis_ledger.delete_login_attempts_before(clock.now() - timedelta(hours=1))

        assert removed == 1
        assert len(redis_ledger.list_login_attempts(ip_address="203.0.113.9")) == 1

    def test_undecodable_members_are_skipped(self, redis_ledger, fake_redis, clock):
        redis_ledger.record_login_attempt(_attempt(clock))
        key = next(k for k in fake_redis.sets if ":email:" in k)
        fake_redis.zadd(key, {"not json": clock.now().timestamp()})

        assert len(redis_ledger.list_login_attempts(email="victim@example.com")) == 1

    def test_guard_locks_through_redis(self, redis_ledger, clock):
        guard = RateLimitGuard(redis_ledger, clock=clock, config=LOGIN)
        for _ in range(5):
            guard.record_attempt("victim@example.com", "203.0.113.9", False)

        assert guard.check("victim@example.com").limited
        assert guard.check("someone@example.com", "203.0.113.9").limited
