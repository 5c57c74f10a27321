from datetime import datetime, timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from instamoments.core import errors
from instamoments.models.rate_limit import RateLimitCounter
from instamoments.models.user import Base
from instamoments.services.rate_limit import (
    DatabaseCounterStore,
    MemoryCounterStore,
    RateLimiter,
    RedisCounterStore,
)


def _exercise_window(limiter, clock):
    for i in range(10):
        r = limiter.allow("203.0.113.7")
        assert r.allowed, f"request {i + 1} should pass"
    assert r.remaining == 0

    eleventh = limiter.allow("203.0.113.7")
    assert not eleventh.allowed
    assert eleventh.reset_at == r.reset_at

    # Other identities are counted separately
    assert limiter.allow("198.51.100.1").allowed

    clock.advance(minutes=10, seconds=1)
    after = limiter.allow("203.0.113.7")
    assert after.allowed
    assert after.remaining == 9


def test_memory_store_fixed_window(clock):
    limiter = RateLimiter(MemoryCounterStore(), limit=10, window_seconds=600, clock=clock)
    _exercise_window(limiter, clock)


def test_database_store_fixed_window(clock):
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine, tables=[RateLimitCounter.__table__])
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    limiter = RateLimiter(DatabaseCounterStore(factory), limit=10, window_seconds=600, clock=clock)

    _exercise_window(limiter, clock)

    db = factory()
    try:
        row = db.query(RateLimitCounter).filter(RateLimitCounter.Key == "upload:203.0.113.7").one()
        assert row.Count == 1
        assert row.ResetAt == clock() + timedelta(seconds=600)
    finally:
        db.close()
    engine.dispose()


def test_reset_at_reported_for_retry_after(clock):
    limiter = RateLimiter(MemoryCounterStore(), limit=1, window_seconds=60, clock=clock)
    limiter.allow("x")
    clock.advance(seconds=15)
    denied = limiter.allow("x")
    assert not denied.allowed
    assert denied.retry_after_seconds(clock()) == 45


def test_check_raises_rate_limit_exceeded(clock):
    limiter = RateLimiter(MemoryCounterStore(), limit=1, window_seconds=60, clock=clock)
    limiter.check("x")
    with pytest.raises(errors.RateLimitExceeded) as exc:
        limiter.check("x")
    assert exc.value.status_code == 429
    assert exc.value.details["remaining"] == 0


class _BrokenStore:
    def increment(self, key, window_seconds, now):
        raise RedisConnectionError("redis down")


def test_store_outage_fails_open_by_default(clock):
    limiter = RateLimiter(_BrokenStore(), limit=10, window_seconds=600, clock=clock)
    assert limiter.allow("x").allowed


def test_store_outage_can_fail_closed(clock):
    limiter = RateLimiter(
        _BrokenStore(), limit=10, window_seconds=600, clock=clock, fail_open=False
    )
    with pytest.raises(RedisConnectionError):
        limiter.allow("x")


class _FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def incr(self, key):
        self.ops.append(("incr", key))

    def pexpire(self, key, ms, nx=False):
        self.ops.append(("pexpire", key, ms, nx))

    def pttl(self, key):
        self.ops.append(("pttl", key))

    def execute(self):
        out = []
        for op in self.ops:
            if op[0] == "incr":
                self.store.counts[op[1]] = self.store.counts.get(op[1], 0) + 1
                out.append(self.store.counts[op[1]])
            elif op[0] == "pexpire":
                set_now = op[1] not in self.store.ttls
                if set_now:
                    self.store.ttls[op[1]] = op[2]
                out.append(set_now)
            else:
                out.append(self.store.ttls.get(op[1], -1))
        return out


class _FakeRedis:
    def __init__(self):
        self.counts = {}
        self.ttls = {}

    def pipeline(self, transaction=True):
        return _FakePipeline(self)


def test_redis_store_sets_ttl_once_per_window():
    fake = _FakeRedis()
    store = RedisCounterStore(fake)
    now = datetime(2026, 3, 1, 12, 0, 0)
    count, reset_at = store.increment("upload:x", 600, now)
    assert count == 1
    assert reset_at == now + timedelta(seconds=600)
    count, _ = store.increment("upload:x", 600, now)
    assert count == 2
    assert fake.ttls == {"ratelimit:upload:x": 600000}
