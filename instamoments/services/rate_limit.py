"""Fixed-window upload throttling keyed by client identity.

The first request from an identity opens a window ending at
``now + window_seconds``; every request in the window increments the counter
atomically and is allowed while ``count <= limit``. Rejections report the
unchanged ``reset_at`` so callers can compute Retry-After.

Known limitation: fixed windows permit up to 2x ``limit`` requests across a
window boundary. A sliding log or token bucket would close that gap at the
cost of per-request state.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol, Tuple

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from instamoments.core import errors
from instamoments.core.timeutil import utcnow
from instamoments.models.rate_limit import RateLimitCounter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime

    def retry_after_seconds(self, now: datetime) -> int:
        return max(0, int((self.reset_at - now).total_seconds() + 0.999))


class CounterStore(Protocol):
    def increment(self, key: str, window_seconds: int, now: datetime) -> Tuple[int, datetime]:
        """Atomically bump the counter for `key`; return (count, reset_at)."""


class MemoryCounterStore:
    """Process-local store; only suitable for a single instance and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: Dict[str, Tuple[int, datetime]] = {}

    def increment(self, key: str, window_seconds: int, now: datetime) -> Tuple[int, datetime]:
        with self._lock:
            count, reset_at = self._buckets.get(key, (0, now))
            if reset_at <= now:
                count, reset_at = 0, now + timedelta(seconds=window_seconds)
            count += 1
            self._buckets[key] = (count, reset_at)
            return count, reset_at


class DatabaseCounterStore:
    """Counters in the RateLimitCounter table, shared by every app instance.

    Increments are single UPDATE statements (``Count = Count + 1``) so two
    concurrent requests can never read the same value and write it back.
    """

    def __init__(self, session_factory: Callable[[], Session], max_attempts: int = 3) -> None:
        self._session_factory = session_factory
        self._max_attempts = max_attempts

    def increment(self, key: str, window_seconds: int, now: datetime) -> Tuple[int, datetime]:
        db = self._session_factory()
        try:
            return self._increment(db, key, window_seconds, now)
        finally:
            db.close()

    def _increment(
        self, db: Session, key: str, window_seconds: int, now: datetime
    ) -> Tuple[int, datetime]:
        fresh_reset = now + timedelta(seconds=window_seconds)
        for _ in range(self._max_attempts):
            res = db.execute(
                update(RateLimitCounter)
                .where(RateLimitCounter.Key == key, RateLimitCounter.ResetAt > now)
                .values(Count=RateLimitCounter.Count + 1, UpdatedAt=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                # Window elapsed: restart it in place
                res = db.execute(
                    update(RateLimitCounter)
                    .where(RateLimitCounter.Key == key, RateLimitCounter.ResetAt <= now)
                    .values(Count=1, WindowStart=now, ResetAt=fresh_reset, UpdatedAt=now)
                    .execution_options(synchronize_session=False)
                )
            if res.rowcount == 0:
                db.add(RateLimitCounter(Key=key, WindowStart=now, ResetAt=fresh_reset, Count=1))
                try:
                    db.commit()
                except IntegrityError:
                    # Another request created the row first; bump it instead
                    db.rollback()
                    continue
                return 1, fresh_reset

            row = db.execute(
                select(RateLimitCounter.Count, RateLimitCounter.ResetAt).where(
                    RateLimitCounter.Key == key
                )
            ).one()
            db.commit()
            return int(row.Count), row.ResetAt
        raise errors.DatabaseError("Could not update rate limit counter")


class RedisCounterStore:
    """INCR + PEXPIRE NX inside MULTI/EXEC; the key's TTL is the window."""

    def __init__(self, client, prefix: str = "ratelimit:") -> None:
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        return cls(Redis.from_url(url))

    def increment(self, key: str, window_seconds: int, now: datetime) -> Tuple[int, datetime]:
        rkey = f"{self.prefix}{key}"
        pipe = self.client.pipeline(transaction=True)
        pipe.incr(rkey)
        pipe.pexpire(rkey, int(window_seconds * 1000), nx=True)
        pipe.pttl(rkey)
        count, _, ttl_ms = pipe.execute()
        if ttl_ms is None or int(ttl_ms) < 0:
            ttl_ms = window_seconds * 1000
        return int(count), now + timedelta(milliseconds=int(ttl_ms))


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        limit: int,
        window_seconds: int,
        clock: Callable[[], datetime] = utcnow,
        fail_open: bool = True,
    ) -> None:
        self.store = store
        self.limit = int(limit)
        self.window_seconds = int(window_seconds)
        self.clock = clock
        self.fail_open = fail_open

    def allow(self, identity: str, scope: str = "upload") -> RateLimitResult:
        now = self.clock()
        key = f"{scope}:{identity}"
        try:
            count, reset_at = self.store.increment(key, self.window_seconds, now)
        except (SQLAlchemyError, RedisError, errors.DatabaseError):
            if not self.fail_open:
                raise
            # Limiter storage outage should not block uploads
            logger.warning("ratelimit.store_unavailable", extra={"key": key}, exc_info=True)
            return RateLimitResult(
                allowed=True,
                limit=self.limit,
                remaining=self.limit,
                reset_at=now + timedelta(seconds=self.window_seconds),
            )
        return RateLimitResult(
            allowed=count <= self.limit,
            limit=self.limit,
            remaining=max(0, self.limit - count),
            reset_at=reset_at,
        )

    def check(self, identity: str, scope: str = "upload") -> RateLimitResult:
        """Like allow() but raises RateLimitExceeded when over the limit."""
        result = self.allow(identity, scope=scope)
        if not result.allowed:
            raise errors.RateLimitExceeded(
                limit=result.limit, remaining=result.remaining, reset_at=result.reset_at
            )
        return result


def build_rate_limiter(settings, session_factory: Optional[Callable[[], Session]] = None) -> RateLimiter:
    redis_url = getattr(settings, "REDIS_URL", "") or ""
    store: CounterStore
    if redis_url:
        store = RedisCounterStore.from_url(redis_url)
    elif session_factory is not None:
        store = DatabaseCounterStore(session_factory)
    else:
        store = MemoryCounterStore()
    return RateLimiter(
        store,
        limit=settings.UPLOAD_RATE_LIMIT_ATTEMPTS,
        window_seconds=settings.UPLOAD_RATE_LIMIT_WINDOW_SECONDS,
    )
