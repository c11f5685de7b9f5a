"""
Sliding-window rate limiting.

RateLimiter holds the explicit limit/window and delegates counting to a
pluggable WindowStore:

  InMemoryWindowStore  - process-local timestamps per key; best-effort across replicas
  DatabaseWindowStore  - rows in rate_limit_hits; shared by every replica on the same DB

RATE_LIMIT_BACKEND=memory|database picks the store.
"""

import math
import os
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import structlog

logger = structlog.get_logger()

RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "memory")


@dataclass(frozen=True)
class RateLimitResult:
    allowed:             bool
    limit:               int
    window_seconds:      int
    remaining:           int
    retry_after_seconds: int


class WindowStore(Protocol):
    def hit(self, key: str, now: float, window_seconds: int, limit: int) -> tuple[bool, int, float]:
        """
        Count one request for key if fewer than limit were seen in the window.
        Returns (allowed, requests_in_window, oldest_timestamp_in_window).
        """
        ...


class InMemoryWindowStore:
    def __init__(self):
        self._hits: dict[str, deque] = defaultdict(deque)
        self._lock = threading.Lock()

    def hit(self, key: str, now: float, window_seconds: int, limit: int) -> tuple[bool, int, float]:
        with self._lock:
            hits = self._hits[key]
            cutoff = now - window_seconds
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                return False, len(hits), hits[0]
            hits.append(now)
            return True, len(hits), hits[0]


class DatabaseWindowStore:
    """Shared counter store backed by the rate_limit_hits table."""

    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    def hit(self, key: str, now: float, window_seconds: int, limit: int) -> tuple[bool, int, float]:
        from kubeheal.services.shared.models import RateLimitHit
        from kubeheal.services.shared.timeutil import as_utc

        now_dt = datetime.fromtimestamp(now, tz=timezone.utc)
        cutoff = now_dt - timedelta(seconds=window_seconds)

        db = self._session_factory()
        try:
            db.query(RateLimitHit).filter(
                RateLimitHit.key == key,
                RateLimitHit.hit_at <= cutoff,
            ).delete(synchronize_session=False)

            q = db.query(RateLimitHit).filter(RateLimitHit.key == key)
            count = q.count()
            oldest = q.order_by(RateLimitHit.hit_at.asc()).first()
            oldest_ts = as_utc(oldest.hit_at).timestamp() if oldest else now

            if count >= limit:
                db.commit()
                return False, count, oldest_ts

            db.add(RateLimitHit(key=key, hit_at=now_dt))
            db.commit()
            return True, count + 1, oldest_ts
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class RateLimiter:
    def __init__(
        self,
        store: WindowStore,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        if limit < 1 or window_seconds < 1:
            raise ValueError("limit and window_seconds must be positive")
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    def check(self, key: str) -> RateLimitResult:
        now = self._clock()
        allowed, used, oldest = self.store.hit(key, now, self.window_seconds, self.limit)
        retry_after = 0
        if not allowed:
            retry_after = max(1, math.ceil(oldest + self.window_seconds - now))
            logger.warning("rate_limit_exceeded", key=key, limit=self.limit, window=self.window_seconds)
        return RateLimitResult(
            allowed=allowed,
            limit=self.limit,
            window_seconds=self.window_seconds,
            remaining=max(0, self.limit - used),
            retry_after_seconds=retry_after,
        )


def build_rate_limiter(limit: int, window_seconds: int, backend: str | None = None) -> RateLimiter:
    backend = (backend or RATE_LIMIT_BACKEND).lower()
    if backend == "database":
        from kubeheal.services.shared.database import SessionLocal
        store: WindowStore = DatabaseWindowStore(SessionLocal)
    elif backend == "memory":
        store = InMemoryWindowStore()
    else:
        raise ValueError(f"Unknown RATE_LIMIT_BACKEND '{backend}'")
    logger.info("rate_limiter_configured", backend=backend, limit=limit, window=window_seconds)
    return RateLimiter(store, limit=limit, window_seconds=window_seconds)
