import time
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Optional, Protocol

from asyncpg import Connection, Pool
from cachetools import TTLCache
from redis.asyncio import Redis

from intake.models import RateLimit

Timer = Callable[[], float]


class RateLimiter(Protocol):
    async def hit(self, identity: str) -> Optional[RateLimit]: ...


class SubmissionStore(Protocol):
    async def claim(self, key: str) -> bool: ...


class SessionStore(Protocol):
    async def save_token(self, session_id: str, token: str) -> None: ...

    async def get_token(self, session_id: str) -> Optional[str]: ...


# Postgres
async def ensureSchema(conn: Connection):
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS submission_rate_limits (
            identity TEXT PRIMARY KEY,
            request_count INTEGER NOT NULL,
            window_start TIMESTAMPTZ NOT NULL
        )
        """
    )


async def getRateLimit(
    conn: Connection, identity: str, window: timedelta
) -> Optional[RateLimit]:
    now = datetime.now(timezone.utc)

    result = await conn.fetchrow(
        """
        INSERT INTO submission_rate_limits (identity, request_count, window_start)
        VALUES ($1, 1, $2)
        ON CONFLICT (identity) DO UPDATE
        SET
            request_count = CASE
                WHEN submission_rate_limits.window_start < $3 THEN 1
                ELSE submission_rate_limits.request_count + 1
            END,
            window_start = CASE
                WHEN submission_rate_limits.window_start < $3 THEN $2
                ELSE submission_rate_limits.window_start
            END
        RETURNING identity, request_count, window_start
    """,
        identity,
        now,
        now - window,
    )

    if result:
        return RateLimit(
            identity=result["identity"],
            request_count=result["request_count"],
            window_start=result["window_start"],
        )
    return None


class PostgresRateLimiter:
    """Fixed-window counter shared by every instance using the same database."""

    def __init__(self, pool: Pool, window_seconds: int):
        self.pool = pool
        self.window = timedelta(seconds=window_seconds)

    async def hit(self, identity: str) -> Optional[RateLimit]:
        async with self.pool.acquire() as conn:
            return await getRateLimit(conn, identity, self.window)


# In-memory
class MemoryRateLimiter:
    def __init__(
        self, window_seconds: int, maxsize: int = 100_000, timer: Timer = time.monotonic
    ):
        self.window_seconds = window_seconds
        self._timer = timer
        self._lock = Lock()
        self._windows = TTLCache(maxsize, window_seconds, timer=timer)

    async def hit(self, identity: str) -> Optional[RateLimit]:
        with self._lock:
            now = self._timer()
            window_start, count = self._windows.get(identity, (now, 0))
            if now - window_start >= self.window_seconds:
                window_start, count = now, 0
            count += 1
            self._windows[identity] = (window_start, count)

        started = datetime.now(timezone.utc) - timedelta(seconds=now - window_start)
        return RateLimit(identity=identity, request_count=count, window_start=started)


class MemorySubmissionStore:
    """Recent submissions for a single process; expired keys are swept on claim."""

    def __init__(
        self, ttl_seconds: int, maxsize: int = 100_000, timer: Timer = time.monotonic
    ):
        self._timer = timer
        self._lock = Lock()
        self._records = TTLCache(maxsize, ttl_seconds, timer=timer)

    async def claim(self, key: str) -> bool:
        with self._lock:
            self._records.expire()
            if key in self._records:
                return False
            self._records[key] = self._timer()
            return True


class MemorySessionStore:
    def __init__(
        self, ttl_seconds: int, maxsize: int = 100_000, timer: Timer = time.monotonic
    ):
        self._lock = Lock()
        self._tokens = TTLCache(maxsize, ttl_seconds, timer=timer)

    async def save_token(self, session_id: str, token: str) -> None:
        with self._lock:
            self._tokens[session_id] = token

    async def get_token(self, session_id: str) -> Optional[str]:
        with self._lock:
            return self._tokens.get(session_id)


# Redis
class RedisSubmissionStore:
    def __init__(self, redis: Redis, ttl_seconds: int):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def claim(self, key: str) -> bool:
        created = await self.redis.set(key, int(time.time()), nx=True, ex=self.ttl_seconds)
        return bool(created)


class RedisSessionStore:
    def __init__(self, redis: Redis, ttl_seconds: int):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def save_token(self, session_id: str, token: str) -> None:
        await self.redis.setex(f"csrf:{session_id}", self.ttl_seconds, token)

    async def get_token(self, session_id: str) -> Optional[str]:
        return await self.redis.get(f"csrf:{session_id}")
