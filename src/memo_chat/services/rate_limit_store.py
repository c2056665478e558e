"""Shared counter stores backing the rate limiter.

The limiter only needs four operations, so any backend that can read, write
and delete a small per-identity record works. Redis is the production store;
the in-memory store serves single-process deployments and tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Union

import redis.asyncio as redis
from redis.asyncio import ConnectionPool, Redis

from memo_chat.utils.logging import get_logger

logger = get_logger("rate_limit_store")


def _text(value: Union[bytes, str]) -> str:
    return value.decode() if isinstance(value, bytes) else value


@dataclass
class RateLimitEntry:
    """Per-identity counter for one fixed window. Times are epoch seconds."""

    count: int
    reset_time: float
    created_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.reset_time


class RateLimitStore(Protocol):
    """Counter interface the rate limiter is built on.

    Implementations may raise on backend failure; the limiter fails open.
    """

    async def get(self, identity: str) -> Optional[RateLimitEntry]: ...

    async def put(self, identity: str, entry: RateLimitEntry) -> None: ...

    async def delete(self, identity: str) -> None: ...

    async def delete_created_before(self, cutoff: float, limit: int) -> int: ...


class InMemoryRateLimitStore:
    """Process-local store. Not shared across workers."""

    def __init__(self) -> None:
        self._entries: Dict[str, RateLimitEntry] = {}

    async def get(self, identity: str) -> Optional[RateLimitEntry]:
        entry = self._entries.get(identity)
        if entry is None:
            return None
        return RateLimitEntry(entry.count, entry.reset_time, entry.created_at)

    async def put(self, identity: str, entry: RateLimitEntry) -> None:
        self._entries[identity] = RateLimitEntry(entry.count, entry.reset_time, entry.created_at)

    async def delete(self, identity: str) -> None:
        self._entries.pop(identity, None)

    async def delete_created_before(self, cutoff: float, limit: int) -> int:
        stale = [k for k, v in self._entries.items() if v.created_at < cutoff][:limit]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


class RedisRateLimitStore:
    """Redis-backed store.

    Layout:
    - ``{prefix}{identity}``: hash with ``count``, ``reset_time``, ``created_at``
    - ``{prefix}index``: sorted set of identities scored by ``created_at``, used by
      the cleanup sweep to find stale entries without scanning the keyspace
    """

    def __init__(self, redis_pool: ConnectionPool, prefix: str = "ratelimit:") -> None:
        self.redis_pool = redis_pool
        self.prefix = prefix

    def _get_redis_client(self) -> Redis:
        """Get a Redis client from the connection pool."""
        return redis.Redis(connection_pool=self.redis_pool)

    def _get_key(self, identity: str) -> str:
        return f"{self.prefix}{identity}"

    @property
    def index_key(self) -> str:
        return f"{self.prefix}index"

    async def get(self, identity: str) -> Optional[RateLimitEntry]:
        client = self._get_redis_client()
        data = await client.hgetall(self._get_key(identity))
        if not data:
            return None
        data = {_text(k): _text(v) for k, v in data.items()}
        return RateLimitEntry(
            count=int(data["count"]),
            reset_time=float(data["reset_time"]),
            created_at=float(data["created_at"]),
        )

    async def put(self, identity: str, entry: RateLimitEntry) -> None:
        client = self._get_redis_client()
        key = self._get_key(identity)
        pipe = client.pipeline()
        pipe.hset(
            key,
            mapping={
                "count": entry.count,
                "reset_time": entry.reset_time,
                "created_at": entry.created_at,
            },
        )
        pipe.zadd(self.index_key, {identity: entry.created_at})
        await pipe.execute()

    async def delete(self, identity: str) -> None:
        client = self._get_redis_client()
        pipe = client.pipeline()
        pipe.delete(self._get_key(identity))
        pipe.zrem(self.index_key, identity)
        await pipe.execute()

    async def delete_created_before(self, cutoff: float, limit: int) -> int:
        client = self._get_redis_client()
        stale = await client.zrangebyscore(
            self.index_key, "-inf", f"({cutoff}", start=0, num=limit
        )
        if not stale:
            return 0

        stale = [_text(identity) for identity in stale]
        pipe = client.pipeline()
        for identity in stale:
            pipe.delete(self._get_key(identity))
        pipe.zrem(self.index_key, *stale)
        await pipe.execute()
        return len(stale)
