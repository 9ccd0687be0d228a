"""Key-value service abstraction with sorted-set and batch operations.

Values are JSON documents. Two backends are provided:
- InMemoryKeyValueService: process-local, used for tests and single-process runs
- RedisKeyValueService: redis.asyncio client for shared deployments
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Optional, Union

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class KeyValueService(ABC):
    """Async key-value store with sorted sets (zadd/zrange/...) and batch ops."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]: ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def zadd(self, key: str, score: float, member: str) -> None: ...

    @abstractmethod
    async def zrank(self, key: str, member: str) -> Optional[int]: ...

    @abstractmethod
    async def zcard(self, key: str) -> int: ...

    @abstractmethod
    async def zrange(self, key: str, start: int, stop: int) -> list[str]:
        """Members ordered by ascending score; ``stop`` is inclusive (Redis semantics)."""

    @abstractmethod
    async def zrem(self, key: str, member: Union[str, list[str]]) -> None: ...

    @abstractmethod
    async def mget(self, keys: list[str]) -> list[Optional[Any]]: ...

    @abstractmethod
    async def mset(
        self, items: list[tuple[str, Any]], ttl_seconds: Optional[int] = None
    ) -> None: ...

    @abstractmethod
    async def mdelete(self, keys: list[str]) -> None: ...

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryKeyValueService(KeyValueService):
    """Process-local backend with TTLs and sorted sets."""

    def __init__(self):
        # key -> (json document, expires_at monotonic seconds or None)
        self._values: dict[str, tuple[str, Optional[float]]] = {}
        self._zsets: dict[str, dict[str, float]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._values[key]
            return None
        return raw

    @staticmethod
    def _expiry(ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return time.monotonic() + ttl_seconds

    async def get(self, key: str) -> Optional[Any]:
        raw = self._live(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        self._values[key] = (json.dumps(value), self._expiry(ttl_seconds))

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)
        self._zsets.pop(key, None)

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None or key in self._zsets

    def _sorted_members(self, key: str) -> list[str]:
        zset = self._zsets.get(key, {})
        return [member for member, _ in sorted(zset.items(), key=lambda kv: (kv[1], kv[0]))]

    async def zadd(self, key: str, score: float, member: str) -> None:
        self._zsets.setdefault(key, {})[member] = score

    async def zrank(self, key: str, member: str) -> Optional[int]:
        members = self._sorted_members(key)
        try:
            return members.index(member)
        except ValueError:
            return None

    async def zcard(self, key: str) -> int:
        return len(self._zsets.get(key, {}))

    async def zrange(self, key: str, start: int, stop: int) -> list[str]:
        members = self._sorted_members(key)
        size = len(members)
        if start < 0:
            start = max(size + start, 0)
        if stop < 0:
            stop = size + stop
        if start >= size or start > stop:
            return []
        return members[start : stop + 1]

    async def zrem(self, key: str, member: Union[str, list[str]]) -> None:
        zset = self._zsets.get(key)
        if zset is None:
            return
        for item in [member] if isinstance(member, str) else member:
            zset.pop(item, None)
        if not zset:
            del self._zsets[key]

    async def mget(self, keys: list[str]) -> list[Optional[Any]]:
        return [await self.get(key) for key in keys]

    async def mset(
        self, items: list[tuple[str, Any]], ttl_seconds: Optional[int] = None
    ) -> None:
        for key, value in items:
            await self.set(key, value, ttl_seconds)

    async def mdelete(self, keys: list[str]) -> None:
        for key in keys:
            await self.delete(key)


class RedisKeyValueService(KeyValueService):
    """Redis backend built on redis.asyncio."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._redis: Optional[redis.Redis] = None

    @property
    def redis(self) -> redis.Redis:
        """Get or create the Redis client."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
            logger.info(f"Connected key-value store to {self.redis_url}")
        return self._redis

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Redis connection closed")

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.redis.get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        await self.redis.set(key, json.dumps(value), ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.redis.delete(key)

    async def exists(self, key: str) -> bool:
        return bool(await self.redis.exists(key))

    async def zadd(self, key: str, score: float, member: str) -> None:
        await self.redis.zadd(key, {member: score})

    async def zrank(self, key: str, member: str) -> Optional[int]:
        return await self.redis.zrank(key, member)

    async def zcard(self, key: str) -> int:
        return await self.redis.zcard(key)

    async def zrange(self, key: str, start: int, stop: int) -> list[str]:
        return await self.redis.zrange(key, start, stop)

    async def zrem(self, key: str, member: Union[str, list[str]]) -> None:
        members = [member] if isinstance(member, str) else member
        if members:
            await self.redis.zrem(key, *members)

    async def mget(self, keys: list[str]) -> list[Optional[Any]]:
        if not keys:
            return []
        raws = await self.redis.mget(keys)
        return [None if raw is None else json.loads(raw) for raw in raws]

    async def mset(
        self, items: list[tuple[str, Any]], ttl_seconds: Optional[int] = None
    ) -> None:
        if not items:
            return
        async with self.redis.pipeline(transaction=True) as pipe:
            for key, value in items:
                pipe.set(key, json.dumps(value), ex=ttl_seconds)
            await pipe.execute()

    async def mdelete(self, keys: list[str]) -> None:
        if keys:
            await self.redis.delete(*keys)


def create_key_value_service(backend: str, redis_url: str) -> KeyValueService:
    """Build the configured key-value backend."""
    if backend == "memory":
        return InMemoryKeyValueService()
    if backend == "redis":
        return RedisKeyValueService(redis_url)
    raise ValueError(f"Unknown key-value backend: {backend}")
