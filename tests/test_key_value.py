"""Tests for the in-memory key-value backend and the backend factory."""

from unittest.mock import patch

import pytest

from code_agent_controller.store.key_value import (
    InMemoryKeyValueService,
    RedisKeyValueService,
    create_key_value_service,
)


class TestInMemoryKeyValueService:
    """Tests for InMemoryKeyValueService."""

    @pytest.mark.asyncio
    async def test_get_set_delete(self, kv):
        """Values are stored as JSON documents and removed on delete."""
        await kv.set("a", {"x": 1})

        assert await kv.get("a") == {"x": 1}
        assert await kv.exists("a") is True

        await kv.delete("a")
        assert await kv.get("a") is None
        assert await kv.exists("a") is False

    @pytest.mark.asyncio
    async def test_ttl_expires_value(self, kv):
        """A value whose TTL has passed reads as missing."""
        with patch("code_agent_controller.store.key_value.time.monotonic", return_value=100.0):
            await kv.set("a", "v", ttl_seconds=5)
        with patch("code_agent_controller.store.key_value.time.monotonic", return_value=104.0):
            assert await kv.get("a") == "v"
        with patch("code_agent_controller.store.key_value.time.monotonic", return_value=105.0):
            assert await kv.get("a") is None

    @pytest.mark.asyncio
    async def test_sorted_set_orders_by_score(self, kv):
        """zrange returns members by ascending score with an inclusive stop."""
        await kv.zadd("z", 30, "c")
        await kv.zadd("z", 10, "a")
        await kv.zadd("z", 20, "b")

        assert await kv.zrange("z", 0, -1) == ["a", "b", "c"]
        assert await kv.zrange("z", 0, 1) == ["a", "b"]
        assert await kv.zrange("z", 5, 10) == []
        assert await kv.zrank("z", "b") == 1
        assert await kv.zrank("z", "missing") is None
        assert await kv.zcard("z") == 3

    @pytest.mark.asyncio
    async def test_zadd_updates_score(self, kv):
        """Re-adding a member moves it instead of duplicating it."""
        await kv.zadd("z", 10, "a")
        await kv.zadd("z", 20, "b")
        await kv.zadd("z", 30, "a")

        assert await kv.zrange("z", 0, -1) == ["b", "a"]

    @pytest.mark.asyncio
    async def test_zrem_single_and_many(self, kv):
        """zrem accepts one member or a list and drops empty sets."""
        for score, member in enumerate(["a", "b", "c"]):
            await kv.zadd("z", score, member)

        await kv.zrem("z", "a")
        await kv.zrem("z", ["b", "c"])

        assert await kv.zcard("z") == 0
        assert await kv.exists("z") is False

    @pytest.mark.asyncio
    async def test_batch_operations(self, kv):
        """mset/mget/mdelete operate on many keys, preserving order."""
        await kv.mset([("a", 1), ("b", 2)])

        assert await kv.mget(["b", "missing", "a"]) == [2, None, 1]

        await kv.mdelete(["a", "b"])
        assert await kv.mget(["a", "b"]) == [None, None]


class TestCreateKeyValueService:
    """Tests for create_key_value_service."""

    def test_memory_backend(self):
        assert isinstance(create_key_value_service("memory", ""), InMemoryKeyValueService)

    def test_redis_backend_connects_lazily(self):
        service = create_key_value_service("redis", "redis://localhost:6379/0")

        assert isinstance(service, RedisKeyValueService)
        assert service._redis is None

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_key_value_service("etcd", "")
