"""Tests for the in-process store that backs tests and development."""

import pytest


class TestKeys:
    async def test_ttl_expiry(self, store, clock):
        await store.set("k", "v", ttl=10)
        assert await store.ttl("k") == 10

        clock.advance(10)

        assert await store.get("k") is None
        assert await store.ttl("k") == -2

    async def test_no_expiry(self, store):
        await store.set("k", "v")
        assert await store.ttl("k") == -1

    async def test_nx(self, store):
        assert await store.set("k", "first", nx=True) is True
        assert await store.set("k", "second", nx=True) is False
        assert await store.get("k") == "first"

    async def test_delete_reports_live_keys(self, store):
        await store.set("a", "1")
        assert await store.delete("a", "missing") == 1
        assert await store.delete("a") == 0

    async def test_incr_sets_ttl_once(self, store, clock):
        assert await store.incr("c", ttl=60) == 1
        clock.advance(30)
        assert await store.incr("c", ttl=60) == 2
        assert await store.ttl("c") == 30

    async def test_keys_pattern(self, store):
        await store.set("session:1", "x")
        await store.set("session:2", "x")
        await store.set("otp:1", "x")
        assert sorted(await store.keys("session:*")) == ["session:1", "session:2"]

    async def test_wrong_type(self, store):
        await store.sadd("s", "a")
        with pytest.raises(TypeError):
            await store.get("s")


class TestCollections:
    async def test_sorted_set(self, store):
        await store.zadd("z", "a", 1)
        await store.zadd("z", "b", 2)
        await store.zadd("z", "c", 3)

        assert await store.zrange("z", 0, -1) == ["a", "b", "c"]
        assert await store.zrevrange("z", 0, 1) == ["c", "b"]
        assert await store.zrevrangebyscore("z", 2, 1) == ["b", "a"]
        assert await store.zremrangebyrank("z", 0, 0) == 1
        assert await store.zcard("z") == 2

    async def test_set_removal_is_exclusive(self, store):
        await store.sadd("s", "x", "y")
        assert await store.srem("s", "x") == 1
        assert await store.srem("s", "x") == 0
        assert await store.smembers("s") == {"y"}

    async def test_publish_reaches_subscribers(self, store):
        received = []
        store.subscribe("events", received.append)

        assert await store.publish("events", "hello") == 1
        assert await store.publish("other", "ignored") == 0
        assert received == ["hello"]
