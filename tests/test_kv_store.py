"""
Store Backend Tests
===================
The same contract run against the in-memory and SQLite backends.
"""

import pytest

from yield_rebalancer.kv_store import MemoryStore, SqliteStore, StoreError, create_store


@pytest.fixture(params=['memory', 'sqlite'])
async def kv(request, clock, tmp_path):
    if request.param == 'memory':
        backend = MemoryStore(clock=clock.time)
    else:
        backend = SqliteStore(str(tmp_path / "state.db"), clock=clock.time)
    yield backend
    await backend.close()


class TestScalars:

    async def test_get_set_delete(self, kv):
        assert await kv.get("k") is None

        await kv.set("k", "v")
        assert await kv.get("k") == "v"

        assert await kv.delete("k") == 1
        assert await kv.get("k") is None
        assert await kv.delete("k") == 0

    async def test_set_with_expiry(self, kv, clock):
        await kv.set("k", "v", ex=60)

        clock.advance(seconds=59)
        assert await kv.get("k") == "v"

        clock.advance(seconds=1)
        assert await kv.get("k") is None

    async def test_incr(self, kv, clock):
        assert await kv.incr("n", ex=100) == 1
        assert await kv.incr("n", ex=100) == 2
        assert await kv.get("n") == "2"

        clock.advance(seconds=100)
        assert await kv.incr("n") == 1


class TestSets:

    async def test_membership(self, kv):
        assert await kv.sadd("s", "a") == 1
        assert await kv.sadd("s", "a") == 0
        await kv.sadd("s", "b")

        assert await kv.smembers("s") == {"a", "b"}
        assert await kv.sismember("s", "a")

        assert await kv.srem("s", "a") == 1
        assert await kv.srem("s", "a") == 0
        assert not await kv.sismember("s", "a")

    async def test_empty_set(self, kv):
        assert await kv.smembers("missing") == set()


class TestSortedSets:

    async def test_zrevrange_descending_inclusive(self, kv):
        for member, score in [("a", 1.0), ("b", 5.0), ("c", 3.0), ("d", 4.0)]:
            await kv.zadd("z", member, score)

        assert await kv.zrevrange("z", 0, 1) == [("b", 5.0), ("d", 4.0)]
        assert [m for m, _ in await kv.zrevrange("z", 0, -1)] == ["b", "d", "c", "a"]
        assert await kv.zrevrange("z", 10, 20) == []

    async def test_zadd_updates_score(self, kv):
        assert await kv.zadd("z", "a", 1.0) == 1
        assert await kv.zadd("z", "a", 7.0) == 0

        assert await kv.zscore("z", "a") == 7.0
        assert await kv.zcard("z") == 1

    async def test_zrem(self, kv):
        await kv.zadd("z", "a", 1.0)

        assert await kv.zrem("z", "a") == 1
        assert await kv.zrem("z", "a") == 0
        assert await kv.zscore("z", "a") is None
        assert await kv.zcard("z") == 0


class TestLists:

    async def test_lpush_is_newest_first(self, kv):
        for value in ["1", "2", "3"]:
            await kv.lpush("l", value)

        assert await kv.lrange("l", 0, -1) == ["3", "2", "1"]
        assert await kv.lrange("l", 0, 0) == ["3"]
        assert await kv.llen("l") == 3

    async def test_ltrim_keeps_head(self, kv):
        for i in range(10):
            await kv.lpush("l", str(i))

        await kv.ltrim("l", 0, 3)

        assert await kv.lrange("l", 0, -1) == ["9", "8", "7", "6"]

        await kv.lpush("l", "10")
        await kv.ltrim("l", 0, 3)
        assert await kv.lrange("l", 0, -1) == ["10", "9", "8", "7"]

    async def test_lists_are_keyed(self, kv):
        await kv.lpush("a", "x")
        await kv.lpush("b", "y")
        await kv.ltrim("a", 0, 0)

        assert await kv.lrange("b", 0, -1) == ["y"]


class TestSqliteDurability:

    async def test_state_survives_reopen(self, tmp_path, clock):
        path = str(tmp_path / "durable.db")
        first = SqliteStore(path, clock=clock.time)
        await first.zadd("z", "a", 2.0)
        await first.lpush("l", "entry")
        await first.close()

        second = SqliteStore(path, clock=clock.time)
        try:
            assert await second.zscore("z", "a") == 2.0
            assert await second.lrange("l", 0, -1) == ["entry"]
        finally:
            await second.close()

    async def test_closed_store_raises(self, tmp_path):
        store = SqliteStore(str(tmp_path / "closed.db"))
        await store.close()

        with pytest.raises(StoreError):
            await store.get("k")


class TestFactory:

    def test_create_store(self, tmp_path):
        assert isinstance(create_store('memory'), MemoryStore)
        sqlite_store = create_store('sqlite', path=str(tmp_path / "f.db"))
        assert isinstance(sqlite_store, SqliteStore)
        sqlite_store.conn.close()

    def test_unknown_backend(self):
        with pytest.raises(StoreError):
            create_store('etcd')
