from __future__ import annotations

import asyncio

import pytest

from recallkv.exceptions import StorageError, ValidationError
from recallkv.storage import KVStore, MemoryKV, create_kv_store
from recallkv.config import StorageConfig


def test_memory_kv_satisfies_protocol():
    assert isinstance(MemoryKV(), KVStore)
    assert isinstance(create_kv_store(StorageConfig(backend="memory")), MemoryKV)
    with pytest.raises(ValidationError):
        create_kv_store(StorageConfig(backend="sqlite"))


def test_hash_and_missing_keys():
    async def _run() -> None:
        kv = MemoryKV()
        assert await kv.hgetall("h") == {}
        await kv.hset("h", {"a": "1", "b": "2"})
        assert await kv.hget("h", "a") == "1"
        await kv.hdel("h", "a", "b")
        assert await kv.exists("h") is False

    asyncio.run(_run())


def test_wrong_type_raises_storage_error():
    async def _run() -> None:
        kv = MemoryKV()
        await kv.hset("k", {"a": "1"})
        with pytest.raises(StorageError):
            await kv.sadd("k", "x")
        with pytest.raises(StorageError):
            await kv.zadd("k", 1, "x")

    asyncio.run(_run())


def test_sorted_set_ranges_follow_redis_rules():
    async def _run() -> None:
        kv = MemoryKV()
        for score, member in [(3, "c"), (1, "a"), (2, "b"), (4, "d")]:
            await kv.zadd("z", score, member)
        assert await kv.zrange("z", 0, -1) == ["a", "b", "c", "d"]
        assert await kv.zrange("z", -2, -1) == ["c", "d"]
        assert await kv.zrevrange("z", 0, 1) == ["d", "c"]
        assert await kv.zrangebyscore("z", 2, 3) == ["b", "c"]
        assert await kv.zrevrangebyscore("z", 4, 1, offset=1, count=2) == ["c", "b"]
        assert await kv.zscore("z", "b") == 2.0
        assert await kv.zcount("z", 2, 4) == 3
        await kv.zremrangebyrank("z", 0, 1)
        assert await kv.zrange("z", 0, -1) == ["c", "d"]

    asyncio.run(_run())


def test_set_if_absent_first_writer_wins():
    async def _run() -> None:
        kv = MemoryKV()
        assert await kv.set_if_absent("lock", "one") is True
        assert await kv.set_if_absent("lock", "two") is False
        assert await kv.get("lock") == "one"

    asyncio.run(_run())


def test_pipeline_failure_leaves_no_partial_state():
    async def _run() -> None:
        kv = MemoryKV()
        await kv.hset("hash", {"f": "v"})
        await kv.sadd("s", "keep")
        pipe = kv.pipeline()
        pipe.sadd("s", "new")
        pipe.zadd("z", 1, "m")
        pipe.sadd("hash", "boom")  # wrong type
        with pytest.raises(StorageError):
            await pipe.execute()
        assert await kv.smembers("s") == {"keep"}
        assert await kv.exists("z") is False
        assert await kv.hgetall("hash") == {"f": "v"}

    asyncio.run(_run())


def test_guarded_pipeline_applies_only_when_check_holds():
    async def _run() -> None:
        kv = MemoryKV()
        await kv.set("owner", "a")

        pipe = kv.pipeline()
        pipe.guard("owner", lambda current: current == "b")
        pipe.delete("owner")
        pipe.sadd("log", "released")
        assert await pipe.execute() is False
        assert await kv.get("owner") == "a"
        assert await kv.exists("log") is False

        pipe = kv.pipeline()
        pipe.guard("owner", lambda current: current == "a")
        pipe.delete("owner")
        assert await pipe.execute() is True
        assert await kv.get("owner") is None

        pipe = kv.pipeline()
        pipe.guard("owner", lambda current: current is None)
        pipe.set("owner", "c")
        assert await pipe.execute() is True
        assert await kv.get("owner") == "c"

    asyncio.run(_run())


def test_pipeline_is_atomic_for_concurrent_readers():
    async def _run() -> None:
        kv = MemoryKV()
        seen: list[tuple[bool, bool]] = []

        async def writer() -> None:
            pipe = kv.pipeline()
            pipe.sadd("out", "r1")
            pipe.sadd("in", "r1")
            await pipe.execute()

        async def reader() -> None:
            for _ in range(5):
                seen.append((await kv.sismember("out", "r1"), await kv.sismember("in", "r1")))
                await asyncio.sleep(0)

        await asyncio.gather(reader(), writer(), reader())
        assert all(a == b for a, b in seen)

    asyncio.run(_run())


def test_expired_keys_disappear():
    async def _run() -> None:
        kv = MemoryKV()
        await kv.hset("h", {"a": "1"})
        assert await kv.expire("h", 0) is True
        assert await kv.hgetall("h") == {}
        assert await kv.expire("missing", 10) is False

    asyncio.run(_run())
