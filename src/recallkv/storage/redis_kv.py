"""Redis / Valkey substrate over redis.asyncio."""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Mapping

from recallkv.exceptions import StorageError
from recallkv.storage.base import Guard

logger = logging.getLogger(__name__)


def _import_redis():
    try:
        import redis.asyncio as aioredis
        from redis.exceptions import RedisError, WatchError
    except Exception as exc:
        raise RuntimeError(
            "redis is required for storage backend 'redis'. "
            "Install with: pip install 'recallkv[redis]'"
        ) from exc
    return aioredis, RedisError, WatchError


def _wrap_errors(fn):
    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except self._error_type as exc:
            raise StorageError(f"{fn.__name__} failed: {exc}") from exc
    return wrapper


class RedisPipeline:
    """MULTI/EXEC transaction; nothing is visible until execute() returns.

    Guarded keys are WATCHed and checked before MULTI. A failed check, or a
    write to a watched key before EXEC, makes execute() return False.
    """

    def __init__(self, client: Any, error_type: type[Exception],
                 watch_error: type[Exception]) -> None:
        self._client = client
        self._error_type = error_type
        self._watch_error = watch_error
        self._ops: list[Callable[[Any], Any]] = []
        self._guards: list[tuple[str, Guard]] = []

    def guard(self, key: str, check: Guard) -> None:
        self._guards.append((key, check))

    def hset(self, key: str, mapping: Mapping[str, str]) -> None:
        if mapping:
            data = dict(mapping)
            self._ops.append(lambda p: p.hset(key, mapping=data))

    def hdel(self, key: str, *fields: str) -> None:
        if fields:
            self._ops.append(lambda p: p.hdel(key, *fields))

    def delete(self, *keys: str) -> None:
        if keys:
            self._ops.append(lambda p: p.delete(*keys))

    def set(self, key: str, value: str) -> None:
        self._ops.append(lambda p: p.set(key, value))

    def sadd(self, key: str, *members: str) -> None:
        if members:
            self._ops.append(lambda p: p.sadd(key, *members))

    def srem(self, key: str, *members: str) -> None:
        if members:
            self._ops.append(lambda p: p.srem(key, *members))

    def zadd(self, key: str, score: float, member: str) -> None:
        self._ops.append(lambda p: p.zadd(key, {member: score}))

    def zrem(self, key: str, *members: str) -> None:
        if members:
            self._ops.append(lambda p: p.zrem(key, *members))

    def zremrangebyrank(self, key: str, start: int, stop: int) -> None:
        self._ops.append(lambda p: p.zremrangebyrank(key, start, stop))

    def expire(self, key: str, seconds: int) -> None:
        self._ops.append(lambda p: p.expire(key, seconds))

    @_wrap_errors
    async def execute(self) -> bool:
        ops, self._ops = self._ops, []
        guards, self._guards = self._guards, []
        async with self._client.pipeline(transaction=True) as pipe:
            if guards:
                await pipe.watch(*{key for key, _ in guards})
                for key, check in guards:
                    if not check(await pipe.get(key)):
                        return False
                pipe.multi()
            for op in ops:
                op(pipe)
            try:
                await pipe.execute()
            except self._watch_error:
                logger.debug("Guarded transaction aborted by a concurrent write")
                return False
        return True


class RedisKV:
    """KVStore backed by a Redis-protocol server (Redis or Valkey)."""

    def __init__(self, url: str = "redis://localhost:6379/0", socket_timeout: float = 5.0,
                 client: Any = None) -> None:
        aioredis, error_type, watch_error = _import_redis()
        self._error_type = error_type
        self._watch_error = watch_error
        self.url = url
        self._client = client or aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
        )

    # --- hashes ---

    @_wrap_errors
    async def hget(self, key: str, field: str) -> str | None:
        return await self._client.hget(key, field)

    @_wrap_errors
    async def hset(self, key: str, mapping: Mapping[str, str]) -> None:
        if mapping:
            await self._client.hset(key, mapping=dict(mapping))

    @_wrap_errors
    async def hgetall(self, key: str) -> dict[str, str]:
        return await self._client.hgetall(key) or {}

    @_wrap_errors
    async def hdel(self, key: str, *fields: str) -> None:
        if fields:
            await self._client.hdel(key, *fields)

    # --- plain keys ---

    @_wrap_errors
    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    @_wrap_errors
    async def set(self, key: str, value: str) -> None:
        await self._client.set(key, value)

    @_wrap_errors
    async def set_if_absent(self, key: str, value: str) -> bool:
        return bool(await self._client.set(key, value, nx=True))

    @_wrap_errors
    async def delete(self, *keys: str) -> None:
        if keys:
            await self._client.delete(*keys)

    @_wrap_errors
    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(key))

    @_wrap_errors
    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._client.expire(key, seconds))

    # --- sets ---

    @_wrap_errors
    async def sadd(self, key: str, *members: str) -> None:
        if members:
            await self._client.sadd(key, *members)

    @_wrap_errors
    async def srem(self, key: str, *members: str) -> None:
        if members:
            await self._client.srem(key, *members)

    @_wrap_errors
    async def smembers(self, key: str) -> set[str]:
        return set(await self._client.smembers(key))

    @_wrap_errors
    async def sunion(self, *keys: str) -> set[str]:
        if not keys:
            return set()
        return set(await self._client.sunion(list(keys)))

    @_wrap_errors
    async def scard(self, key: str) -> int:
        return int(await self._client.scard(key))

    @_wrap_errors
    async def sismember(self, key: str, member: str) -> bool:
        return bool(await self._client.sismember(key, member))

    # --- sorted sets ---

    @_wrap_errors
    async def zadd(self, key: str, score: float, member: str) -> None:
        await self._client.zadd(key, {member: score})

    @_wrap_errors
    async def zrem(self, key: str, *members: str) -> None:
        if members:
            await self._client.zrem(key, *members)

    @_wrap_errors
    async def zrange(self, key: str, start: int, stop: int) -> list[str]:
        return list(await self._client.zrange(key, start, stop))

    @_wrap_errors
    async def zrevrange(self, key: str, start: int, stop: int) -> list[str]:
        return list(await self._client.zrevrange(key, start, stop))

    @_wrap_errors
    async def zrangebyscore(self, key: str, min: float, max: float) -> list[str]:
        return list(await self._client.zrangebyscore(key, min, max))

    @_wrap_errors
    async def zrevrangebyscore(
        self,
        key: str,
        max: float,
        min: float,
        offset: int | None = None,
        count: int | None = None,
    ) -> list[str]:
        if offset is not None or count is not None:
            return list(await self._client.zrevrangebyscore(
                key, max, min, start=offset or 0, num=-1 if count is None else count,
            ))
        return list(await self._client.zrevrangebyscore(key, max, min))

    @_wrap_errors
    async def zremrangebyrank(self, key: str, start: int, stop: int) -> None:
        await self._client.zremrangebyrank(key, start, stop)

    @_wrap_errors
    async def zcard(self, key: str) -> int:
        return int(await self._client.zcard(key))

    @_wrap_errors
    async def zscore(self, key: str, member: str) -> float | None:
        score = await self._client.zscore(key, member)
        return None if score is None else float(score)

    @_wrap_errors
    async def zcount(self, key: str, min: float, max: float) -> int:
        return int(await self._client.zcount(key, min, max))

    def pipeline(self) -> RedisPipeline:
        return RedisPipeline(self._client, self._error_type, self._watch_error)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except self._error_type as exc:
            logger.warning("Redis connection check failed: %s", exc)
            return False

    async def close(self) -> None:
        await self._client.aclose()
