"""Key-value substrate contract."""

from __future__ import annotations

from typing import Callable, Mapping, Protocol, runtime_checkable

# Receives the current string value of a watched key (None when absent).
Guard = Callable[[str | None], bool]


@runtime_checkable
class KVPipeline(Protocol):
    """Queued writes committed together by execute().

    guard() makes the batch conditional: execute() applies nothing and returns
    False unless every guarded key still satisfies its check at commit time.
    """

    def guard(self, key: str, check: Guard) -> None: ...
    def hset(self, key: str, mapping: Mapping[str, str]) -> None: ...
    def hdel(self, key: str, *fields: str) -> None: ...
    def delete(self, *keys: str) -> None: ...
    def set(self, key: str, value: str) -> None: ...
    def sadd(self, key: str, *members: str) -> None: ...
    def srem(self, key: str, *members: str) -> None: ...
    def zadd(self, key: str, score: float, member: str) -> None: ...
    def zrem(self, key: str, *members: str) -> None: ...
    def zremrangebyrank(self, key: str, start: int, stop: int) -> None: ...
    def expire(self, key: str, seconds: int) -> None: ...
    async def execute(self) -> bool: ...


@runtime_checkable
class KVStore(Protocol):
    # Hashes
    async def hget(self, key: str, field: str) -> str | None: ...
    async def hset(self, key: str, mapping: Mapping[str, str]) -> None: ...
    async def hgetall(self, key: str) -> dict[str, str]: ...
    async def hdel(self, key: str, *fields: str) -> None: ...

    # Plain keys
    async def get(self, key: str) -> str | None: ...
    async def set(self, key: str, value: str) -> None: ...
    async def set_if_absent(self, key: str, value: str) -> bool: ...
    async def delete(self, *keys: str) -> None: ...
    async def exists(self, key: str) -> bool: ...
    async def expire(self, key: str, seconds: int) -> bool: ...

    # Unordered sets
    async def sadd(self, key: str, *members: str) -> None: ...
    async def srem(self, key: str, *members: str) -> None: ...
    async def smembers(self, key: str) -> set[str]: ...
    async def sunion(self, *keys: str) -> set[str]: ...
    async def scard(self, key: str) -> int: ...
    async def sismember(self, key: str, member: str) -> bool: ...

    # Sorted sets
    async def zadd(self, key: str, score: float, member: str) -> None: ...
    async def zrem(self, key: str, *members: str) -> None: ...
    async def zrange(self, key: str, start: int, stop: int) -> list[str]: ...
    async def zrevrange(self, key: str, start: int, stop: int) -> list[str]: ...
    async def zrangebyscore(self, key: str, min: float, max: float) -> list[str]: ...
    async def zrevrangebyscore(
        self,
        key: str,
        max: float,
        min: float,
        offset: int | None = None,
        count: int | None = None,
    ) -> list[str]: ...
    async def zremrangebyrank(self, key: str, start: int, stop: int) -> None: ...
    async def zcard(self, key: str) -> int: ...
    async def zscore(self, key: str, member: str) -> float | None: ...
    async def zcount(self, key: str, min: float, max: float) -> int: ...

    def pipeline(self) -> KVPipeline: ...

    async def ping(self) -> bool: ...
    async def close(self) -> None: ...
