"""In-process key-value substrate.

Every public coroutine runs to completion without suspending, so under a
single event loop each call (and each pipeline execute) is atomic with
respect to every other coroutine sharing the store.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Mapping

from recallkv.exceptions import StorageError
from recallkv.storage.base import Guard

_MISSING = object()


class _SortedSet(dict):
    """member -> score"""

    def ordered(self) -> list[str]:
        return [m for m, _ in sorted(self.items(), key=lambda kv: (kv[1], kv[0]))]


def _rank_slice(items: list[str], start: int, stop: int) -> list[str]:
    n = len(items)
    if start < 0:
        start = max(n + start, 0)
    if stop < 0:
        stop = n + stop
    if start >= n or start > stop:
        return []
    return items[start:stop + 1]


def _copy(value: Any) -> Any:
    if isinstance(value, (set, dict)):
        return type(value)(value)
    return value


class MemoryPipeline:
    def __init__(self, store: "MemoryKV") -> None:
        self._store = store
        self._ops: list[tuple[str, Callable[[], Any]]] = []
        self._guards: list[tuple[str, Guard]] = []

    def _queue(self, key: str, fn: Callable[[], Any]) -> None:
        self._ops.append((key, fn))

    def guard(self, key: str, check: Guard) -> None:
        self._guards.append((key, check))

    def hset(self, key: str, mapping: Mapping[str, str]) -> None:
        data = dict(mapping)
        self._queue(key, lambda: self._store._hset(key, data))

    def hdel(self, key: str, *fields: str) -> None:
        self._queue(key, lambda: self._store._hdel(key, fields))

    def delete(self, *keys: str) -> None:
        for key in keys:
            self._queue(key, lambda k=key: self._store._delete(k))

    def set(self, key: str, value: str) -> None:
        self._queue(key, lambda: self._store._set(key, value))

    def sadd(self, key: str, *members: str) -> None:
        if members:
            self._queue(key, lambda: self._store._sadd(key, members))

    def srem(self, key: str, *members: str) -> None:
        if members:
            self._queue(key, lambda: self._store._srem(key, members))

    def zadd(self, key: str, score: float, member: str) -> None:
        self._queue(key, lambda: self._store._zadd(key, score, member))

    def zrem(self, key: str, *members: str) -> None:
        if members:
            self._queue(key, lambda: self._store._zrem(key, members))

    def zremrangebyrank(self, key: str, start: int, stop: int) -> None:
        self._queue(key, lambda: self._store._zremrangebyrank(key, start, stop))

    def expire(self, key: str, seconds: int) -> None:
        self._queue(key, lambda: self._store._expire(key, seconds))

    async def execute(self) -> bool:
        ops, self._ops = self._ops, []
        guards, self._guards = self._guards, []
        return self._store._apply_atomically(ops, guards)


class MemoryKV:
    """Dict-backed substrate with Redis-like semantics."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._expires: dict[str, float] = {}

    # --- internals ---

    def _purge(self, key: str) -> None:
        deadline = self._expires.get(key)
        if deadline is not None and time.monotonic() >= deadline:
            self._data.pop(key, None)
            self._expires.pop(key, None)

    def _read(self, key: str, kind: type) -> Any:
        self._purge(key)
        value = self._data.get(key)
        if value is None:
            return None
        if kind is dict and isinstance(value, _SortedSet):
            raise StorageError(f"WRONGTYPE operation against key {key}")
        if not isinstance(value, kind):
            raise StorageError(f"WRONGTYPE operation against key {key}")
        return value

    def _write(self, key: str, kind: type) -> Any:
        value = self._read(key, kind)
        if value is None:
            value = kind()
            self._data[key] = value
        return value

    def _drop_if_empty(self, key: str) -> None:
        value = self._data.get(key)
        if isinstance(value, (set, dict)) and not value:
            self._delete(key)

    def _hset(self, key: str, mapping: Mapping[str, str]) -> None:
        h = self._write(key, dict)
        h.update({str(k): str(v) for k, v in mapping.items()})
        self._drop_if_empty(key)

    def _hdel(self, key: str, fields) -> None:
        h = self._read(key, dict)
        if h is None:
            return
        for f in fields:
            h.pop(f, None)
        self._drop_if_empty(key)

    def _delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._expires.pop(key, None)

    def _set(self, key: str, value: str) -> None:
        self._data[key] = str(value)
        self._expires.pop(key, None)

    def _sadd(self, key: str, members) -> None:
        s = self._write(key, set)
        s.update(str(m) for m in members)

    def _srem(self, key: str, members) -> None:
        s = self._read(key, set)
        if s is None:
            return
        s.difference_update(members)
        self._drop_if_empty(key)

    def _zadd(self, key: str, score: float, member: str) -> None:
        z = self._write(key, _SortedSet)
        z[str(member)] = float(score)

    def _zrem(self, key: str, members) -> None:
        z = self._read(key, _SortedSet)
        if z is None:
            return
        for m in members:
            z.pop(m, None)
        self._drop_if_empty(key)

    def _zremrangebyrank(self, key: str, start: int, stop: int) -> None:
        z = self._read(key, _SortedSet)
        if z is None:
            return
        for m in _rank_slice(z.ordered(), start, stop):
            z.pop(m, None)
        self._drop_if_empty(key)

    def _expire(self, key: str, seconds: int) -> bool:
        self._purge(key)
        if key not in self._data:
            return False
        self._expires[key] = time.monotonic() + seconds
        return True

    def _apply_atomically(
        self,
        ops: list[tuple[str, Callable[[], Any]]],
        guards: list[tuple[str, Guard]] | None = None,
    ) -> bool:
        for key, check in guards or ():
            if not check(self._read(key, str)):
                return False
        touched = {key for key, _ in ops}
        data_backup = {k: _copy(self._data.get(k, _MISSING)) for k in touched}
        expiry_backup = {k: self._expires.get(k) for k in touched}
        try:
            for _, fn in ops:
                fn()
        except Exception as exc:
            for k, v in data_backup.items():
                if v is _MISSING:
                    self._data.pop(k, None)
                else:
                    self._data[k] = v
            for k, deadline in expiry_backup.items():
                if deadline is None:
                    self._expires.pop(k, None)
                else:
                    self._expires[k] = deadline
            if isinstance(exc, StorageError):
                raise
            raise StorageError(f"pipeline failed: {exc}") from exc
        return True

    # --- hashes ---

    async def hget(self, key: str, field: str) -> str | None:
        h = self._read(key, dict)
        return None if h is None else h.get(field)

    async def hset(self, key: str, mapping: Mapping[str, str]) -> None:
        self._hset(key, mapping)

    async def hgetall(self, key: str) -> dict[str, str]:
        h = self._read(key, dict)
        return dict(h) if h else {}

    async def hdel(self, key: str, *fields: str) -> None:
        self._hdel(key, fields)

    # --- plain keys ---

    async def get(self, key: str) -> str | None:
        return self._read(key, str)

    async def set(self, key: str, value: str) -> None:
        self._set(key, value)

    async def set_if_absent(self, key: str, value: str) -> bool:
        self._purge(key)
        if key in self._data:
            return False
        self._data[key] = str(value)
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._delete(key)

    async def exists(self, key: str) -> bool:
        self._purge(key)
        return key in self._data

    async def expire(self, key: str, seconds: int) -> bool:
        return self._expire(key, seconds)

    # --- sets ---

    async def sadd(self, key: str, *members: str) -> None:
        if members:
            self._sadd(key, members)

    async def srem(self, key: str, *members: str) -> None:
        if members:
            self._srem(key, members)

    async def smembers(self, key: str) -> set[str]:
        s = self._read(key, set)
        return set(s) if s else set()

    async def sunion(self, *keys: str) -> set[str]:
        out: set[str] = set()
        for key in keys:
            s = self._read(key, set)
            if s:
                out |= s
        return out

    async def scard(self, key: str) -> int:
        s = self._read(key, set)
        return len(s) if s else 0

    async def sismember(self, key: str, member: str) -> bool:
        s = self._read(key, set)
        return bool(s) and member in s

    # --- sorted sets ---

    async def zadd(self, key: str, score: float, member: str) -> None:
        self._zadd(key, score, member)

    async def zrem(self, key: str, *members: str) -> None:
        if members:
            self._zrem(key, members)

    async def zrange(self, key: str, start: int, stop: int) -> list[str]:
        z = self._read(key, _SortedSet)
        return _rank_slice(z.ordered(), start, stop) if z else []

    async def zrevrange(self, key: str, start: int, stop: int) -> list[str]:
        z = self._read(key, _SortedSet)
        return _rank_slice(list(reversed(z.ordered())), start, stop) if z else []

    async def zrangebyscore(self, key: str, min: float, max: float) -> list[str]:
        z = self._read(key, _SortedSet)
        if not z:
            return []
        return [m for m in z.ordered() if min <= z[m] <= max]

    async def zrevrangebyscore(
        self,
        key: str,
        max: float,
        min: float,
        offset: int | None = None,
        count: int | None = None,
    ) -> list[str]:
        z = self._read(key, _SortedSet)
        if not z:
            return []
        members = [m for m in reversed(z.ordered()) if min <= z[m] <= max]
        if offset is not None:
            members = members[offset:]
        if count is not None and count >= 0:
            members = members[:count]
        return members

    async def zremrangebyrank(self, key: str, start: int, stop: int) -> None:
        self._zremrangebyrank(key, start, stop)

    async def zcard(self, key: str) -> int:
        z = self._read(key, _SortedSet)
        return len(z) if z else 0

    async def zscore(self, key: str, member: str) -> float | None:
        z = self._read(key, _SortedSet)
        return None if not z else z.get(member)

    async def zcount(self, key: str, min: float, max: float) -> int:
        z = self._read(key, _SortedSet)
        if not z:
            return 0
        return sum(1 for score in z.values() if min <= score <= max)

    def pipeline(self) -> MemoryPipeline:
        return MemoryPipeline(self)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
