"""Memory entity store: hash per memory plus its secondary indices."""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable

from recallkv.embeddings import EmbeddingProvider
from recallkv.exceptions import NotFoundError, ProviderError, ValidationError
from recallkv.storage.base import KVPipeline, KVStore
from recallkv.storage.keys import StorageKeys, WorkflowKeys
from recallkv.types import (
    IMPORTANT_THRESHOLD,
    ContextType,
    MemoryEntry,
    MemoryRelationship,
    MemoryStats,
    WorkspaceMode,
)
from recallkv.utils import dedupe, generate_summary, json_dumps, json_loads, new_id, now_ms

logger = logging.getLogger(__name__)

MIN_TTL_SECONDS = 60
_UPDATABLE = {"content", "context_type", "importance", "tags", "embedding", "summary", "category", "session_id"}


def parse_embedding(raw: Any) -> list[float] | None:
    """Decode a stored embedding field.

    Returns None for an absent or empty embedding. Raises ProviderError when the
    payload is not a JSON list of finite numbers.
    """
    if raw is None or raw == "":
        return None
    value = raw
    if isinstance(raw, (str, bytes)):
        try:
            value = json_loads(raw)
        except Exception as exc:
            raise ProviderError(f"embedding is not valid JSON: {exc}") from exc
    if value is None:
        return None
    if not isinstance(value, list):
        raise ProviderError(f"embedding must be a list, got {type(value).__name__}")
    out: list[float] = []
    for x in value:
        if isinstance(x, bool) or not isinstance(x, (int, float)):
            raise ProviderError(f"embedding contains a non-numeric value: {x!r}")
        f = float(x)
        if not math.isfinite(f):
            raise ProviderError("embedding contains a non-finite value")
        out.append(f)
    return out or None


def _opt_int(value: str | None) -> int | None:
    if value in (None, ""):
        return None
    return int(value)


def _encode(entry: MemoryEntry) -> dict[str, str]:
    return {
        "id": entry.id,
        "content": entry.content,
        "context_type": entry.context_type.value,
        "importance": str(entry.importance),
        "tags": json_dumps(entry.tags),
        "embedding": json_dumps(entry.embedding) if entry.embedding else "",
        "is_global": "true" if entry.is_global else "false",
        "workspace_id": entry.workspace_id,
        "summary": entry.summary,
        "category": entry.category or "",
        "session_id": entry.session_id or "",
        "ttl_seconds": "" if entry.ttl_seconds is None else str(entry.ttl_seconds),
        "expires_at": "" if entry.expires_at is None else str(entry.expires_at),
        "created_at": str(entry.created_at),
        "updated_at": str(entry.updated_at),
    }


def decode_memory(data: dict[str, str]) -> MemoryEntry:
    """Build a MemoryEntry from a memory hash. A bad embedding reads as None."""
    try:
        embedding = parse_embedding(data.get("embedding"))
    except ProviderError as exc:
        logger.debug("Memory %s has an unreadable embedding: %s", data.get("id"), exc)
        embedding = None
    try:
        context_type = ContextType(data.get("context_type") or ContextType.INFORMATION.value)
    except ValueError:
        context_type = ContextType.INFORMATION
    try:
        tags = json_loads(data["tags"]) if data.get("tags") else []
    except Exception:
        tags = []
    return MemoryEntry(
        id=data["id"],
        content=data.get("content", ""),
        context_type=context_type,
        importance=int(data.get("importance") or 5),
        tags=[str(t) for t in tags] if isinstance(tags, list) else [],
        embedding=embedding,
        is_global=data.get("is_global") == "true",
        workspace_id=data.get("workspace_id", ""),
        summary=data.get("summary", ""),
        category=data.get("category") or None,
        session_id=data.get("session_id") or None,
        ttl_seconds=_opt_int(data.get("ttl_seconds")),
        expires_at=_opt_int(data.get("expires_at")),
        created_at=int(data.get("created_at") or 0),
        updated_at=int(data.get("updated_at") or 0),
    )


def _clean_tags(tags: Iterable[str] | None) -> list[str]:
    if tags is None:
        return []
    if isinstance(tags, str):
        raise ValidationError("tags must be a list of strings", field="tags")
    return dedupe(t.strip() for t in tags if isinstance(t, str) and t.strip())


def _check_importance(importance: Any) -> int:
    if isinstance(importance, bool) or not isinstance(importance, int):
        raise ValidationError("importance must be an integer", field="importance")
    if not 1 <= importance <= 10:
        raise ValidationError("importance must be between 1 and 10", field="importance")
    return importance


def _check_context_type(value: ContextType | str) -> ContextType:
    try:
        return ContextType(value)
    except ValueError as exc:
        raise ValidationError(f"unknown context type: {value}", field="context_type") from exc


def _check_embedding(embedding: Any) -> list[float] | None:
    if embedding is None:
        return None
    if hasattr(embedding, "tolist"):
        embedding = embedding.tolist()
    try:
        return parse_embedding(list(embedding))
    except (ProviderError, TypeError) as exc:
        raise ValidationError(str(exc), field="embedding") from exc


class MemoryStore:
    """CRUD and index maintenance for memories of one workspace.

    Workspace memories live under ``ws:<id>:``; memories flagged ``is_global``
    live under ``global:``. The workspace mode decides which scopes the read
    paths consult.
    """

    def __init__(
        self,
        kv: KVStore,
        workspace_id: str,
        workspace_mode: WorkspaceMode | str = WorkspaceMode.ISOLATED,
        embedder: EmbeddingProvider | None = None,
    ) -> None:
        if not workspace_id:
            raise ValidationError("workspace_id is required", field="workspace_id")
        self.kv = kv
        self.workspace_id = workspace_id
        self.workspace_mode = WorkspaceMode(workspace_mode)
        self.embedder = embedder

    # --- scopes ---

    def scope_for(self, is_global: bool) -> str | None:
        return None if is_global else self.workspace_id

    def read_scopes(self) -> list[str | None]:
        if self.workspace_mode == WorkspaceMode.GLOBAL:
            return [None]
        if self.workspace_mode == WorkspaceMode.HYBRID:
            return [self.workspace_id, None]
        return [self.workspace_id]

    @property
    def all_scopes(self) -> list[str | None]:
        return [self.workspace_id, None]

    # --- create ---

    async def create_memory(
        self,
        content: str,
        context_type: ContextType | str = ContextType.INFORMATION,
        importance: int = 5,
        tags: Iterable[str] | None = None,
        embedding: list[float] | None = None,
        is_global: bool = False,
        summary: str | None = None,
        category: str | None = None,
        session_id: str | None = None,
        ttl_seconds: int | None = None,
    ) -> MemoryEntry:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content must not be empty", field="content")
        ctype = _check_context_type(context_type)
        importance = _check_importance(importance)
        if ttl_seconds is not None and ttl_seconds < MIN_TTL_SECONDS:
            raise ValidationError(
                f"ttl_seconds must be at least {MIN_TTL_SECONDS}", field="ttl_seconds"
            )
        vector = _check_embedding(embedding)
        if vector is None and self.embedder is not None:
            generated = await self.embedder.generate_embedding(content)
            vector = _check_embedding(generated)

        is_global = is_global or self.workspace_mode == WorkspaceMode.GLOBAL
        ts = now_ms()
        entry = MemoryEntry(
            id=new_id(),
            content=content,
            context_type=ctype,
            importance=importance,
            tags=_clean_tags(tags),
            embedding=vector,
            is_global=is_global,
            workspace_id=self.workspace_id,
            summary=summary or generate_summary(content),
            category=(category or "").strip() or None,
            session_id=session_id,
            ttl_seconds=ttl_seconds,
            expires_at=ts + ttl_seconds * 1000 if ttl_seconds else None,
            created_at=ts,
            updated_at=ts,
        )

        scope = self.scope_for(is_global)
        key = StorageKeys.memory(scope, entry.id)
        pipe = self.kv.pipeline()
        pipe.hset(key, _encode(entry))
        pipe.sadd(StorageKeys.memories(scope), entry.id)
        pipe.zadd(StorageKeys.timeline(scope), entry.created_at, entry.id)
        pipe.sadd(StorageKeys.by_type(scope, ctype.value), entry.id)
        for tag in entry.tags:
            pipe.sadd(StorageKeys.by_tag(scope, tag), entry.id)
        if entry.importance >= IMPORTANT_THRESHOLD:
            pipe.zadd(StorageKeys.important(scope), entry.importance, entry.id)
        if entry.embedding:
            pipe.sadd(StorageKeys.embedded(scope), entry.id)
        if entry.category:
            self._queue_category_link(pipe, scope, entry.id, entry.category, ts)
        if ttl_seconds:
            pipe.expire(key, ttl_seconds)
        await pipe.execute()
        return entry

    async def create_memories(self, items: Iterable[dict[str, Any]]) -> list[MemoryEntry]:
        out: list[MemoryEntry] = []
        for item in items:
            out.append(await self.create_memory(**item))
        return out

    def _queue_category_link(
        self, pipe: KVPipeline, scope: str | None, memory_id: str, name: str, ts: int
    ) -> None:
        pipe.set(StorageKeys.memory_category(scope, memory_id), name)
        pipe.sadd(StorageKeys.category(scope, name), memory_id)
        pipe.zadd(StorageKeys.categories(scope), ts, name)

    # --- read ---

    async def locate(self, memory_id: str, is_global: bool | None = None) -> tuple[str | None, dict[str, str]]:
        """Find the scope holding a memory hash. Returns (scope, {}) when absent."""
        scopes = self.all_scopes if is_global is None else [self.scope_for(is_global)]
        for scope in scopes:
            data = await self.kv.hgetall(StorageKeys.memory(scope, memory_id))
            if data:
                return scope, data
        return None, {}

    async def get_memory(self, memory_id: str, is_global: bool | None = None) -> MemoryEntry | None:
        _, data = await self.locate(memory_id, is_global)
        return decode_memory(data) if data else None

    async def require_memory(self, memory_id: str, is_global: bool | None = None) -> MemoryEntry:
        entry = await self.get_memory(memory_id, is_global)
        if entry is None:
            raise NotFoundError("memory", memory_id)
        return entry

    async def exists(self, memory_id: str) -> bool:
        for scope in self.all_scopes:
            if await self.kv.exists(StorageKeys.memory(scope, memory_id)):
                return True
        return False

    async def get_memories(self, memory_ids: Iterable[str]) -> list[MemoryEntry]:
        out: list[MemoryEntry] = []
        for memory_id in dedupe(memory_ids):
            entry = await self.get_memory(memory_id)
            if entry is not None:
                out.append(entry)
        return out

    async def _load_scoped(self, scope: str | None, memory_ids: Iterable[str]) -> list[MemoryEntry]:
        # Index entries may outlive an expired hash; those are skipped.
        out: list[MemoryEntry] = []
        for memory_id in memory_ids:
            data = await self.kv.hgetall(StorageKeys.memory(scope, memory_id))
            if data:
                out.append(decode_memory(data))
        return out

    @staticmethod
    def _newest_first(entries: list[MemoryEntry]) -> list[MemoryEntry]:
        return sorted(entries, key=lambda m: (m.created_at, m.id), reverse=True)

    async def get_recent_memories(self, limit: int = 10) -> list[MemoryEntry]:
        entries: list[MemoryEntry] = []
        for scope in self.read_scopes():
            ids = await self.kv.zrevrange(StorageKeys.timeline(scope), 0, max(limit, 1) - 1)
            entries.extend(await self._load_scoped(scope, ids))
        return self._newest_first(entries)[:limit]

    async def get_memories_by_time_window(self, start_ms: int, end_ms: int) -> list[MemoryEntry]:
        if end_ms < start_ms:
            raise ValidationError("end_ms must not precede start_ms", field="end_ms")
        entries: list[MemoryEntry] = []
        for scope in self.read_scopes():
            ids = await self.kv.zrangebyscore(StorageKeys.timeline(scope), start_ms, end_ms)
            entries.extend(await self._load_scoped(scope, ids))
        return self._newest_first(entries)

    async def get_memories_by_type(self, context_type: ContextType | str) -> list[MemoryEntry]:
        ctype = _check_context_type(context_type)
        entries: list[MemoryEntry] = []
        for scope in self.read_scopes():
            ids = await self.kv.smembers(StorageKeys.by_type(scope, ctype.value))
            entries.extend(await self._load_scoped(scope, ids))
        return self._newest_first(entries)

    async def get_memories_by_tag(self, tag: str) -> list[MemoryEntry]:
        entries: list[MemoryEntry] = []
        for scope in self.read_scopes():
            ids = await self.kv.smembers(StorageKeys.by_tag(scope, tag))
            entries.extend(await self._load_scoped(scope, ids))
        return self._newest_first(entries)

    async def get_important_memories(
        self, min_importance: int = IMPORTANT_THRESHOLD, limit: int | None = None
    ) -> list[MemoryEntry]:
        """Memories from the importance index (which only holds importance >= 8)."""
        entries: list[MemoryEntry] = []
        for scope in self.read_scopes():
            ids = await self.kv.zrevrangebyscore(StorageKeys.important(scope), 10, min_importance)
            entries.extend(await self._load_scoped(scope, ids))
        entries.sort(key=lambda m: (m.importance, m.created_at), reverse=True)
        return entries if limit is None else entries[:limit]

    async def get_memories_by_category(self, name: str) -> list[MemoryEntry]:
        entries: list[MemoryEntry] = []
        for scope in self.read_scopes():
            ids = await self.kv.smembers(StorageKeys.category(scope, name))
            entries.extend(await self._load_scoped(scope, ids))
        return self._newest_first(entries)

    async def _live_ids(self, scope: str | None, memory_ids: Iterable[str]) -> list[str]:
        # Index sets keep ids whose hash has expired; only live hashes count.
        return [
            memory_id for memory_id in memory_ids
            if await self.kv.exists(StorageKeys.memory(scope, memory_id))
        ]

    async def _embedded_ids(self, scope: str | None) -> set[str]:
        out: set[str] = set()
        for memory_id in await self.kv.smembers(StorageKeys.memories(scope)):
            if await self.kv.hget(StorageKeys.memory(scope, memory_id), "embedding"):
                out.add(memory_id)
        return out

    async def get_embedded_ids(self, include_global: bool = False) -> set[str]:
        ids = await self._embedded_ids(self.workspace_id)
        if include_global:
            ids |= await self._embedded_ids(None)
        return ids

    async def count_embedded(self, scopes: Iterable[str | None] | None = None) -> int:
        """Live memories carrying a vector, across ``scopes`` (default: read scopes)."""
        total = 0
        for scope in self.read_scopes() if scopes is None else scopes:
            total += len(await self._embedded_ids(scope))
        return total

    async def count_memories(self) -> int:
        total = 0
        for scope in self.read_scopes():
            ids = await self.kv.smembers(StorageKeys.memories(scope))
            total += len(await self._live_ids(scope, ids))
        return total

    async def get_summary_stats(self) -> MemoryStats:
        stats = MemoryStats(workspace_id=self.workspace_id)
        for scope in self.read_scopes():
            ids = await self.kv.smembers(StorageKeys.memories(scope))
            stats.total_memories += len(await self._live_ids(scope, ids))
            stats.embedded_memories += len(await self._embedded_ids(scope))
            important = await self.kv.zrange(StorageKeys.important(scope), 0, -1)
            stats.important_count += len(await self._live_ids(scope, important))
            stats.total_relationships += await self.kv.scard(StorageKeys.relationships(scope))
            for ctype in ContextType:
                typed = await self.kv.smembers(StorageKeys.by_type(scope, ctype.value))
                n = len(await self._live_ids(scope, typed))
                if n:
                    stats.by_type[ctype.value] = stats.by_type.get(ctype.value, 0) + n
        return stats

    # --- update ---

    async def update_memory(self, memory_id: str, **changes: Any) -> MemoryEntry:
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValidationError(f"fields cannot be updated: {sorted(unknown)}", field=sorted(unknown)[0])
        scope, data = await self.locate(memory_id)
        if not data:
            raise NotFoundError("memory", memory_id)
        old = decode_memory(data)

        fields = old.model_dump()
        if "content" in changes:
            content = changes["content"]
            if not isinstance(content, str) or not content.strip():
                raise ValidationError("content must not be empty", field="content")
            fields["content"] = content
            if "summary" not in changes:
                fields["summary"] = generate_summary(content)
        if "context_type" in changes:
            fields["context_type"] = _check_context_type(changes["context_type"])
        if "importance" in changes:
            fields["importance"] = _check_importance(changes["importance"])
        if "tags" in changes:
            fields["tags"] = _clean_tags(changes["tags"])
        if "embedding" in changes:
            fields["embedding"] = _check_embedding(changes["embedding"])
        if changes.get("summary"):
            fields["summary"] = changes["summary"]
        if "category" in changes:
            fields["category"] = (changes["category"] or "").strip() or None
        if "session_id" in changes:
            fields["session_id"] = changes["session_id"]
        ts = now_ms()
        fields["updated_at"] = max(ts, old.updated_at)
        new = MemoryEntry(**fields)

        encoded = _encode(new)
        if "embedding" not in changes:
            # Keep the stored payload byte-for-byte, unreadable or not.
            encoded["embedding"] = data.get("embedding", "")

        key = StorageKeys.memory(scope, memory_id)
        pipe = self.kv.pipeline()
        pipe.hset(key, encoded)
        if new.context_type != old.context_type:
            pipe.srem(StorageKeys.by_type(scope, old.context_type.value), memory_id)
            pipe.sadd(StorageKeys.by_type(scope, new.context_type.value), memory_id)
        for tag in set(old.tags) - set(new.tags):
            pipe.srem(StorageKeys.by_tag(scope, tag), memory_id)
        for tag in set(new.tags) - set(old.tags):
            pipe.sadd(StorageKeys.by_tag(scope, tag), memory_id)
        if new.importance >= IMPORTANT_THRESHOLD:
            pipe.zadd(StorageKeys.important(scope), new.importance, memory_id)
        else:
            pipe.zrem(StorageKeys.important(scope), memory_id)
        if "embedding" in changes:
            if new.embedding:
                pipe.sadd(StorageKeys.embedded(scope), memory_id)
            else:
                pipe.srem(StorageKeys.embedded(scope), memory_id)
        if new.category != old.category:
            if old.category:
                pipe.srem(StorageKeys.category(scope, old.category), memory_id)
                pipe.delete(StorageKeys.memory_category(scope, memory_id))
            if new.category:
                self._queue_category_link(pipe, scope, memory_id, new.category, ts)
        await pipe.execute()
        return new

    # --- delete ---

    def queue_relationship_removal(
        self, pipe: KVPipeline, relationship_id: str, endpoints: Iterable[str]
    ) -> None:
        """Queue removal of a relationship hash and every set that references it."""
        for scope in self.all_scopes:
            pipe.delete(StorageKeys.relationship(scope, relationship_id))
            pipe.srem(StorageKeys.relationships(scope), relationship_id)
            for memory_id in set(endpoints):
                pipe.srem(StorageKeys.memory_relationships(scope, memory_id), relationship_id)
                pipe.srem(StorageKeys.memory_relationships_out(scope, memory_id), relationship_id)
                pipe.srem(StorageKeys.memory_relationships_in(scope, memory_id), relationship_id)

    async def read_relationship(self, relationship_id: str) -> MemoryRelationship | None:
        for scope in self.all_scopes:
            data = await self.kv.hgetall(StorageKeys.relationship(scope, relationship_id))
            if data:
                return decode_relationship(data)
        return None

    async def delete_memory(self, memory_id: str) -> bool:
        """Delete a memory and every index entry, edge and workflow link naming it."""
        scope, data = await self.locate(memory_id)
        if not data:
            return False
        entry = decode_memory(data)

        edge_keys: list[str] = []
        for s in self.all_scopes:
            edge_keys += [
                StorageKeys.memory_relationships(s, memory_id),
                StorageKeys.memory_relationships_out(s, memory_id),
                StorageKeys.memory_relationships_in(s, memory_id),
            ]
        relationship_ids = await self.kv.sunion(*edge_keys)
        relationships: list[tuple[str, list[str]]] = []
        for rid in sorted(relationship_ids):
            rel = await self.read_relationship(rid)
            endpoints = [memory_id] if rel is None else [rel.from_memory_id, rel.to_memory_id, memory_id]
            relationships.append((rid, endpoints))

        reverse_key = WorkflowKeys.memory_workflows(self.workspace_id, memory_id)
        workflow_ids = await self.kv.smembers(reverse_key)
        category_key = StorageKeys.memory_category(scope, memory_id)
        category = await self.kv.get(category_key) or entry.category

        pipe = self.kv.pipeline()
        pipe.delete(StorageKeys.memory(scope, memory_id))
        pipe.srem(StorageKeys.memories(scope), memory_id)
        pipe.zrem(StorageKeys.timeline(scope), memory_id)
        pipe.srem(StorageKeys.by_type(scope, entry.context_type.value), memory_id)
        for tag in entry.tags:
            pipe.srem(StorageKeys.by_tag(scope, tag), memory_id)
        pipe.zrem(StorageKeys.important(scope), memory_id)
        pipe.srem(StorageKeys.embedded(scope), memory_id)
        if category:
            pipe.srem(StorageKeys.category(scope, category), memory_id)
        pipe.delete(category_key)
        for rid, endpoints in relationships:
            self.queue_relationship_removal(pipe, rid, endpoints)
        pipe.delete(*edge_keys)
        for workflow_id in workflow_ids:
            pipe.srem(WorkflowKeys.memories(self.workspace_id, workflow_id), memory_id)
        pipe.delete(reverse_key)
        await pipe.execute()
        logger.debug(
            "Deleted memory %s (%d relationships, %d workflow links)",
            memory_id, len(relationships), len(workflow_ids),
        )
        return True


def encode_relationship(rel: MemoryRelationship) -> dict[str, str]:
    return {
        "id": rel.id,
        "from_memory_id": rel.from_memory_id,
        "to_memory_id": rel.to_memory_id,
        "relationship_type": rel.relationship_type.value,
        "created_at": str(rel.created_at),
        "metadata": json_dumps(rel.metadata) if rel.metadata else "",
        "is_global": "true" if rel.is_global else "false",
    }


def decode_relationship(data: dict[str, str]) -> MemoryRelationship:
    metadata = None
    if data.get("metadata"):
        try:
            metadata = json_loads(data["metadata"])
        except Exception:
            metadata = None
    return MemoryRelationship(
        id=data["id"],
        from_memory_id=data["from_memory_id"],
        to_memory_id=data["to_memory_id"],
        relationship_type=data["relationship_type"],
        created_at=int(data.get("created_at") or 0),
        metadata=metadata if isinstance(metadata, dict) else None,
        is_global=data.get("is_global") == "true",
    )


__all__ = [
    "MemoryStore",
    "decode_memory",
    "decode_relationship",
    "encode_relationship",
    "parse_embedding",
]
