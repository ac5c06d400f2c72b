from __future__ import annotations

import asyncio

import pytest

from recallkv.embeddings import HashEmbedder
from recallkv.exceptions import NotFoundError, ProviderError, ValidationError
from recallkv.graph import RelationshipGraph
from recallkv.memory import MemoryStore, parse_embedding
from recallkv.storage import MemoryKV, StorageKeys, WorkflowKeys
from recallkv.workflow import WorkflowCoordinator

WS = "ws1"


def _store(mode: str = "isolated", **kwargs) -> MemoryStore:
    return MemoryStore(MemoryKV(), WS, workspace_mode=mode, **kwargs)


def test_create_memory_writes_every_index():
    async def _run() -> None:
        store = _store()
        kv = store.kv
        m = await store.create_memory(
            "Use pnpm for installs",
            context_type="directive",
            importance=9,
            tags=["tooling", "tooling", " js "],
            embedding=[0.1, 0.2],
            category="build",
        )
        assert m.tags == ["tooling", "js"]
        assert m.summary == "Use pnpm for installs"
        assert await kv.sismember(StorageKeys.memories(WS), m.id)
        assert await kv.sismember(StorageKeys.by_type(WS, "directive"), m.id)
        assert await kv.sismember(StorageKeys.by_tag(WS, "js"), m.id)
        assert await kv.zscore(StorageKeys.timeline(WS), m.id) == float(m.created_at)
        assert await kv.zscore(StorageKeys.important(WS), m.id) == 9.0
        assert await kv.sismember(StorageKeys.embedded(WS), m.id)
        assert await kv.get(StorageKeys.memory_category(WS, m.id)) == "build"

        fetched = await store.get_memory(m.id)
        assert fetched == m

    asyncio.run(_run())


def test_important_index_only_holds_high_importance():
    async def _run() -> None:
        store = _store()
        low = await store.create_memory("minor", importance=7)
        high = await store.create_memory("major", importance=8)
        ids = [m.id for m in await store.get_important_memories()]
        assert ids == [high.id]
        assert await store.kv.zscore(StorageKeys.important(WS), low.id) is None

    asyncio.run(_run())


def test_create_memory_validation():
    async def _run() -> None:
        store = _store()
        with pytest.raises(ValidationError):
            await store.create_memory("   ")
        with pytest.raises(ValidationError):
            await store.create_memory("x", importance=11)
        with pytest.raises(ValidationError):
            await store.create_memory("x", context_type="gossip")
        with pytest.raises(ValidationError):
            await store.create_memory("x", ttl_seconds=30)
        with pytest.raises(ValidationError):
            await store.create_memory("x", embedding=[1.0, float("nan")])
        assert await store.count_memories() == 0

    asyncio.run(_run())


def test_ttl_sets_expiry():
    async def _run() -> None:
        store = _store()
        m = await store.create_memory("short lived", ttl_seconds=60)
        assert m.expires_at == m.created_at + 60_000
        assert StorageKeys.memory(WS, m.id) in store.kv._expires

    asyncio.run(_run())


def test_embedder_attaches_vector_when_none_given():
    async def _run() -> None:
        store = _store(embedder=HashEmbedder(dims=64))
        m = await store.create_memory("vector please")
        assert m.embedding is not None and len(m.embedding) == 64
        assert await store.count_embedded() == 1

    asyncio.run(_run())


def test_get_memory_falls_back_to_global_scope():
    async def _run() -> None:
        store = _store()
        g = await store.create_memory("shared fact", is_global=True)
        assert await store.kv.exists(StorageKeys.memory(None, g.id))
        assert (await store.get_memory(g.id)).is_global is True
        assert await store.get_memory(g.id, is_global=False) is None
        with pytest.raises(NotFoundError):
            await store.require_memory("nope")

    asyncio.run(_run())


def test_workspace_modes_choose_read_scopes():
    async def _run() -> None:
        kv = MemoryKV()
        isolated = MemoryStore(kv, WS)
        await isolated.create_memory("local", tags=["t"])
        await isolated.create_memory("shared", tags=["t"], is_global=True)
        hybrid = MemoryStore(kv, WS, workspace_mode="hybrid")
        global_only = MemoryStore(kv, WS, workspace_mode="global")

        assert [m.content for m in await isolated.get_memories_by_tag("t")] == ["local"]
        assert {m.content for m in await hybrid.get_memories_by_tag("t")} == {"local", "shared"}
        assert [m.content for m in await global_only.get_memories_by_tag("t")] == ["shared"]
        assert await hybrid.count_memories() == 2

    asyncio.run(_run())


def test_update_memory_reindexes():
    async def _run() -> None:
        store = _store()
        kv = store.kv
        m = await store.create_memory("v1", tags=["a", "b"], importance=9, category="old")
        updated = await store.update_memory(
            m.id, content="v2", tags=["b", "c"], importance=3,
            context_type="decision", category="new",
        )
        assert updated.content == "v2" and updated.summary == "v2"
        assert not await kv.sismember(StorageKeys.by_tag(WS, "a"), m.id)
        assert await kv.sismember(StorageKeys.by_tag(WS, "c"), m.id)
        assert await kv.zscore(StorageKeys.important(WS), m.id) is None
        assert not await kv.sismember(StorageKeys.by_type(WS, "information"), m.id)
        assert await kv.sismember(StorageKeys.by_type(WS, "decision"), m.id)
        assert not await kv.sismember(StorageKeys.category(WS, "old"), m.id)
        assert await kv.get(StorageKeys.memory_category(WS, m.id)) == "new"

        with pytest.raises(NotFoundError):
            await store.update_memory("missing", content="x")
        with pytest.raises(ValidationError):
            await store.update_memory(m.id, created_at=1)

    asyncio.run(_run())


def test_delete_memory_removes_every_reference():
    async def _run() -> None:
        store = _store()
        kv = store.kv
        graph = RelationshipGraph(store)
        workflows = WorkflowCoordinator(store)

        a = await store.create_memory("anchor")
        b = await store.create_memory(
            "doomed", context_type="decision", importance=9,
            tags=["x"], embedding=[1.0, 0.0], category="c1",
        )
        rel = await graph.create_relationship(a.id, b.id, "relates_to")
        back = await graph.create_relationship(b.id, a.id, "references")
        wf = await workflows.start("task")
        await workflows.link_memory(wf.id, b.id)

        assert await store.delete_memory(b.id) is True

        assert await store.get_memory(b.id) is None
        assert not await kv.sismember(StorageKeys.memories(WS), b.id)
        assert not await kv.sismember(StorageKeys.by_type(WS, "decision"), b.id)
        assert not await kv.sismember(StorageKeys.by_tag(WS, "x"), b.id)
        assert await kv.zscore(StorageKeys.timeline(WS), b.id) is None
        assert await kv.zscore(StorageKeys.important(WS), b.id) is None
        assert not await kv.sismember(StorageKeys.embedded(WS), b.id)
        assert not await kv.sismember(StorageKeys.category(WS, "c1"), b.id)
        assert await kv.get(StorageKeys.memory_category(WS, b.id)) is None
        assert await kv.scard(WorkflowKeys.memories(WS, wf.id)) == 0
        assert await kv.exists(WorkflowKeys.memory_workflows(WS, b.id)) is False

        for rid in (rel.id, back.id):
            assert await graph.get_relationship(rid) is None
            assert not await kv.sismember(StorageKeys.relationships(WS), rid)
        assert await kv.smembers(StorageKeys.memory_relationships_out(WS, a.id)) == set()
        assert await kv.smembers(StorageKeys.memory_relationships_in(WS, a.id)) == set()
        assert await kv.smembers(StorageKeys.memory_relationships(WS, a.id)) == set()
        assert await graph.get_related_memories(a.id, depth=3) == []

        assert await store.delete_memory(b.id) is False

    asyncio.run(_run())


def test_recent_and_time_window_reads_are_newest_first():
    async def _run() -> None:
        store = _store()
        first = await store.create_memory("one")
        await asyncio.sleep(0.002)
        second = await store.create_memory("two")
        recent = await store.get_recent_memories(limit=5)
        assert [m.id for m in recent] == [second.id, first.id]
        window = await store.get_memories_by_time_window(first.created_at, second.created_at)
        assert [m.id for m in window] == [second.id, first.id]
        with pytest.raises(ValidationError):
            await store.get_memories_by_time_window(10, 5)

    asyncio.run(_run())


def test_summary_stats():
    async def _run() -> None:
        store = _store()
        a = await store.create_memory("a", context_type="error", importance=10, embedding=[1.0])
        b = await store.create_memory("b", context_type="error")
        await RelationshipGraph(store).create_relationship(a.id, b.id)
        stats = await store.get_summary_stats()
        assert stats.total_memories == 2
        assert stats.embedded_memories == 1
        assert stats.important_count == 1
        assert stats.total_relationships == 1
        assert stats.by_type == {"error": 2}

    asyncio.run(_run())


def test_expired_memories_drop_out_of_counts():
    async def _run() -> None:
        store = _store()
        kept = await store.create_memory("kept", context_type="error", embedding=[1.0])
        doomed = await store.create_memory(
            "gone", context_type="error", importance=9, embedding=[0.5], ttl_seconds=60
        )
        assert await store.count_memories() == 2
        assert await store.count_embedded() == 2

        await store.kv.expire(StorageKeys.memory(WS, doomed.id), 0)
        assert await store.count_memories() == 1
        assert await store.count_embedded() == 1
        assert await store.get_embedded_ids() == {kept.id}
        stats = await store.get_summary_stats()
        assert stats.total_memories == 1
        assert stats.embedded_memories == 1
        assert stats.important_count == 0
        assert stats.by_type == {"error": 1}

    asyncio.run(_run())


def test_batch_create_and_category_reads():
    async def _run() -> None:
        store = _store()
        created = await store.create_memories([
            {"content": "ci runs on push", "category": "ci", "embedding": [1.0, 0.0]},
            {"content": "ci caches wheels", "category": "ci"},
            {"content": "shared style guide", "is_global": True, "embedding": [0.0, 1.0]},
        ])
        assert len(created) == 3
        in_ci = await store.get_memories_by_category("ci")
        assert {m.id for m in in_ci} == {created[0].id, created[1].id}
        assert await store.get_embedded_ids() == {created[0].id}
        assert await store.get_embedded_ids(include_global=True) == {created[0].id, created[2].id}

        await store.update_memory(created[1].id, category="docs")
        assert [m.id for m in await store.get_memories_by_category("ci")] == [created[0].id]
        assert [m.id for m in await store.get_memories_by_category("docs")] == [created[1].id]

    asyncio.run(_run())


def test_parse_embedding():
    assert parse_embedding(None) is None
    assert parse_embedding("") is None
    assert parse_embedding("[1, 2.5]") == [1.0, 2.5]
    assert parse_embedding([0.5]) == [0.5]
    for bad in ("{not json", '{"a": 1}', '["x"]', "[true]", "[1e999]"):
        with pytest.raises(ProviderError):
            parse_embedding(bad)
