from __future__ import annotations

import asyncio

import numpy as np
import pytest

from recallkv.config import ConsolidationConfig
from recallkv.consolidation import (
    ConcatenateMerge,
    ConsolidationEngine,
    GreedyPairClustering,
    HighestImportance,
)
from recallkv.exceptions import ValidationError
from recallkv.memory import MemoryStore
from recallkv.storage import ConsolidationKeys, MemoryKV, StorageKeys, WorkflowKeys
from recallkv.types import MemoryEntry
from recallkv.workflow import WorkflowCoordinator

WS = "ws-consolidate"


class _CountingKV(MemoryKV):
    """Counts every write issued against the store."""

    def __init__(self) -> None:
        super().__init__()
        self.writes = 0

    def pipeline(self):
        pipe = super().pipeline()
        run = pipe.execute

        async def execute() -> bool:
            self.writes += 1
            return await run()

        pipe.execute = execute
        return pipe

    async def hset(self, key, mapping):
        self.writes += 1
        await super().hset(key, mapping)

    async def set(self, key, value):
        self.writes += 1
        await super().set(key, value)

    async def set_if_absent(self, key, value):
        self.writes += 1
        return await super().set_if_absent(key, value)

    async def sadd(self, key, *members):
        self.writes += 1
        await super().sadd(key, *members)

    async def zadd(self, key, score, member):
        self.writes += 1
        await super().zadd(key, score, member)

    async def delete(self, *keys):
        self.writes += 1
        await super().delete(*keys)


def _engine(kv: MemoryKV | None = None, **config) -> ConsolidationEngine:
    store = MemoryStore(kv or MemoryKV(), WS)
    return ConsolidationEngine(store, ConsolidationConfig(**config))


def _entry(mid: str, importance: int = 5, created_at: int = 1, tags=None) -> MemoryEntry:
    return MemoryEntry(
        id=mid, content=f"content {mid}", importance=importance,
        tags=tags or [], created_at=created_at, updated_at=created_at,
    )


def test_below_threshold_without_force_performs_no_writes():
    async def _run() -> None:
        kv = _CountingKV()
        engine = _engine(kv, memory_count_threshold=10)
        await engine.store.create_memory("a", embedding=[1.0, 0.0])
        await engine.store.create_memory("b", embedding=[1.0, 0.0])
        before = kv.writes

        assert await engine.should_consolidate() is False
        result = await engine.consolidate()
        assert result.needed is False
        assert result.clusters_found == 0
        assert result.memories_merged == 0
        assert kv.writes == before
        assert await engine.get_history() == []

    asyncio.run(_run())


def test_forced_run_merges_identical_pair():
    async def _run() -> None:
        engine = _engine()
        store = engine.store
        a = await store.create_memory("alpha", embedding=[1.0, 0.0, 0.0], importance=4, tags=["x"])
        b = await store.create_memory("beta", embedding=[1.0, 0.0, 0.0], importance=7, tags=["y"])
        c = await store.create_memory("gamma", embedding=[0.0, 1.0, 0.0])

        result = await engine.consolidate(force=True, threshold=0.9)
        assert result.needed is True
        assert result.clusters_found == 1
        assert len(result.clusters) == 1
        assert sorted(result.clusters[0].memory_ids) == sorted([a.id, b.id])
        assert result.memories_merged == 1
        assert result.memories_remaining == 2
        assert result.retained_ids == [b.id]

        survivor = await store.get_memory(b.id)
        assert await store.get_memory(a.id) is None
        assert await store.get_memory(c.id) is not None
        assert survivor.content == "beta\n\n--- Merged content ---\nalpha"
        assert survivor.tags == ["y", "x"]
        assert survivor.importance == 7
        assert await store.kv.smembers(StorageKeys.by_tag(WS, "x")) == {b.id}

    asyncio.run(_run())


def test_keep_ids_override_retention():
    async def _run() -> None:
        engine = _engine()
        store = engine.store
        a = await store.create_memory("alpha", embedding=[0.5, 0.5], importance=2)
        b = await store.create_memory("beta", embedding=[0.5, 0.5], importance=9)

        result = await engine.consolidate(force=True, keep_ids=[a.id])
        assert result.retained_ids == [a.id]
        kept = await store.get_memory(a.id)
        assert kept.importance == 9
        assert await store.get_memory(b.id) is None

    asyncio.run(_run())


def test_unreadable_embeddings_are_skipped_not_fatal():
    async def _run() -> None:
        engine = _engine()
        store = engine.store
        a = await store.create_memory("a", embedding=[1.0, 0.0])
        b = await store.create_memory("b", embedding=[1.0, 0.0])
        bad = await store.create_memory("bad", embedding=[1.0, 0.0])
        await store.create_memory("plain")
        await store.kv.hset(StorageKeys.memory(WS, bad.id), {"embedding": "[1.0, oops"})

        result = await engine.consolidate(force=True)
        assert result.skipped_invalid_embedding == 1
        assert result.skipped_no_embedding == 1
        assert result.clusters_found == 1
        assert await store.get_memory(bad.id) is not None
        assert len(result.retained_ids) == 1
        assert result.retained_ids[0] in {a.id, b.id}

    asyncio.run(_run())


def test_greedy_clustering_never_merges_two_clusters():
    ids = ["a", "b", "c", "d"]
    mat = np.eye(4)
    mat[0, 1] = mat[1, 0] = 0.99
    mat[2, 3] = mat[3, 2] = 0.98
    mat[1, 2] = mat[2, 1] = 0.97
    clusters = GreedyPairClustering().cluster(ids, mat, 0.9)
    assert [sorted(c) for c in clusters] == [[0, 1], [2, 3]]


def test_greedy_clustering_absorbs_into_existing_cluster():
    ids = ["a", "b", "c"]
    mat = np.eye(3)
    mat[0, 1] = mat[1, 0] = 0.99
    mat[1, 2] = mat[2, 1] = 0.95
    mat[0, 2] = mat[2, 0] = 0.5
    assert GreedyPairClustering().cluster(ids, mat, 0.9) == [[0, 1, 2]]


def test_highest_importance_tie_breaks():
    older = _entry("m1", importance=5, created_at=1)
    newer = _entry("m2", importance=5, created_at=2)
    louder = _entry("m3", importance=6, created_at=3)
    policy = HighestImportance()
    assert policy.choose([newer, older]).id == "m1"
    assert policy.choose([newer, older, louder]).id == "m3"
    assert policy.choose([newer, older, louder], keep_id="m2").id == "m2"
    assert policy.choose([newer, older], keep_id="absent").id == "m1"


def test_concatenate_merge():
    plan = ConcatenateMerge().merge(
        _entry("keep", importance=3, tags=["a", "b"]),
        [_entry("x", importance=8, tags=["b", "c"]), _entry("y", tags=["d"])],
    )
    assert plan.content == "content keep\n\n--- Merged content ---\ncontent x\n\ncontent y"
    assert plan.tags == ["a", "b", "c", "d"]
    assert plan.importance == 8


def test_proposal_applied_after_member_deleted_is_a_noop():
    async def _run() -> None:
        engine = _engine()
        store = engine.store
        a = await store.create_memory("a", embedding=[1.0, 1.0])
        b = await store.create_memory("b", embedding=[1.0, 1.0])

        proposals = await engine.find_clusters()
        assert len(proposals) == 1
        await store.delete_memory(proposals[0].discarded_ids[0])

        assert await engine.apply_proposal(proposals[0]) == []
        remaining = {m.id for m in await store.get_memories([a.id, b.id])}
        assert remaining == {proposals[0].retained_id}

    asyncio.run(_run())


def test_find_clusters_is_read_only():
    async def _run() -> None:
        kv = _CountingKV()
        engine = _engine(kv)
        await engine.store.create_memory("a", embedding=[1.0])
        await engine.store.create_memory("b", embedding=[1.0])
        before = kv.writes
        assert len(await engine.find_clusters()) == 1
        assert kv.writes == before
        with pytest.raises(ValidationError):
            await engine.find_clusters(threshold=1.5)

    asyncio.run(_run())


def test_should_consolidate_counts_embedded_and_respects_cooldown():
    async def _run() -> None:
        engine = _engine(memory_count_threshold=2, cooldown_hours=1)
        store = engine.store
        await store.create_memory("a", embedding=[1.0])
        await store.create_memory("b")
        assert await engine.should_consolidate() is False
        await store.create_memory("c", embedding=[0.0, 1.0])
        assert await engine.should_consolidate() is True
        assert await engine.should_consolidate(threshold=5) is False

        await engine.consolidate()
        assert await store.kv.get(ConsolidationKeys.last_run(WS)) is not None
        assert await engine.should_consolidate() is False

    asyncio.run(_run())


def test_expired_memories_do_not_trigger_consolidation():
    async def _run() -> None:
        engine = _engine(memory_count_threshold=1, cooldown_hours=0)
        store = engine.store
        await store.create_memory("plain")
        doomed = await store.create_memory("short lived", embedding=[1.0, 0.0], ttl_seconds=60)
        assert await engine.should_consolidate() is True

        await store.kv.expire(StorageKeys.memory(WS, doomed.id), 0)
        assert await engine.should_consolidate() is False
        result = await engine.consolidate()
        assert result.needed is False
        assert result.memories_remaining == 1
        forced = await engine.consolidate(force=True)
        assert forced.memories_remaining == 1

    asyncio.run(_run())


def test_history_is_newest_first():
    async def _run() -> None:
        engine = _engine()
        await engine.store.create_memory("a", embedding=[1.0])
        await engine.consolidate(force=True)
        await asyncio.sleep(0.002)
        await engine.consolidate(force=True)
        history = await engine.get_history()
        assert len(history) == 2
        assert history[0].timestamp > history[1].timestamp
        assert history[0].result.needed is True
        assert history[0].config["similarity_threshold"] == 0.85

    asyncio.run(_run())


def test_merge_relinks_workflow_membership():
    async def _run() -> None:
        engine = _engine()
        store = engine.store
        workflows = WorkflowCoordinator(store)
        a = await store.create_memory("a", embedding=[1.0, 0.0], importance=9)
        b = await store.create_memory("b", embedding=[1.0, 0.0], importance=1)
        wf = await workflows.start("wf")
        await workflows.link_memory(wf.id, b.id)

        await engine.consolidate(force=True)
        members = await store.kv.smembers(WorkflowKeys.memories(WS, wf.id))
        assert members == {a.id}
        assert await store.kv.smembers(WorkflowKeys.memory_workflows(WS, a.id)) == {wf.id}

    asyncio.run(_run())


def test_global_memories_never_cluster_with_workspace_memories():
    async def _run() -> None:
        engine = _engine(include_global=True)
        store = engine.store
        await store.create_memory("local", embedding=[1.0, 0.0])
        await store.create_memory("shared", embedding=[1.0, 0.0], is_global=True)
        assert await engine.find_clusters() == []

        await store.create_memory("shared again", embedding=[1.0, 0.0], is_global=True)
        proposals = await engine.find_clusters()
        assert len(proposals) == 1
        for mid in proposals[0].memory_ids:
            assert (await store.get_memory(mid)).is_global

    asyncio.run(_run())
