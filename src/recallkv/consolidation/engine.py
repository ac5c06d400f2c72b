"""Similarity-based consolidation of near-duplicate memories."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable, Protocol, Sequence

import numpy as np

from recallkv.config import ConsolidationConfig
from recallkv.consolidation.similarity import similarity_matrix
from recallkv.exceptions import NotFoundError, ProviderError, ValidationError
from recallkv.memory.store import MemoryStore, decode_memory, parse_embedding
from recallkv.storage.keys import ConsolidationKeys, StorageKeys, WorkflowKeys
from recallkv.types import (
    ClusterProposal,
    ConsolidationResult,
    ConsolidationRun,
    MemoryEntry,
    WorkspaceMode,
)
from recallkv.utils import dedupe, json_dumps, json_loads, new_id, now_ms

logger = logging.getLogger(__name__)

MERGE_SEPARATOR = "--- Merged content ---"


# --- strategies ---

class ClusterStrategy(Protocol):
    def cluster(self, ids: Sequence[str], matrix: np.ndarray, threshold: float) -> list[list[int]]: ...


class RetentionPolicy(Protocol):
    def choose(self, members: Sequence[MemoryEntry], keep_id: str | None = None) -> MemoryEntry: ...


@dataclass
class MergePlan:
    content: str
    tags: list[str]
    importance: int


class MergeStrategy(Protocol):
    def merge(self, retained: MemoryEntry, discarded: Sequence[MemoryEntry]) -> MergePlan: ...


class GreedyPairClustering:
    """Walk pairs from most to least similar.

    Two unassigned entries seed a cluster; an unassigned entry joins the
    cluster of its assigned partner; a pair already split across two clusters
    is left alone. Singletons are never returned.
    """

    def cluster(self, ids: Sequence[str], matrix: np.ndarray, threshold: float) -> list[list[int]]:
        n = len(ids)
        pairs = [
            (float(matrix[i, j]), i, j)
            for i in range(n)
            for j in range(i + 1, n)
            if matrix[i, j] >= threshold
        ]
        pairs.sort(key=lambda p: (-p[0], p[1], p[2]))

        assigned: dict[int, int] = {}
        clusters: list[list[int]] = []
        for _, i, j in pairs:
            ci = assigned.get(i)
            cj = assigned.get(j)
            if ci is None and cj is None:
                assigned[i] = assigned[j] = len(clusters)
                clusters.append([i, j])
            elif ci is None:
                assigned[i] = cj
                clusters[cj].append(i)
            elif cj is None:
                assigned[j] = ci
                clusters[ci].append(j)
        return [c for c in clusters if len(c) >= 2]


class HighestImportance:
    """Caller's pick if it is a member, else highest importance, then oldest."""

    def choose(self, members: Sequence[MemoryEntry], keep_id: str | None = None) -> MemoryEntry:
        if not members:
            raise ValueError("cannot choose from an empty cluster")
        if keep_id:
            for m in members:
                if m.id == keep_id:
                    return m
        return min(members, key=lambda m: (-m.importance, m.created_at, m.id))


class ConcatenateMerge:
    def merge(self, retained: MemoryEntry, discarded: Sequence[MemoryEntry]) -> MergePlan:
        content = retained.content
        if discarded:
            merged = "\n\n".join(m.content for m in discarded)
            content = f"{retained.content}\n\n{MERGE_SEPARATOR}\n{merged}"
        tags = dedupe([*retained.tags, *(t for m in discarded for t in m.tags)])
        importance = max([retained.importance, *(m.importance for m in discarded)])
        return MergePlan(content=content, tags=tags, importance=importance)


# --- engine ---

@dataclass
class _Scan:
    proposals: list[ClusterProposal]
    skipped_no_embedding: int = 0
    skipped_invalid_embedding: int = 0


class ConsolidationEngine:
    """Finds clusters of near-duplicate memories and merges each into one entry.

    Runs are best-effort: a memory created during a run may be missed, a member
    deleted between proposal and merge is dropped silently, and an unreadable
    embedding excludes only that memory.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: ConsolidationConfig | None = None,
        clusterer: ClusterStrategy | None = None,
        retention: RetentionPolicy | None = None,
        merger: MergeStrategy | None = None,
    ) -> None:
        self.store = store
        self.kv = store.kv
        self.workspace_id = store.workspace_id
        self.config = config or ConsolidationConfig()
        self.clusterer = clusterer or GreedyPairClustering()
        self.retention = retention or HighestImportance()
        self.merger = merger or ConcatenateMerge()

    def _scopes(self) -> list[str | None]:
        if self.store.workspace_mode == WorkspaceMode.GLOBAL:
            return [None]
        if self.config.include_global:
            return [self.workspace_id, None]
        return [self.workspace_id]

    async def should_consolidate(self, threshold: int | None = None) -> bool:
        count_threshold = self.config.memory_count_threshold if threshold is None else threshold
        count = await self.store.count_embedded(self._scopes())
        if count < count_threshold:
            return False
        if self.config.cooldown_hours > 0:
            last = await self.kv.get(ConsolidationKeys.last_run(self.workspace_id))
            if last and now_ms() - int(last) < self.config.cooldown_hours * 3_600_000:
                return False
        return True

    def _check_threshold(self, threshold: float | None) -> float:
        value = self.config.similarity_threshold if threshold is None else float(threshold)
        if not 0.0 < value <= 1.0:
            raise ValidationError("similarity threshold must be in (0, 1]", field="threshold")
        return value

    async def _scan(self, threshold: float, max_memories: int) -> _Scan:
        scan = _Scan(proposals=[])
        min_size = max(2, self.config.min_cluster_size)
        # Workspace and global memories are clustered separately, never together.
        for scope in self._scopes():
            ids = await self.kv.zrevrange(StorageKeys.timeline(scope), 0, max(max_memories, 1) - 1)
            entries: list[MemoryEntry] = []
            vectors: list[list[float]] = []
            for memory_id in ids:
                data = await self.kv.hgetall(StorageKeys.memory(scope, memory_id))
                if not data:
                    continue
                try:
                    vector = parse_embedding(data.get("embedding"))
                except ProviderError as exc:
                    logger.warning("Skipping memory %s: unreadable embedding (%s)", memory_id, exc)
                    scan.skipped_invalid_embedding += 1
                    continue
                if vector is None:
                    scan.skipped_no_embedding += 1
                    continue
                entries.append(decode_memory(data))
                vectors.append(vector)

            if len(entries) < min_size:
                continue
            matrix = similarity_matrix(vectors)
            member_ids = [e.id for e in entries]
            for group in self.clusterer.cluster(member_ids, matrix, threshold):
                if len(group) < min_size:
                    continue
                members = [entries[i] for i in group]
                sims = [float(matrix[a, b]) for x, a in enumerate(group) for b in group[x + 1:]]
                retained = self.retention.choose(members)
                scan.proposals.append(ClusterProposal(
                    memory_ids=[m.id for m in members],
                    similarity=round(sum(sims) / len(sims), 6),
                    retained_id=retained.id,
                ))
        return scan

    async def find_clusters(
        self, threshold: float | None = None, max_memories: int | None = None
    ) -> list[ClusterProposal]:
        """Read-only proposal pass."""
        scan = await self._scan(
            self._check_threshold(threshold), max_memories or self.config.max_memories
        )
        return scan.proposals

    async def apply_proposal(self, proposal: ClusterProposal, keep_id: str | None = None) -> list[str]:
        """Merge one cluster. Returns the ids actually deleted."""
        _, deleted = await self._merge(proposal, keep_id)
        return deleted

    async def _merge(
        self, proposal: ClusterProposal, keep_id: str | None
    ) -> tuple[str | None, list[str]]:
        members = await self.store.get_memories(proposal.memory_ids)
        if len(members) < 2:
            logger.debug("Cluster %s shrank below two members, skipping", proposal.memory_ids)
            return None, []
        retained = self.retention.choose(members, keep_id or proposal.retained_id)
        discarded = [m for m in members if m.id != retained.id]
        plan = self.merger.merge(retained, discarded)

        workflow_ids: set[str] = set()
        for m in discarded:
            workflow_ids |= await self.kv.smembers(WorkflowKeys.memory_workflows(self.workspace_id, m.id))

        try:
            await self.store.update_memory(
                retained.id, content=plan.content, tags=plan.tags, importance=plan.importance
            )
        except NotFoundError:
            logger.debug("Retained memory %s vanished before merge", retained.id)
            return None, []

        deleted: list[str] = []
        for m in discarded:
            if await self.store.delete_memory(m.id):
                deleted.append(m.id)

        if workflow_ids:
            pipe = self.kv.pipeline()
            for workflow_id in sorted(workflow_ids):
                pipe.sadd(WorkflowKeys.memories(self.workspace_id, workflow_id), retained.id)
            pipe.sadd(WorkflowKeys.memory_workflows(self.workspace_id, retained.id), *sorted(workflow_ids))
            await pipe.execute()
        return retained.id, deleted

    async def consolidate(
        self,
        force: bool = False,
        threshold: float | None = None,
        keep_ids: Iterable[str] | None = None,
    ) -> ConsolidationResult:
        similarity = self._check_threshold(threshold)
        if not force and not await self.should_consolidate():
            return ConsolidationResult(
                needed=False,
                memories_remaining=await self.store.count_memories(),
                report="Consolidation not needed.",
            )

        scan = await self._scan(similarity, self.config.max_memories)
        keep = list(keep_ids or [])
        merged = 0
        retained_ids: list[str] = []
        for proposal in scan.proposals:
            keep_id = next((k for k in keep if k in proposal.memory_ids), None)
            retained_id, deleted = await self._merge(proposal, keep_id)
            if deleted:
                merged += len(deleted)
                retained_ids.append(retained_id)

        result = ConsolidationResult(
            needed=True,
            clusters_found=len(scan.proposals),
            memories_merged=merged,
            memories_remaining=await self.store.count_memories(),
            retained_ids=retained_ids,
            skipped_no_embedding=scan.skipped_no_embedding,
            skipped_invalid_embedding=scan.skipped_invalid_embedding,
            clusters=scan.proposals,
        )
        result.report = _build_report(result)
        await self._record_run(result, similarity)
        logger.info(
            "Consolidation in %s: %d clusters, %d merged, %d remaining",
            self.workspace_id, result.clusters_found, result.memories_merged, result.memories_remaining,
        )
        return result

    async def _record_run(self, result: ConsolidationResult, similarity: float) -> None:
        run = ConsolidationRun(
            id=new_id(),
            timestamp=now_ms(),
            config={
                "similarity_threshold": similarity,
                "min_cluster_size": self.config.min_cluster_size,
                "max_memories": self.config.max_memories,
                "include_global": self.config.include_global,
            },
            result=result,
        )
        pipe = self.kv.pipeline()
        pipe.hset(ConsolidationKeys.run(self.workspace_id, run.id), {
            "id": run.id,
            "timestamp": str(run.timestamp),
            "config": json_dumps(run.config),
            "result": json_dumps(result.model_dump(mode="json")),
        })
        pipe.zadd(ConsolidationKeys.runs(self.workspace_id), run.timestamp, run.id)
        pipe.set(ConsolidationKeys.last_run(self.workspace_id), str(run.timestamp))
        await pipe.execute()

    async def get_history(self, limit: int = 10) -> list[ConsolidationRun]:
        ids = await self.kv.zrevrange(ConsolidationKeys.runs(self.workspace_id), 0, max(limit, 1) - 1)
        runs: list[ConsolidationRun] = []
        for run_id in ids:
            data = await self.kv.hgetall(ConsolidationKeys.run(self.workspace_id, run_id))
            if not data:
                continue
            runs.append(ConsolidationRun(
                id=data["id"],
                timestamp=int(data["timestamp"]),
                config=json_loads(data["config"]) if data.get("config") else {},
                result=ConsolidationResult.model_validate(json_loads(data["result"])),
            ))
        return runs


def _build_report(result: ConsolidationResult) -> str:
    n = result.clusters_found
    lines = [
        f"Consolidation complete: {n} cluster{'s' if n != 1 else ''} found, "
        f"{result.memories_merged} memories merged, {result.memories_remaining} remaining."
    ]
    if result.skipped_no_embedding:
        lines.append(f"{result.skipped_no_embedding} memories skipped (no embeddings).")
    if result.skipped_invalid_embedding:
        lines.append(f"{result.skipped_invalid_embedding} memories skipped (unreadable embeddings).")
    if result.retained_ids:
        lines.append(f"Retained memory IDs: {', '.join(result.retained_ids)}")
    return " ".join(lines)
