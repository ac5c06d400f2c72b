"""Directed, typed relationships between memories and bounded traversal."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from recallkv.config import GraphConfig
from recallkv.exceptions import ValidationError
from recallkv.memory.store import MemoryStore, encode_relationship
from recallkv.storage.keys import StorageKeys
from recallkv.types import (
    Direction,
    MemoryGraph,
    MemoryGraphNode,
    MemoryRelationship,
    RelatedMemory,
    RelationshipType,
)
from recallkv.utils import new_id, now_ms

logger = logging.getLogger(__name__)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(int(value), high))


def _parse_type(value: RelationshipType | str) -> RelationshipType:
    try:
        return RelationshipType(value)
    except ValueError as exc:
        raise ValidationError(
            f"unknown relationship type: {value}", field="relationship_type"
        ) from exc


def _parse_direction(value: Direction | str) -> Direction:
    try:
        return Direction.parse(value)
    except ValueError as exc:
        raise ValidationError(f"unknown direction: {value}", field="direction") from exc


class RelationshipGraph:
    """Relationship CRUD plus breadth-first walks over the adjacency sets.

    Every relationship id appears in the source's ``out`` set and the target's
    ``in`` set; both are written and removed in the same pipeline as the
    relationship hash.
    """

    def __init__(self, store: MemoryStore, config: GraphConfig | None = None) -> None:
        self.store = store
        self.kv = store.kv
        self.config = config or GraphConfig()

    async def create_relationship(
        self,
        from_memory_id: str,
        to_memory_id: str,
        relationship_type: RelationshipType | str = RelationshipType.RELATES_TO,
        metadata: dict[str, Any] | None = None,
    ) -> MemoryRelationship:
        rtype = _parse_type(relationship_type)
        source = await self.store.require_memory(from_memory_id)
        target = await self.store.require_memory(to_memory_id)

        rel = MemoryRelationship(
            id=new_id(),
            from_memory_id=source.id,
            to_memory_id=target.id,
            relationship_type=rtype,
            created_at=now_ms(),
            metadata=metadata or None,
            is_global=source.is_global and target.is_global,
        )
        scope = self.store.scope_for(rel.is_global)
        pipe = self.kv.pipeline()
        pipe.hset(StorageKeys.relationship(scope, rel.id), encode_relationship(rel))
        pipe.sadd(StorageKeys.relationships(scope), rel.id)
        pipe.sadd(StorageKeys.memory_relationships(scope, source.id), rel.id)
        pipe.sadd(StorageKeys.memory_relationships_out(scope, source.id), rel.id)
        pipe.sadd(StorageKeys.memory_relationships(scope, target.id), rel.id)
        pipe.sadd(StorageKeys.memory_relationships_in(scope, target.id), rel.id)
        await pipe.execute()
        logger.debug(
            "Created relationship %s: %s -[%s]-> %s",
            rel.id, source.id, rtype.value, target.id,
        )
        return rel

    async def get_relationship(self, relationship_id: str) -> MemoryRelationship | None:
        return await self.store.read_relationship(relationship_id)

    async def delete_relationship(self, relationship_id: str) -> bool:
        rel = await self.store.read_relationship(relationship_id)
        if rel is None:
            return False
        pipe = self.kv.pipeline()
        self.store.queue_relationship_removal(
            pipe, rel.id, [rel.from_memory_id, rel.to_memory_id]
        )
        await pipe.execute()
        logger.debug("Deleted relationship %s", rel.id)
        return True

    async def _relationship_ids(self, memory_id: str, direction: Direction) -> list[str]:
        keys: list[str] = []
        for scope in self.store.all_scopes:
            if direction in (Direction.OUT, Direction.BOTH):
                keys.append(StorageKeys.memory_relationships_out(scope, memory_id))
            if direction in (Direction.IN, Direction.BOTH):
                keys.append(StorageKeys.memory_relationships_in(scope, memory_id))
        return sorted(await self.kv.sunion(*keys))

    async def get_memory_relationships(
        self, memory_id: str, direction: Direction | str = Direction.BOTH
    ) -> list[MemoryRelationship]:
        d = _parse_direction(direction)
        out: list[MemoryRelationship] = []
        for rid in await self._relationship_ids(memory_id, d):
            rel = await self.store.read_relationship(rid)
            if rel is not None:
                out.append(rel)
        out.sort(key=lambda r: (r.created_at, r.id))
        return out

    async def _neighbors(
        self, memory_id: str, direction: Direction
    ) -> list[tuple[MemoryRelationship, str]]:
        pairs: list[tuple[MemoryRelationship, str]] = []
        for rel in await self.get_memory_relationships(memory_id, direction):
            if direction == Direction.OUT or (
                direction == Direction.BOTH and rel.from_memory_id == memory_id
            ):
                pairs.append((rel, rel.to_memory_id))
            if direction == Direction.IN or (
                direction == Direction.BOTH and rel.to_memory_id == memory_id
            ):
                pairs.append((rel, rel.from_memory_id))
        return pairs

    async def get_related_memories(
        self,
        memory_id: str,
        depth: int | None = None,
        direction: Direction | str = Direction.BOTH,
        relationship_types: Iterable[RelationshipType | str] | None = None,
    ) -> list[RelatedMemory]:
        """Breadth-first walk from ``memory_id``.

        Each reachable memory is reported once, at the hop count it was first
        reached, together with the relationship that reached it. The root is
        not part of the result. Relationships whose other end no longer exists
        are skipped.
        """
        d = _parse_direction(direction)
        max_depth = _clamp(depth or self.config.default_depth, 1, self.config.max_depth)
        types = {_parse_type(t) for t in relationship_types} if relationship_types else None
        await self.store.require_memory(memory_id)

        visited = {memory_id}
        frontier = [memory_id]
        results: list[RelatedMemory] = []
        for level in range(1, max_depth + 1):
            next_frontier: list[str] = []
            for node_id in frontier:
                for rel, neighbor_id in await self._neighbors(node_id, d):
                    if types is not None and rel.relationship_type not in types:
                        continue
                    if neighbor_id in visited:
                        continue
                    memory = await self.store.get_memory(neighbor_id)
                    if memory is None:
                        continue
                    visited.add(neighbor_id)
                    results.append(RelatedMemory(memory=memory, relationship=rel, depth=level))
                    next_frontier.append(neighbor_id)
            if not next_frontier:
                break
            frontier = next_frontier
        return results

    async def get_memory_graph(
        self,
        memory_id: str,
        max_depth: int | None = None,
        max_nodes: int | None = None,
    ) -> MemoryGraph:
        """Subgraph around ``memory_id`` bounded by hop count and node count."""
        depth_limit = _clamp(
            max_depth or self.config.graph_max_depth, 1, self.config.graph_max_depth_limit
        )
        node_limit = _clamp(
            max_nodes or self.config.graph_max_nodes, 1, self.config.graph_max_nodes_limit
        )
        root = await self.store.require_memory(memory_id)

        nodes: dict[str, MemoryGraphNode] = {root.id: MemoryGraphNode(memory=root, depth=0)}
        frontier = [root.id]
        level = 0
        while frontier and level < depth_limit and len(nodes) < node_limit:
            level += 1
            next_frontier: list[str] = []
            for node_id in frontier:
                for _, neighbor_id in await self._neighbors(node_id, Direction.BOTH):
                    if len(nodes) >= node_limit:
                        break
                    if neighbor_id in nodes:
                        continue
                    memory = await self.store.get_memory(neighbor_id)
                    if memory is None:
                        continue
                    nodes[neighbor_id] = MemoryGraphNode(memory=memory, depth=level)
                    next_frontier.append(neighbor_id)
            frontier = next_frontier

        edges: dict[str, MemoryRelationship] = {}
        for node in nodes.values():
            node.relationships = await self.get_memory_relationships(node.memory.id)
            for rel in node.relationships:
                if rel.from_memory_id in nodes and rel.to_memory_id in nodes:
                    edges.setdefault(rel.id, rel)

        return MemoryGraph(
            root_memory_id=root.id,
            nodes=nodes,
            edges=sorted(edges.values(), key=lambda r: (r.created_at, r.id)),
            total_nodes=len(nodes),
            max_depth_reached=max(n.depth for n in nodes.values()),
        )


__all__ = ["RelationshipGraph"]
