"""MemoryCore: one workspace's store, graph, consolidation and workflows."""

from __future__ import annotations

import logging
from typing import Any

from recallkv.config import Config
from recallkv.consolidation.engine import ConsolidationEngine
from recallkv.embeddings import EmbeddingProvider, create_embedder
from recallkv.graph.relationships import RelationshipGraph
from recallkv.memory.store import MemoryStore
from recallkv.storage import KVStore, create_kv_store
from recallkv.types import MemoryEntry
from recallkv.workflow.coordinator import WorkflowCoordinator

logger = logging.getLogger(__name__)


class MemoryCore:
    """Wires the substrate and every component for a single workspace.

    An embedding provider is built only when one is passed in or
    ``config.embedding.provider`` is set (``auto`` picks one from API keys).
    """

    def __init__(
        self,
        config: Config | None = None,
        kv: KVStore | None = None,
        embedder: EmbeddingProvider | None = None,
    ) -> None:
        self.config = config or Config()
        self.kv = kv or create_kv_store(self.config.storage)
        if embedder is None and self.config.embedding.provider:
            cfg = self.config.embedding
            if cfg.provider.strip().lower() == "auto":
                cfg = cfg.model_copy(update={"provider": ""})
            embedder = create_embedder(cfg)
        self.embedder = embedder

        self.store = MemoryStore(
            self.kv,
            self.config.workspace_id,
            workspace_mode=self.config.workspace_mode,
            embedder=self.embedder,
        )
        self.graph = RelationshipGraph(self.store, self.config.graph)
        self.consolidation = ConsolidationEngine(self.store, self.config.consolidation)
        self.workflows = WorkflowCoordinator(self.store, self.config.workflow)

    @property
    def workspace_id(self) -> str:
        return self.store.workspace_id

    async def remember(self, content: str, **kwargs: Any) -> MemoryEntry:
        """Create a memory and link it to the active workflow, if any."""
        entry = await self.store.create_memory(content, **kwargs)
        workflow_id = await self.workflows.link_memory_to_active(entry.id)
        if workflow_id:
            logger.debug("Linked memory %s to workflow %s", entry.id, workflow_id)
        return entry

    async def forget(self, memory_id: str) -> bool:
        return await self.store.delete_memory(memory_id)

    async def status(self) -> dict[str, Any]:
        stats = await self.store.get_summary_stats()
        active = await self.workflows.get_active_workflow()
        return {
            "workspace_id": self.workspace_id,
            "workspace_mode": self.store.workspace_mode.value,
            "storage": self.config.storage.backend,
            "storage_ok": await self.kv.ping(),
            "embedder": self.embedder.name if self.embedder else None,
            "memories": stats.total_memories,
            "embedded": stats.embedded_memories,
            "important": stats.important_count,
            "relationships": stats.total_relationships,
            "by_type": stats.by_type,
            "active_workflow": active.model_dump() if active else None,
            "consolidation_due": await self.consolidation.should_consolidate(),
        }

    async def close(self) -> None:
        if self.embedder is not None:
            await self.embedder.close()
        await self.kv.close()
