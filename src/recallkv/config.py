"""recallkv configuration."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

from pydantic import BaseModel, Field


def workspace_id_for_path(path: Path | str) -> str:
    """Stable short id for a workspace directory."""
    resolved = str(Path(path).resolve())
    return hashlib.sha1(resolved.encode("utf-8")).hexdigest()[:12]


def _default_workspace_id() -> str:
    return os.environ.get("RECALLKV_WORKSPACE") or workspace_id_for_path(Path.cwd())


class StorageConfig(BaseModel):
    backend: str = Field(default_factory=lambda: os.environ.get("RECALLKV_STORAGE", "memory"))
    url: str = Field(
        default_factory=lambda: os.environ.get("RECALLKV_REDIS_URL", "redis://localhost:6379/0")
    )
    socket_timeout: float = 5.0


class EmbeddingConfig(BaseModel):
    # Empty provider means no embedder; "auto" picks one from the API keys in the environment.
    provider: str = Field(default_factory=lambda: os.environ.get("RECALLKV_EMBED_PROVIDER", ""))
    model: str = ""
    dimensions: int = 0
    base_url: str = ""
    timeout: float = 30.0


class GraphConfig(BaseModel):
    default_depth: int = 1
    max_depth: int = 5
    graph_max_depth: int = 2
    graph_max_depth_limit: int = 3
    graph_max_nodes: int = 50
    graph_max_nodes_limit: int = 100


class ConsolidationConfig(BaseModel):
    similarity_threshold: float = 0.85
    min_cluster_size: int = 2
    memory_count_threshold: int = 100
    max_memories: int = 1000
    cooldown_hours: float = 0.0
    include_global: bool = False


class WorkflowConfig(BaseModel):
    summary_max_memories: int = 20
    summary_max_chars: int = 500
    context_max_tokens: int = 2000


class Config(BaseModel):
    workspace_id: str = Field(default_factory=_default_workspace_id)
    workspace_mode: str = Field(
        default_factory=lambda: os.environ.get("RECALLKV_WORKSPACE_MODE", "isolated")
    )
    log_level: str = Field(default_factory=lambda: os.environ.get("RECALLKV_LOG_LEVEL", "INFO"))
    storage: StorageConfig = Field(default_factory=StorageConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    consolidation: ConsolidationConfig = Field(default_factory=ConsolidationConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
