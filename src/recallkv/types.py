"""Core data types."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

IMPORTANT_THRESHOLD = 8


class ContextType(str, Enum):
    DIRECTIVE = "directive"
    INFORMATION = "information"
    HEADING = "heading"
    DECISION = "decision"
    CODE_PATTERN = "code_pattern"
    REQUIREMENT = "requirement"
    ERROR = "error"
    TODO = "todo"
    INSIGHT = "insight"
    PREFERENCE = "preference"


class RelationshipType(str, Enum):
    RELATES_TO = "relates_to"
    PARENT_OF = "parent_of"
    CHILD_OF = "child_of"
    REFERENCES = "references"
    SUPERSEDES = "supersedes"
    IMPLEMENTS = "implements"
    EXAMPLE_OF = "example_of"


class WorkflowStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class WorkspaceMode(str, Enum):
    ISOLATED = "isolated"
    GLOBAL = "global"
    HYBRID = "hybrid"


class Direction(str, Enum):
    OUT = "out"
    IN = "in"
    BOTH = "both"

    @classmethod
    def parse(cls, value: "Direction | str") -> "Direction":
        if isinstance(value, Direction):
            return value
        v = (value or "both").strip().lower()
        aliases = {"outgoing": "out", "incoming": "in"}
        return cls(aliases.get(v, v))


class MemoryEntry(BaseModel):
    id: str
    content: str
    context_type: ContextType = ContextType.INFORMATION
    importance: int = 5
    tags: list[str] = Field(default_factory=list)
    embedding: list[float] | None = None
    is_global: bool = False
    workspace_id: str = ""
    summary: str = ""
    category: str | None = None
    session_id: str | None = None
    ttl_seconds: int | None = None
    expires_at: int | None = None
    created_at: int
    updated_at: int

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)


class MemoryRelationship(BaseModel):
    id: str
    from_memory_id: str
    to_memory_id: str
    relationship_type: RelationshipType
    created_at: int
    metadata: dict[str, Any] | None = None
    is_global: bool = False

    def other_end(self, memory_id: str) -> str:
        if self.from_memory_id == memory_id:
            return self.to_memory_id
        return self.from_memory_id


class RelatedMemory(BaseModel):
    memory: MemoryEntry
    relationship: MemoryRelationship
    depth: int


class MemoryGraphNode(BaseModel):
    memory: MemoryEntry
    relationships: list[MemoryRelationship] = Field(default_factory=list)
    depth: int


class MemoryGraph(BaseModel):
    root_memory_id: str
    nodes: dict[str, MemoryGraphNode] = Field(default_factory=dict)
    edges: list[MemoryRelationship] = Field(default_factory=list)
    total_nodes: int = 0
    max_depth_reached: int = 0


class WorkflowInfo(BaseModel):
    id: str
    name: str
    description: str | None = None
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    created_at: int
    updated_at: int
    completed_at: int | None = None
    memory_count: int = 0
    summary: str | None = None
    workspace_id: str


class ClusterProposal(BaseModel):
    memory_ids: list[str]
    similarity: float
    retained_id: str

    @property
    def discarded_ids(self) -> list[str]:
        return [m for m in self.memory_ids if m != self.retained_id]


class ConsolidationResult(BaseModel):
    needed: bool
    clusters_found: int = 0
    memories_merged: int = 0
    memories_remaining: int = 0
    retained_ids: list[str] = Field(default_factory=list)
    skipped_no_embedding: int = 0
    skipped_invalid_embedding: int = 0
    clusters: list[ClusterProposal] = Field(default_factory=list)
    report: str = ""


class ConsolidationRun(BaseModel):
    id: str
    timestamp: int
    config: dict[str, Any] = Field(default_factory=dict)
    result: ConsolidationResult


class MemoryStats(BaseModel):
    workspace_id: str
    total_memories: int = 0
    embedded_memories: int = 0
    important_count: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    total_relationships: int = 0
