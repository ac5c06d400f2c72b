"""Near-duplicate memory consolidation."""

from recallkv.consolidation.engine import (
    ClusterStrategy,
    ConcatenateMerge,
    ConsolidationEngine,
    GreedyPairClustering,
    HighestImportance,
    MergePlan,
    MergeStrategy,
    RetentionPolicy,
)
from recallkv.consolidation.similarity import cosine_similarity, similarity_matrix

__all__ = [
    "ClusterStrategy",
    "ConcatenateMerge",
    "ConsolidationEngine",
    "GreedyPairClustering",
    "HighestImportance",
    "MergePlan",
    "MergeStrategy",
    "RetentionPolicy",
    "cosine_similarity",
    "similarity_matrix",
]
