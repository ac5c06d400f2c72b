"""Relationship graph over memories."""

from recallkv.graph.relationships import RelationshipGraph

__all__ = ["RelationshipGraph"]
