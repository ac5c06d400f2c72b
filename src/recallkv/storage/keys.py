"""Substrate key schema.

These strings are the storage schema shared with every other reader and
writer of the same keyspace; they must not change shape.
"""

from __future__ import annotations


def _scope(workspace: str | None) -> str:
    return f"ws:{workspace}" if workspace else "global"


class StorageKeys:
    """Memory, relationship and category keys.

    ``workspace=None`` selects the global scope.
    """

    @staticmethod
    def memory(workspace: str | None, memory_id: str) -> str:
        return f"{_scope(workspace)}:memory:{memory_id}"

    @staticmethod
    def memories(workspace: str | None) -> str:
        return f"{_scope(workspace)}:memories:all"

    @staticmethod
    def by_type(workspace: str | None, context_type: str) -> str:
        return f"{_scope(workspace)}:memories:type:{context_type}"

    @staticmethod
    def by_tag(workspace: str | None, tag: str) -> str:
        return f"{_scope(workspace)}:memories:tag:{tag}"

    @staticmethod
    def timeline(workspace: str | None) -> str:
        return f"{_scope(workspace)}:memories:timeline"

    @staticmethod
    def important(workspace: str | None) -> str:
        return f"{_scope(workspace)}:memories:important"

    @staticmethod
    def embedded(workspace: str | None) -> str:
        return f"{_scope(workspace)}:memories:embedded"

    @staticmethod
    def memory_category(workspace: str | None, memory_id: str) -> str:
        return f"{_scope(workspace)}:memory:{memory_id}:category"

    @staticmethod
    def category(workspace: str | None, name: str) -> str:
        return f"{_scope(workspace)}:category:{name}"

    @staticmethod
    def categories(workspace: str | None) -> str:
        return f"{_scope(workspace)}:categories:all"

    @staticmethod
    def relationship(workspace: str | None, relationship_id: str) -> str:
        return f"{_scope(workspace)}:relationship:{relationship_id}"

    @staticmethod
    def relationships(workspace: str | None) -> str:
        return f"{_scope(workspace)}:relationships:all"

    @staticmethod
    def memory_relationships(workspace: str | None, memory_id: str) -> str:
        return f"{_scope(workspace)}:memory:{memory_id}:relationships"

    @staticmethod
    def memory_relationships_out(workspace: str | None, memory_id: str) -> str:
        return f"{_scope(workspace)}:memory:{memory_id}:relationships:out"

    @staticmethod
    def memory_relationships_in(workspace: str | None, memory_id: str) -> str:
        return f"{_scope(workspace)}:memory:{memory_id}:relationships:in"


class WorkflowKeys:
    @staticmethod
    def workflow(workspace: str, workflow_id: str) -> str:
        return f"ws:{workspace}:workflow:{workflow_id}"

    @staticmethod
    def workflows(workspace: str) -> str:
        return f"ws:{workspace}:workflows:all"

    @staticmethod
    def active(workspace: str) -> str:
        return f"ws:{workspace}:workflow:active"

    @staticmethod
    def memories(workspace: str, workflow_id: str) -> str:
        return f"ws:{workspace}:workflow:{workflow_id}:memories"

    @staticmethod
    def memory_workflows(workspace: str, memory_id: str) -> str:
        return f"ws:{workspace}:memory:{memory_id}:workflows"


class ConsolidationKeys:
    @staticmethod
    def run(workspace: str, run_id: str) -> str:
        return f"ws:{workspace}:consolidation:{run_id}"

    @staticmethod
    def runs(workspace: str) -> str:
        return f"ws:{workspace}:consolidations:all"

    @staticmethod
    def last_run(workspace: str) -> str:
        return f"ws:{workspace}:consolidations:last_run"
