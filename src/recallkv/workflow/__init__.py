"""Workflow lifecycle and memory membership."""

from recallkv.workflow.coordinator import WorkflowCoordinator
from recallkv.workflow.store import WorkflowStore

__all__ = ["WorkflowCoordinator", "WorkflowStore"]
