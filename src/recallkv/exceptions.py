"""Typed failures raised by the recallkv core."""

from __future__ import annotations


class RecallError(Exception):
    """Base class for every error the core raises."""


class NotFoundError(RecallError):
    def __init__(self, kind: str, id: str) -> None:
        super().__init__(f"{kind} not found: {id}")
        self.kind = kind
        self.id = id


class AlreadyActiveError(RecallError):
    """Another workflow holds the active pointer for this workspace."""

    def __init__(self, active_id: str | None = None) -> None:
        msg = "A workflow is already active. Pause or complete it first."
        if active_id:
            msg = f"Workflow {active_id} is already active. Pause or complete it first."
        super().__init__(msg)
        self.active_id = active_id


class InvalidStateError(RecallError):
    """A lifecycle transition was requested from the wrong state."""


class NoActiveWorkflowError(InvalidStateError):
    def __init__(self, action: str = "continue") -> None:
        super().__init__(f"No active workflow to {action}.")
        self.action = action


class ValidationError(RecallError, ValueError):
    def __init__(self, message: str, field: str = "unknown") -> None:
        super().__init__(message)
        self.field = field


class StorageError(RecallError):
    """The key-value substrate failed or was used against the wrong key type."""


class ProviderError(RecallError):
    """An embedding provider failed, or an embedding payload is malformed."""
