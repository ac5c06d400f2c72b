"""Workflow persistence: hash per workflow, chronological index, active pointer."""

from __future__ import annotations

from typing import Mapping

from recallkv.storage.base import KVStore
from recallkv.storage.keys import WorkflowKeys
from recallkv.types import WorkflowInfo, WorkflowStatus


def _encode(info: WorkflowInfo) -> dict[str, str]:
    return {
        "id": info.id,
        "name": info.name,
        "description": info.description or "",
        "status": info.status.value,
        "created_at": str(info.created_at),
        "updated_at": str(info.updated_at),
        "completed_at": "" if info.completed_at is None else str(info.completed_at),
        "summary": info.summary or "",
        "workspace_id": info.workspace_id,
    }


class WorkflowStore:
    def __init__(self, kv: KVStore, workspace_id: str) -> None:
        self.kv = kv
        self.workspace_id = workspace_id

    # --- active pointer ---

    async def claim_active(self, workflow_id: str) -> bool:
        """Conditional-create of the active pointer; first writer wins."""
        return await self.kv.set_if_absent(WorkflowKeys.active(self.workspace_id), workflow_id)

    async def get_active_id(self) -> str | None:
        return await self.kv.get(WorkflowKeys.active(self.workspace_id))

    async def release_active(self, workflow_id: str) -> bool:
        """Clear the active pointer only if ``workflow_id`` still holds it."""
        key = WorkflowKeys.active(self.workspace_id)
        pipe = self.kv.pipeline()
        pipe.guard(key, lambda current: current == workflow_id)
        pipe.delete(key)
        return await pipe.execute()

    # --- records ---

    async def create(self, info: WorkflowInfo) -> None:
        pipe = self.kv.pipeline()
        pipe.hset(WorkflowKeys.workflow(self.workspace_id, info.id), _encode(info))
        pipe.zadd(WorkflowKeys.workflows(self.workspace_id), info.created_at, info.id)
        await pipe.execute()

    async def get(self, workflow_id: str) -> WorkflowInfo | None:
        data = await self.kv.hgetall(WorkflowKeys.workflow(self.workspace_id, workflow_id))
        if not data:
            return None
        return WorkflowInfo(
            id=data["id"],
            name=data.get("name", ""),
            description=data.get("description") or None,
            status=WorkflowStatus(data.get("status") or WorkflowStatus.ACTIVE.value),
            created_at=int(data.get("created_at") or 0),
            updated_at=int(data.get("updated_at") or 0),
            completed_at=int(data["completed_at"]) if data.get("completed_at") else None,
            memory_count=await self.count_memories(workflow_id),
            summary=data.get("summary") or None,
            workspace_id=data.get("workspace_id") or self.workspace_id,
        )

    async def update(
        self,
        workflow_id: str,
        fields: Mapping[str, str],
        active: bool | None = None,
        release_active: bool = False,
    ) -> bool:
        """Write fields, conditional on who holds the active pointer.

        ``active=True`` requires the pointer to name this workflow and
        ``active=False`` requires it not to. ``release_active`` clears the
        pointer in the same transaction. Returns False, having written nothing,
        when the condition no longer holds.
        """
        key = WorkflowKeys.active(self.workspace_id)
        pipe = self.kv.pipeline()
        if active is True or release_active:
            pipe.guard(key, lambda current: current == workflow_id)
        elif active is False:
            pipe.guard(key, lambda current: current != workflow_id)
        pipe.hset(WorkflowKeys.workflow(self.workspace_id, workflow_id), fields)
        if release_active:
            pipe.delete(key)
        return await pipe.execute()

    async def list_ids(self) -> list[str]:
        return await self.kv.zrevrange(WorkflowKeys.workflows(self.workspace_id), 0, -1)

    # --- membership ---

    async def link(self, workflow_id: str, memory_id: str) -> None:
        pipe = self.kv.pipeline()
        pipe.sadd(WorkflowKeys.memories(self.workspace_id, workflow_id), memory_id)
        pipe.sadd(WorkflowKeys.memory_workflows(self.workspace_id, memory_id), workflow_id)
        await pipe.execute()

    async def unlink(self, workflow_id: str, memory_id: str) -> bool:
        key = WorkflowKeys.memories(self.workspace_id, workflow_id)
        if not await self.kv.sismember(key, memory_id):
            return False
        pipe = self.kv.pipeline()
        pipe.srem(key, memory_id)
        pipe.srem(WorkflowKeys.memory_workflows(self.workspace_id, memory_id), workflow_id)
        await pipe.execute()
        return True

    async def memory_ids(self, workflow_id: str) -> list[str]:
        # Ids sort chronologically.
        return sorted(await self.kv.smembers(WorkflowKeys.memories(self.workspace_id, workflow_id)))

    async def count_memories(self, workflow_id: str) -> int:
        return await self.kv.scard(WorkflowKeys.memories(self.workspace_id, workflow_id))
