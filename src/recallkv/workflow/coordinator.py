"""Workflow lifecycle: active -> paused -> active ... -> completed.

At most one workflow per workspace is active. The active pointer key is the
only source of that exclusivity. It is claimed with a conditional-create and
cleared only by a transaction that checks the workflow still holds it.
"""

from __future__ import annotations

import logging

from recallkv.config import WorkflowConfig
from recallkv.exceptions import (
    AlreadyActiveError,
    InvalidStateError,
    NoActiveWorkflowError,
    NotFoundError,
    ValidationError,
)
from recallkv.memory.store import MemoryStore
from recallkv.types import MemoryEntry, WorkflowInfo, WorkflowStatus
from recallkv.utils import new_id, now_ms
from recallkv.workflow.store import WorkflowStore

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


class WorkflowCoordinator:
    def __init__(self, memories: MemoryStore, config: WorkflowConfig | None = None) -> None:
        self.memories = memories
        self.workspace_id = memories.workspace_id
        self.config = config or WorkflowConfig()
        self.store = WorkflowStore(memories.kv, memories.workspace_id)

    async def _require(self, workflow_id: str) -> WorkflowInfo:
        info = await self.store.get(workflow_id)
        if info is None:
            raise NotFoundError("workflow", workflow_id)
        return info

    # --- transitions ---

    async def start(self, name: str, description: str | None = None) -> WorkflowInfo:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("workflow name must not be empty", field="name")
        workflow_id = new_id()
        if not await self.store.claim_active(workflow_id):
            raise AlreadyActiveError(await self.store.get_active_id())

        ts = now_ms()
        info = WorkflowInfo(
            id=workflow_id,
            name=name.strip(),
            description=description or None,
            status=WorkflowStatus.ACTIVE,
            created_at=ts,
            updated_at=ts,
            workspace_id=self.workspace_id,
        )
        try:
            await self.store.create(info)
        except Exception:
            await self.store.release_active(workflow_id)
            raise
        logger.info("Started workflow %s (%s) in %s", info.id, info.name, self.workspace_id)
        return info

    async def pause(self, workflow_id: str | None = None) -> WorkflowInfo:
        active_id = await self.store.get_active_id()
        target = workflow_id or active_id
        if not target:
            raise NoActiveWorkflowError("pause")
        info = await self._require(target)
        if active_id is None:
            raise NoActiveWorkflowError("pause")
        if info.status != WorkflowStatus.ACTIVE or active_id != target:
            raise InvalidStateError(f"Workflow {target} is not the active workflow.")

        info.status = WorkflowStatus.PAUSED
        info.updated_at = now_ms()
        released = await self.store.update(
            target,
            {"status": info.status.value, "updated_at": str(info.updated_at)},
            release_active=True,
        )
        if not released:
            raise InvalidStateError(
                f"Workflow {target} stopped being active before it was paused."
            )
        logger.info("Paused workflow %s", target)
        return info

    async def resume(self, workflow_id: str) -> WorkflowInfo:
        info = await self._require(workflow_id)
        if info.status == WorkflowStatus.COMPLETED:
            raise InvalidStateError(f"Workflow {workflow_id} is completed and cannot be resumed.")
        if await self.store.get_active_id() == workflow_id:
            raise InvalidStateError(f"Workflow {workflow_id} is already active.")
        if not await self.store.claim_active(workflow_id):
            raise AlreadyActiveError(await self.store.get_active_id())

        try:
            # Re-read under the claim; a completion may have landed in between.
            info = await self._require(workflow_id)
            if info.status == WorkflowStatus.COMPLETED:
                raise InvalidStateError(
                    f"Workflow {workflow_id} is completed and cannot be resumed."
                )
            info.status = WorkflowStatus.ACTIVE
            info.updated_at = now_ms()
            if not await self.store.update(
                workflow_id,
                {"status": info.status.value, "updated_at": str(info.updated_at)},
                active=True,
            ):
                raise InvalidStateError(f"Workflow {workflow_id} lost the active claim.")
        except Exception:
            await self.store.release_active(workflow_id)
            raise
        logger.info("Resumed workflow %s", workflow_id)
        return info

    async def complete(
        self, workflow_id: str | None = None, summary: str | None = None
    ) -> WorkflowInfo:
        active_id = await self.store.get_active_id()
        target = workflow_id or active_id
        if not target:
            raise NoActiveWorkflowError("complete")
        info = await self._require(target)
        if info.status == WorkflowStatus.COMPLETED:
            raise InvalidStateError(f"Workflow {target} is already completed.")

        ts = now_ms()
        info.status = WorkflowStatus.COMPLETED
        info.completed_at = ts
        info.updated_at = ts
        info.summary = summary or await self._build_summary(target)
        holding = active_id == target
        if not await self.store.update(
            target,
            {
                "status": info.status.value,
                "completed_at": str(ts),
                "updated_at": str(ts),
                "summary": info.summary,
            },
            active=holding,
            release_active=holding,
        ):
            raise InvalidStateError(
                f"Workflow {target} changed state while it was being completed."
            )
        logger.info("Completed workflow %s (%d memories)", target, info.memory_count)
        return info

    async def _build_summary(self, workflow_id: str) -> str:
        ids = await self.store.memory_ids(workflow_id)
        if not ids:
            return "Workflow completed with no linked memories."
        lines = [f"Workflow summary ({len(ids)} memories):"]
        for memory in await self.memories.get_memories(ids[: self.config.summary_max_memories]):
            if memory.summary:
                lines.append(f"- {memory.summary}")
        text = "\n".join(lines)
        if len(text) > self.config.summary_max_chars:
            return text[: self.config.summary_max_chars] + "..."
        return text

    # --- queries ---

    async def get_workflow(self, workflow_id: str) -> WorkflowInfo | None:
        return await self.store.get(workflow_id)

    async def get_active_workflow_id(self) -> str | None:
        return await self.store.get_active_id()

    async def get_active_workflow(self) -> WorkflowInfo | None:
        active_id = await self.store.get_active_id()
        if not active_id:
            return None
        return await self.store.get(active_id)

    async def list_workflows(
        self, status: WorkflowStatus | str | None = None, limit: int = 20
    ) -> list[WorkflowInfo]:
        wanted = WorkflowStatus(status) if status else None
        out: list[WorkflowInfo] = []
        for workflow_id in await self.store.list_ids():
            info = await self.store.get(workflow_id)
            if info is None or (wanted is not None and info.status != wanted):
                continue
            out.append(info)
            if len(out) >= limit:
                break
        return out

    # --- membership ---

    async def link_memory(self, workflow_id: str, memory_id: str) -> None:
        """Idempotent: linking the same pair twice leaves one membership."""
        await self._require(workflow_id)
        if not await self.memories.exists(memory_id):
            raise NotFoundError("memory", memory_id)
        await self.store.link(workflow_id, memory_id)

    async def link_memory_to_active(self, memory_id: str) -> str | None:
        active_id = await self.store.get_active_id()
        if not active_id:
            return None
        await self.link_memory(active_id, memory_id)
        return active_id

    async def unlink_memory(self, workflow_id: str, memory_id: str) -> bool:
        return await self.store.unlink(workflow_id, memory_id)

    async def get_workflow_memories(self, workflow_id: str) -> list[MemoryEntry]:
        await self._require(workflow_id)
        return await self.memories.get_memories(await self.store.memory_ids(workflow_id))

    async def get_active_workflow_context(self, max_tokens: int | None = None) -> str | None:
        info = await self.get_active_workflow()
        if info is None:
            return None
        lines = [f"## Active Workflow: {info.name}"]
        if info.description:
            lines.append(f"Description: {info.description}")
        lines.append(f"Status: {info.status.value} | Memories linked: {info.memory_count}")
        if info.summary:
            lines.append(f"Summary so far: {info.summary}")
        budget = (max_tokens or self.config.context_max_tokens) * CHARS_PER_TOKEN
        return "\n".join(lines)[:budget]
