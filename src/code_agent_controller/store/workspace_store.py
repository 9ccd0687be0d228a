"""Persistent WorkspaceRecord storage for the single-host controller."""

from typing import Optional, Protocol

from code_agent_controller.models import WorkspaceRecord, WorkspaceStatus, utcnow
from code_agent_controller.store.key_value import KeyValueService


class WorkspaceStore(Protocol):
    """Storage contract for workspace records."""

    async def get(self, workspace_id: str) -> Optional[WorkspaceRecord]: ...

    async def save(self, record: WorkspaceRecord) -> None: ...

    async def update(self, record: WorkspaceRecord) -> None: ...

    async def update_status(self, workspace_id: str, status: WorkspaceStatus) -> None: ...

    async def delete(self, workspace_id: str) -> None: ...


class KeyValueWorkspaceStore:
    """Workspace records as JSON documents under ``{prefix}{id}``."""

    def __init__(self, kv: KeyValueService, prefix: str = "cac:workspace:"):
        self.kv = kv
        self.prefix = prefix

    async def get(self, workspace_id: str) -> Optional[WorkspaceRecord]:
        data = await self.kv.get(self._key(workspace_id))
        return WorkspaceRecord.model_validate(data) if data else None

    async def save(self, record: WorkspaceRecord) -> None:
        await self.kv.set(self._key(record.id), record.model_dump(mode="json"))

    async def update(self, record: WorkspaceRecord) -> None:
        await self.save(record)

    async def update_status(self, workspace_id: str, status: WorkspaceStatus) -> None:
        existing = await self.get(workspace_id)
        if existing is None:
            return
        await self.update(
            existing.model_copy(update={"status": status, "last_used_at": utcnow()})
        )

    async def delete(self, workspace_id: str) -> None:
        await self.kv.delete(self._key(workspace_id))

    def _key(self, workspace_id: str) -> str:
        return f"{self.prefix}{workspace_id}"
