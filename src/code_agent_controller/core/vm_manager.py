"""VM lifecycle contract consumed by the allocator, pool manager and host provisioner."""

from typing import Protocol

from code_agent_controller.models import AgentBoxNetwork, VmCreateRequest, VmInstance, VmStatus


class VmManager(Protocol):
    """Create, power and inspect the VMs that back agent boxes.

    Implementations wrap every backend failure in ``VmManagerError``.
    """

    async def create(self, request: VmCreateRequest) -> VmInstance: ...

    async def start(self, vm_id: str) -> None: ...

    async def stop(self, vm_id: str) -> None: ...

    async def delete(self, vm_id: str) -> None: ...

    async def get_status(self, vm_id: str) -> VmStatus: ...

    async def tag(self, vm_id: str, tags: dict[str, str]) -> None: ...

    async def get_ip(self, vm_id: str) -> AgentBoxNetwork: ...
