"""Docker-backed VM manager and command executor.

Uses python-on-whales for Docker API interactions. Each agent box or host is
a long-running container on the box network; box tags are stored as container
labels at creation time and tracked in-process afterwards, since Docker
labels are immutable.
"""

import asyncio
import logging
import uuid
from typing import Optional

from python_on_whales import DockerClient, docker
from python_on_whales.exceptions import DockerException

from code_agent_controller.config import settings
from code_agent_controller.errors import VmManagerError
from code_agent_controller.models import (
    AgentBoxNetwork,
    CommandResult,
    VmCreateRequest,
    VmInstance,
    VmStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

LABEL_PREFIX = "cac."
CONTAINER_NAME_PREFIX = "cac-box-"

_STATE_TO_STATUS = {
    "created": VmStatus.CREATING,
    "restarting": VmStatus.CREATING,
    "running": VmStatus.RUNNING,
    "paused": VmStatus.STOPPED,
    "exited": VmStatus.STOPPED,
    "removing": VmStatus.STOPPED,
    "dead": VmStatus.ERROR,
}


class DockerVmManager:
    """VmManager whose "VMs" are containers on a shared bridge network."""

    def __init__(
        self,
        client: Optional[DockerClient] = None,
        image: Optional[str] = None,
        network_name: Optional[str] = None,
    ):
        self.docker = client or docker
        self.image = image or settings.box_image
        self.network_name = network_name or settings.box_network
        self.tags: dict[str, dict[str, str]] = {}

        self._network_checked = False

    async def create(self, request: VmCreateRequest) -> VmInstance:
        await self._ensure_network()
        name = f"{CONTAINER_NAME_PREFIX}{uuid.uuid4().hex[:12]}"
        tags = {"repo": request.repo_url, "branch": request.branch, **request.tags}

        container = await self._call(
            "create",
            name,
            self.docker.container.run,
            self.image,
            name=name,
            detach=True,
            networks=[self.network_name],
            labels={f"{LABEL_PREFIX}{key}": value for key, value in tags.items()},
            # Keep container running
            command=["tail", "-f", "/dev/null"],
        )

        self.tags[container.id] = tags
        logger.info(f"Created container {name} ({container.id[:12]}) for {request.repo_url}")
        return VmInstance(id=container.id, network=self._network_of(container), tags=tags)

    async def start(self, vm_id: str) -> None:
        await self._call("start", vm_id, self.docker.container.start, vm_id)

    async def stop(self, vm_id: str) -> None:
        await self._call("stop", vm_id, self.docker.container.stop, vm_id, time=10)

    async def delete(self, vm_id: str) -> None:
        await self._call("delete", vm_id, self.docker.container.remove, vm_id, force=True)
        self.tags.pop(vm_id, None)

    async def get_status(self, vm_id: str) -> VmStatus:
        container = await self._call("inspect", vm_id, self.docker.container.inspect, vm_id)
        return _STATE_TO_STATUS.get(container.state.status, VmStatus.ERROR)

    async def tag(self, vm_id: str, tags: dict[str, str]) -> None:
        if vm_id not in self.tags:
            container = await self._call("inspect", vm_id, self.docker.container.inspect, vm_id)
            self.tags[vm_id] = {
                key[len(LABEL_PREFIX):]: value
                for key, value in (container.config.labels or {}).items()
                if key.startswith(LABEL_PREFIX)
            }
        self.tags[vm_id].update(tags)

    async def get_ip(self, vm_id: str) -> AgentBoxNetwork:
        container = await self._call("inspect", vm_id, self.docker.container.inspect, vm_id)
        return self._network_of(container)

    async def _ensure_network(self) -> None:
        if self._network_checked:
            return
        if not await asyncio.to_thread(self.docker.network.exists, self.network_name):
            await self._call(
                "create network",
                self.network_name,
                self.docker.network.create,
                self.network_name,
                driver="bridge",
            )
        self._network_checked = True

    def _network_of(self, container) -> AgentBoxNetwork:
        networks = container.network_settings.networks or {}
        endpoint = networks.get(self.network_name)
        if endpoint is None or not endpoint.ip_address:
            raise VmManagerError(
                f"Container {container.id[:12]} has no address on network {self.network_name}"
            )
        return AgentBoxNetwork(public_ip=endpoint.ip_address)

    async def _call(self, action: str, target: str, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except DockerException as e:
            raise VmManagerError(f"Failed to {action} {target}: {e}") from e


class DockerCommandExecutor:
    """CommandExecutor that runs scripts with ``docker exec <host> bash -c``."""

    def __init__(self, client: Optional[DockerClient] = None):
        self.docker = client or docker

    async def run_script(self, host_id: str, script: list[str]) -> CommandResult:
        return await self.run_command(host_id, "\n".join(script))

    async def run_command(self, host_id: str, command: str) -> CommandResult:
        started_at = utcnow()
        try:
            stdout = await asyncio.to_thread(
                self.docker.container.execute,
                host_id,
                ["bash", "-c", command],
            )
            exit_code, stderr = 0, ""
        except DockerException as e:
            # docker exec reports the command's own exit code
            exit_code = e.return_code
            stdout, stderr = _text(e.stdout), _text(e.stderr)
            logger.warning(f"Command on {host_id} exited with code {exit_code}")

        return CommandResult(
            stdout=_text(stdout),
            stderr=stderr,
            exit_code=exit_code,
            started_at=started_at,
            finished_at=utcnow(),
        )


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return str(value)
