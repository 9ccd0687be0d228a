"""Shared fixtures: in-memory KV, controllable clock, fake collaborators."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from code_agent_controller.models import (
    AgentBox,
    AgentBoxMeta,
    AgentBoxNetwork,
    AgentBoxRepoContext,
    AgentBoxStatus,
    CommandResult,
    ProvisioningStepResult,
    VmCreateRequest,
    VmInstance,
    VmStatus,
)
from code_agent_controller.store.agent_box_store import KeyValueAgentBoxStore
from code_agent_controller.store.key_value import InMemoryKeyValueService

REPO_URL = "https://github.com/acme/widgets.git"
BRANCH = "main"
EPOCH = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = EPOCH):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeVmManager:
    """Records every VM call; ids are ``vm-1``, ``vm-2``, ..."""

    def __init__(self):
        self.created: list[VmCreateRequest] = []
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.deleted: list[str] = []
        self.statuses: dict[str, VmStatus] = {}
        self.tags: dict[str, dict[str, str]] = {}
        self.fail_create = False
        self.fail_stop: set[str] = set()

    async def create(self, request: VmCreateRequest) -> VmInstance:
        if self.fail_create:
            raise RuntimeError("quota exceeded")
        self.created.append(request)
        vm_id = f"vm-{len(self.created)}"
        self.statuses[vm_id] = VmStatus.RUNNING
        self.tags[vm_id] = dict(request.tags)
        return VmInstance(
            id=vm_id,
            network=AgentBoxNetwork(public_ip=f"10.0.0.{len(self.created)}"),
            tags=dict(request.tags),
        )

    async def start(self, vm_id: str) -> None:
        self.started.append(vm_id)
        self.statuses[vm_id] = VmStatus.RUNNING

    async def stop(self, vm_id: str) -> None:
        if vm_id in self.fail_stop:
            raise RuntimeError(f"cannot stop {vm_id}")
        self.stopped.append(vm_id)
        self.statuses[vm_id] = VmStatus.STOPPED

    async def delete(self, vm_id: str) -> None:
        self.deleted.append(vm_id)
        self.statuses.pop(vm_id, None)

    async def get_status(self, vm_id: str) -> VmStatus:
        return self.statuses.get(vm_id, VmStatus.STOPPED)

    async def tag(self, vm_id: str, tags: dict[str, str]) -> None:
        self.tags.setdefault(vm_id, {}).update(tags)

    async def get_ip(self, vm_id: str) -> AgentBoxNetwork:
        return AgentBoxNetwork(public_ip="10.0.0.1")


class FakeProvisioner:
    """Succeeds every step unless its name is in ``fail_steps``."""

    def __init__(self, fail_steps: Optional[set[str]] = None):
        self.fail_steps = fail_steps or set()
        self.calls: list[str] = []

    def _result(self, step: str) -> ProvisioningStepResult:
        self.calls.append(step)
        if step in self.fail_steps:
            return ProvisioningStepResult(step=step, ok=False, duration_ms=1, error=f"{step} broke")
        return ProvisioningStepResult(step=step, ok=True, duration_ms=1)

    async def prepare_repo(self, context):
        return self._result("prepare-repo")

    async def install_dependencies(self, context):
        return self._result("pnpm-install")

    async def boot_devcontainer(self, context):
        return self._result("devcontainer-up")

    async def inject_env(self, context):
        return self._result("inject-env")


class GatedProvisioner(FakeProvisioner):
    """FakeProvisioner whose prepare-repo step waits until ``gate`` is set."""

    def __init__(self, fail_steps: Optional[set[str]] = None):
        super().__init__(fail_steps)
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def prepare_repo(self, context):
        self.entered.set()
        await self.gate.wait()
        return await super().prepare_repo(context)


class FakeCommandExecutor:
    """CommandExecutor returning queued results (exit 0 by default)."""

    def __init__(self):
        self.scripts: list[tuple[str, list[str]]] = []
        self.results: list[CommandResult] = []

    def queue(self, exit_code: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.results.append(
            CommandResult(
                stdout=stdout,
                stderr=stderr,
                exit_code=exit_code,
                started_at=EPOCH,
                finished_at=EPOCH,
            )
        )

    async def run_script(self, host_id: str, script: list[str]) -> CommandResult:
        self.scripts.append((host_id, script))
        if self.results:
            return self.results.pop(0)
        return CommandResult(started_at=EPOCH, finished_at=EPOCH)

    async def run_command(self, host_id: str, command: str) -> CommandResult:
        return await self.run_script(host_id, [command])


def make_box(
    box_id: str,
    status: AgentBoxStatus = AgentBoxStatus.READY,
    last_used: datetime = EPOCH,
    lease_expires_at: Optional[datetime] = None,
    assigned_to: Optional[str] = None,
    is_pool_instance: bool = True,
    repo_url: str = REPO_URL,
    branch: str = BRANCH,
) -> AgentBox:
    return AgentBox(
        id=box_id,
        status=status,
        assigned_to=assigned_to,
        lease_expires_at=lease_expires_at,
        repo_context=AgentBoxRepoContext(url=repo_url, branch=branch),
        network=AgentBoxNetwork(public_ip="10.0.0.99"),
        meta=AgentBoxMeta(
            created_at=EPOCH - timedelta(hours=1),
            last_heartbeat=last_used,
            last_used=last_used,
            is_pool_instance=is_pool_instance,
        ),
    )


@pytest.fixture
def kv():
    return InMemoryKeyValueService()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(kv, clock):
    return KeyValueAgentBoxStore(kv, key_prefix="test", scan_limit=50, clock=clock)


@pytest.fixture
def vm_manager():
    return FakeVmManager()


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def command_executor():
    return FakeCommandExecutor()
