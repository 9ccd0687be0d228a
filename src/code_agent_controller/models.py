"""Data model for agent boxes, pools and single-host workspaces."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class AgentBoxStatus(str, Enum):
    """Agent box lifecycle states."""

    CREATING = "creating"
    READY = "ready"
    BUSY = "busy"
    STOPPED = "stopped"
    ERROR = "error"


class VmStatus(str, Enum):
    """Power/provisioning state reported by a VM manager."""

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class WorkspaceStatus(str, Enum):
    """Single-host workspace lifecycle states."""

    CREATING = "creating"
    READY = "ready"
    BUSY = "busy"
    ERROR = "error"
    DELETED = "deleted"


class WorkspaceMode(str, Enum):
    """Whether a workspace holds a repository clone or starts empty."""

    REPO = "repo"
    EMPTY = "empty"


# =============================================================================
# Agent boxes
# =============================================================================


class AgentBoxNetwork(BaseModel):
    """Where to reach a box."""

    public_ip: str
    ssh_port: int = 22


class AgentBoxRepoContext(BaseModel):
    """The workload a box currently serves."""

    url: str
    branch: str
    commit_hash: Optional[str] = None


class AgentBoxMeta(BaseModel):
    """Bookkeeping timestamps for a box."""

    created_at: datetime
    last_heartbeat: datetime
    last_used: Optional[datetime] = None
    is_pool_instance: bool = False

    @property
    def last_activity(self) -> datetime:
        """``last_used`` falling back to ``created_at``; drives recency ordering."""
        return self.last_used or self.created_at


class AgentBox(BaseModel):
    """A leasable, poolable execution environment."""

    id: str
    status: AgentBoxStatus
    assigned_to: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    repo_context: AgentBoxRepoContext
    network: AgentBoxNetwork
    meta: AgentBoxMeta

    def lease_valid(self, now: Optional[datetime] = None) -> bool:
        """True while a lease is set and has not yet expired."""
        if self.lease_expires_at is None:
            return False
        return self.lease_expires_at > (now or utcnow())


class PoolConfig(BaseModel):
    """Desired state for one repository's warm pool."""

    repo_url: str
    base_branch: str = "main"
    min_standby: int = Field(default=0, ge=0)
    max_instances: int = Field(default=1, ge=0)
    idle_ttl_seconds: Optional[int] = None


# =============================================================================
# Allocation
# =============================================================================


class AllocatorRequest(BaseModel):
    """Request to allocate a box for a repo and branch."""

    repo_url: str
    branch: str
    requested_by: str
    env_payload: Optional[str] = None
    prefer_warm: bool = True
    lease_ttl_seconds: Optional[int] = None


class AllocatorResponse(BaseModel):
    """What the allocator hands back to a caller."""

    box_id: str
    status: AgentBoxStatus
    network: AgentBoxNetwork
    message: Optional[str] = None


# =============================================================================
# Provisioning
# =============================================================================


class ProvisioningStepResult(BaseModel):
    """Outcome of a single provisioning step."""

    step: str
    ok: bool
    duration_ms: int
    error: Optional[str] = None


class RepoProvisioningContext(BaseModel):
    """Input for repository provisioning steps."""

    repo_url: str
    branch: str
    box_id: Optional[str] = None
    network: Optional[AgentBoxNetwork] = None


class EnvInjectionContext(BaseModel):
    """Input for the env injection step."""

    env_payload: str
    box_id: Optional[str] = None
    network: Optional[AgentBoxNetwork] = None


# =============================================================================
# VM manager / command execution
# =============================================================================


class VmCreateRequest(BaseModel):
    """Parameters for creating a VM."""

    repo_url: str
    branch: str
    tags: dict[str, str] = Field(default_factory=dict)


class VmInstance(BaseModel):
    """A VM as reported by a VM manager."""

    id: str
    network: AgentBoxNetwork
    tags: dict[str, str] = Field(default_factory=dict)


class CommandResult(BaseModel):
    """Output of a script run on a host."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    started_at: datetime
    finished_at: datetime


class HostHealth(BaseModel):
    """Disk and load snapshot of a host."""

    ok: bool
    disk_percent_used: int
    load: Optional[float] = None
    details: Optional[str] = None


# =============================================================================
# Single-host workspaces
# =============================================================================


class WorkspaceRecord(BaseModel):
    """A workspace directory provisioned on a fixed host."""

    id: str
    repo_url: str = ""
    branch: str = ""
    status: WorkspaceStatus
    created_at: datetime
    last_used_at: datetime
    host_id: str
    path: str
    env_injected: bool = False
    mode: WorkspaceMode
