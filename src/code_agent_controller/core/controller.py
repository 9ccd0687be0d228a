"""Code Agent Controller.

Manages workspace directories on one fixed host. Each workspace is a
``<workspace_root>/<job_id>`` directory prepared by a provision script,
driven by execute scripts, and removed by a teardown script. Records are
persisted only for workspaces whose provisioning succeeded.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from code_agent_controller.config import settings
from code_agent_controller.core.host_provisioner import HostProvisioner
from code_agent_controller.core.job_spec import (
    JobSpec,
    RuntimeSpec,
    parse_job_spec,
    parse_job_spec_json,
    validate_env_payload,
)
from code_agent_controller.core.script_builder import (
    build_execute_script,
    build_provision_script,
    build_teardown_script,
    workspace_path,
)
from code_agent_controller.errors import ExecutionError, JobSpecError, NotFoundError, ProvisioningError
from code_agent_controller.models import (
    CommandResult,
    WorkspaceMode,
    WorkspaceRecord,
    WorkspaceStatus,
    utcnow,
)
from code_agent_controller.store.workspace_store import WorkspaceStore

logger = logging.getLogger(__name__)


@dataclass
class ExecutionOutcome:
    """Updated workspace record plus the output of the command that ran."""

    record: WorkspaceRecord
    result: CommandResult


class CodeAgentController:
    """Workspace lifecycle on a single host."""

    def __init__(
        self,
        store: WorkspaceStore,
        host_provisioner: HostProvisioner,
        host_id: Optional[str] = None,
        workspace_root: Optional[str] = None,
        default_job_spec: Optional[JobSpec] = None,
    ):
        self.store = store
        self.host_provisioner = host_provisioner
        self.host_id = host_id or settings.host_id
        self.workspace_root = workspace_root or settings.workspace_root
        self.default_job_spec = default_job_spec or JobSpec(
            runtime=RuntimeSpec(node=settings.default_node_version)
        )

    async def provision_workspace(
        self,
        job_id: str,
        repo_url: Optional[str] = None,
        branch: Optional[str] = None,
        config_override: Optional[Union[JobSpec, dict, str]] = None,
        env_payload: Optional[dict[str, str]] = None,
        allow_empty_workspace: bool = False,
    ) -> WorkspaceRecord:
        """Create (or recreate) the workspace for ``job_id``.

        All arguments are validated before the host is touched.

        Args:
            job_id: Workspace id, also its directory name.
            repo_url: Repository to clone. Omit for an empty workspace.
            branch: Branch to clone; required with ``repo_url``.
            config_override: Job spec as a model, dict or JSON string. Repo
                workspaces without one rely on the repo's own
                ``.agent-runrc.json``; empty workspaces fall back to the
                default job spec.
            env_payload: Extra ``.env`` entries, applied after the job spec env.
            allow_empty_workspace: Permit provisioning without ``repo_url``.

        Returns:
            The persisted ``ready`` record.

        Raises:
            JobSpecError: invalid override, env payload or repo/branch combination.
            ProvisioningError: host bootstrap or the provision script failed.
        """
        override = _parse_override(config_override)
        validate_env_payload(env_payload)
        if not repo_url and not allow_empty_workspace:
            raise JobSpecError("repo_url is required unless allow_empty_workspace is true")
        if repo_url and not branch:
            raise JobSpecError("branch is required when repo_url is provided")

        mode = WorkspaceMode.REPO if repo_url else WorkspaceMode.EMPTY
        spec_to_write = override
        if mode == WorkspaceMode.EMPTY and spec_to_write is None:
            spec_to_write = self.default_job_spec

        script = build_provision_script(
            job_id=job_id,
            workspace_root=self.workspace_root,
            repo_url=repo_url,
            branch=branch,
            config_override=spec_to_write,
            env_payload=env_payload,
            allow_empty_workspace=allow_empty_workspace,
        )

        await self.host_provisioner.ensure_host_ready(self.host_id)
        result = await self.host_provisioner.run_command(self.host_id, script)
        if result.exit_code != 0:
            logger.error(f"Provisioning workspace {job_id} failed with exit code {result.exit_code}")
            raise ProvisioningError(result.stderr or result.stdout)

        now = utcnow()
        record = WorkspaceRecord(
            id=job_id,
            repo_url=repo_url or "",
            branch=branch or "",
            status=WorkspaceStatus.READY,
            created_at=now,
            last_used_at=now,
            host_id=self.host_id,
            path=workspace_path(self.workspace_root, job_id),
            env_injected=bool(env_payload),
            mode=mode,
        )
        await self.store.save(record)
        logger.info(f"Workspace {job_id} provisioned ({mode.value}) at {record.path}")
        return record

    async def execute_command(self, job_id: str, command: str) -> ExecutionOutcome:
        """Run ``command`` in the workspace and mark it busy.

        Raises:
            NotFoundError: no record for ``job_id``.
            ExecutionError: the command exited non-zero; the record is unchanged.
        """
        record = await self._get_record(job_id)
        script = build_execute_script(self.workspace_root, job_id, command)
        result = await self.host_provisioner.run_command(self.host_id, script)
        if result.exit_code != 0:
            raise ExecutionError(result.stderr or result.stdout)

        updated = record.model_copy(
            update={"status": WorkspaceStatus.BUSY, "last_used_at": utcnow()}
        )
        await self.store.update(updated)
        return ExecutionOutcome(record=updated, result=result)

    async def teardown_workspace(self, job_id: str) -> None:
        """Remove the workspace directory, then its record.

        Raises:
            NotFoundError: no record for ``job_id``.
            ExecutionError: the teardown script failed; the record is kept.
        """
        await self._get_record(job_id)
        script = build_teardown_script(self.workspace_root, job_id)
        result = await self.host_provisioner.run_command(self.host_id, script)
        if result.exit_code != 0:
            raise ExecutionError(result.stderr or result.stdout)

        await self.store.delete(job_id)
        logger.info(f"Workspace {job_id} torn down")

    async def _get_record(self, job_id: str) -> WorkspaceRecord:
        record = await self.store.get(job_id)
        if record is None:
            raise NotFoundError(f"Workspace {job_id} not found")
        return record


def _parse_override(override: Optional[Union[JobSpec, dict, str]]) -> Optional[JobSpec]:
    if not override:
        return None
    if isinstance(override, str):
        return parse_job_spec_json(override)
    return parse_job_spec(override)
