"""Box provisioning over a remote shell.

Each provisioning step is a single shell command. A non-zero exit code marks
the step as failed with the command's stderr as the error; steps never raise.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from code_agent_controller.config import settings
from code_agent_controller.core.env_injector import EnvInjector
from code_agent_controller.core.toolchain import shell_escape
from code_agent_controller.models import (
    AgentBoxNetwork,
    EnvInjectionContext,
    ProvisioningStepResult,
    RepoProvisioningContext,
)

logger = logging.getLogger(__name__)


@dataclass
class SshCommandOptions:
    """Per-command options for an SSH executor."""

    cwd: Optional[str] = None
    stdin: Optional[str] = None
    env: Optional[dict[str, str]] = None
    target: Optional[AgentBoxNetwork] = None


@dataclass
class SshCommandResult:
    """Result of a remote command."""

    stdout: str
    stderr: str
    exit_code: int


class SshExecutor(Protocol):
    """Runs one shell command on a remote box."""

    async def exec(
        self, command: str, options: Optional[SshCommandOptions] = None
    ) -> SshCommandResult: ...


class Provisioner(Protocol):
    """Steps that turn a fresh box into a ready workspace for a repo."""

    async def prepare_repo(self, context: RepoProvisioningContext) -> ProvisioningStepResult: ...

    async def install_dependencies(
        self, context: RepoProvisioningContext
    ) -> ProvisioningStepResult: ...

    async def boot_devcontainer(
        self, context: RepoProvisioningContext
    ) -> ProvisioningStepResult: ...

    async def inject_env(self, context: EnvInjectionContext) -> ProvisioningStepResult: ...


class SshProvisioner:
    """Provisioner that executes each step as one command over SSH."""

    def __init__(
        self,
        executor: SshExecutor,
        env_injector: EnvInjector,
        repo_path: Optional[str] = None,
    ):
        self.executor = executor
        self.env_injector = env_injector
        self.repo_path = repo_path or settings.repo_path

    async def prepare_repo(self, context: RepoProvisioningContext) -> ProvisioningStepResult:
        """Clone the branch, or fetch/checkout/pull when a clone already exists."""
        repo = shell_escape(self.repo_path)
        git_dir = shell_escape(f"{self.repo_path}/.git")
        branch = shell_escape(context.branch)
        command = (
            f"if [ -d {git_dir} ]; then "
            f"git -C {repo} fetch --all && git -C {repo} checkout {branch} && git -C {repo} pull; "
            f"else git clone --branch {branch} {shell_escape(context.repo_url)} {repo}; fi"
        )
        return await self._run_step("prepare-repo", command, context.network)

    async def install_dependencies(
        self, context: RepoProvisioningContext
    ) -> ProvisioningStepResult:
        command = f"cd {shell_escape(self.repo_path)} && pnpm install"
        return await self._run_step("pnpm-install", command, context.network)

    async def boot_devcontainer(
        self, context: RepoProvisioningContext
    ) -> ProvisioningStepResult:
        command = (
            f"cd {shell_escape(self.repo_path)} && devcontainer up --remove-existing-container"
        )
        return await self._run_step("devcontainer-up", command, context.network)

    async def inject_env(self, context: EnvInjectionContext) -> ProvisioningStepResult:
        """Decrypt the payload and write it to ``<repo>/.env`` via stdin."""
        start = time.monotonic()
        try:
            env = await self.env_injector.decrypt_payload(context.env_payload)
            env_file = self.env_injector.format_env_file(env)
            result = await self.executor.exec(
                f"cd {shell_escape(self.repo_path)} && cat > .env",
                SshCommandOptions(stdin=env_file, target=context.network),
            )
            if result.exit_code != 0:
                raise RuntimeError(result.stderr or "env injection failed")
        except Exception as e:
            logger.warning(f"Provisioning step inject-env failed: {e}")
            return ProvisioningStepResult(
                step="inject-env",
                ok=False,
                duration_ms=_elapsed_ms(start),
                error=str(e) or "env injection failed",
            )
        logger.info(f"Injected {len(env)} env vars")
        return ProvisioningStepResult(step="inject-env", ok=True, duration_ms=_elapsed_ms(start))

    async def _run_step(
        self,
        step: str,
        command: str,
        target: Optional[AgentBoxNetwork],
    ) -> ProvisioningStepResult:
        start = time.monotonic()
        try:
            result = await self.executor.exec(command, SshCommandOptions(target=target))
            if result.exit_code != 0:
                raise RuntimeError(result.stderr or f"{step} failed")
        except Exception as e:
            logger.warning(f"Provisioning step {step} failed: {e}")
            return ProvisioningStepResult(
                step=step,
                ok=False,
                duration_ms=_elapsed_ms(start),
                error=str(e) or f"{step} failed",
            )

        logger.info(f"Provisioning step {step} succeeded")
        return ProvisioningStepResult(step=step, ok=True, duration_ms=_elapsed_ms(start))


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
