"""Host preparation and script execution for single-host workspaces."""

import logging
import re
from typing import Protocol

from code_agent_controller.core.vm_manager import VmManager
from code_agent_controller.errors import ProvisioningError
from code_agent_controller.models import CommandResult, HostHealth, VmStatus

logger = logging.getLogger(__name__)

DISK_USAGE_LIMIT_PERCENT = 80

# Safe to re-run before every provision; fnm is only installed when absent.
BASE_SETUP_SCRIPT = [
    "set -eu",
    'export HOME="${HOME:-/root}"',
    "if command -v apt-get >/dev/null 2>&1; then",
    "  apt-get update -y",
    "  apt-get install -y git curl jq unzip",
    "elif command -v yum >/dev/null 2>&1; then",
    "  yum install -y git curl jq unzip",
    "fi",
    'export PATH="$HOME/.local/share/fnm:$PATH"',
    "if ! command -v fnm >/dev/null 2>&1; then",
    "  curl -fsSL https://fnm.vercel.app/install | bash -s -- --skip-shell",
    "fi",
    'if [ -s "$HOME/.local/share/fnm/fnm" ]; then '
    'ln -sf "$HOME/.local/share/fnm/fnm" /usr/local/bin/fnm; fi',
]

HEALTH_CHECK_SCRIPT = ["set -eu", "df -P / | tail -1", "cat /proc/loadavg"]

_DISK_LINE = re.compile(r"\s(\d+)%\s+/$")


class CommandExecutor(Protocol):
    """Runs shell scripts on a host identified by id."""

    async def run_script(self, host_id: str, script: list[str]) -> CommandResult: ...

    async def run_command(self, host_id: str, command: str) -> CommandResult: ...


class HostProvisioner:
    """Keeps a fixed host powered on and bootstrapped, and runs scripts on it."""

    def __init__(self, vm_manager: VmManager, executor: CommandExecutor):
        self.vm_manager = vm_manager
        self.executor = executor

    async def ensure_host_ready(self, host_id: str) -> None:
        """Start the host if needed, then install git/curl/jq/unzip and fnm.

        Raises:
            VmManagerError: the host could not be inspected or started.
            ProvisioningError: the bootstrap script failed.
        """
        status = await self.vm_manager.get_status(host_id)
        if status != VmStatus.RUNNING:
            logger.info(f"Host {host_id} is {status.value}, starting it")
            await self.vm_manager.start(host_id)

        result = await self.executor.run_script(host_id, BASE_SETUP_SCRIPT)
        if result.exit_code != 0:
            raise ProvisioningError(
                f"Host bootstrap failed on {host_id}: {result.stderr or result.stdout}"
            )

    async def health_check(self, host_id: str) -> HostHealth:
        """Report root disk usage and 1-minute load of the host."""
        result = await self.executor.run_script(host_id, HEALTH_CHECK_SCRIPT)
        lines = [line.strip() for line in result.stdout.splitlines()]

        disk_percent = 0
        for line in lines:
            match = _DISK_LINE.search(line)
            if match:
                disk_percent = int(match.group(1))
                break

        load = None
        for line in lines:
            if "%" in line or not line:
                continue
            try:
                load = float(line.split()[0])
                break
            except ValueError:
                continue

        return HostHealth(
            ok=result.exit_code == 0 and disk_percent < DISK_USAGE_LIMIT_PERCENT,
            disk_percent_used=disk_percent,
            load=load,
            details=result.stdout,
        )

    async def run_command(self, host_id: str, script: list[str]) -> CommandResult:
        return await self.executor.run_script(host_id, script)
