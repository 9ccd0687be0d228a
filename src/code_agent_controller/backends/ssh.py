"""OpenSSH client executor.

Drives the system ``ssh`` binary through asyncio subprocesses so provisioning
steps never block the event loop.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from code_agent_controller.config import settings
from code_agent_controller.core.provisioner import SshCommandOptions, SshCommandResult
from code_agent_controller.core.toolchain import shell_escape
from code_agent_controller.errors import ExecutionError

logger = logging.getLogger(__name__)


class OpenSshExecutor:
    """SshExecutor targeting ``options.target`` as ``<user>@<ip>:<port>``."""

    def __init__(
        self,
        user: Optional[str] = None,
        key_path: Optional[Path] = None,
        connect_timeout: Optional[int] = None,
        command_timeout: Optional[float] = None,
    ):
        self.user = user or settings.ssh_user
        self.key_path = key_path or settings.ssh_key_path
        self.connect_timeout = connect_timeout or settings.ssh_connect_timeout
        self.command_timeout = command_timeout or settings.ssh_command_timeout

    def build_args(self, command: str, options: SshCommandOptions) -> list[str]:
        """Full ``ssh`` argv for running ``command`` with ``options``."""
        if options.target is None:
            raise ExecutionError("SSH command requires a target box")

        remote = command
        if options.cwd:
            remote = f"cd {shell_escape(options.cwd)} && {remote}"
        if options.env:
            exports = " ".join(
                f"{key}={shell_escape(value)}" for key, value in sorted(options.env.items())
            )
            remote = f"export {exports}; {remote}"

        args = ["ssh"]
        if self.key_path:
            args += ["-i", str(self.key_path)]
        args += [
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
            "-o",
            "BatchMode=yes",
            "-p",
            str(options.target.ssh_port),
            f"{self.user}@{options.target.public_ip}",
            remote,
        ]
        return args

    async def exec(
        self, command: str, options: Optional[SshCommandOptions] = None
    ) -> SshCommandResult:
        """Run ``command`` remotely.

        Raises:
            ExecutionError: no target, or the command exceeded the timeout.
        """
        options = options or SshCommandOptions()
        args = self.build_args(command, options)

        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if options.stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdin = options.stdin.encode() if options.stdin is not None else None
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(stdin), timeout=self.command_timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            host = options.target.public_ip
            logger.warning(f"SSH command on {host} timed out after {self.command_timeout}s")
            raise ExecutionError(f"SSH command on {host} timed out") from e

        return SshCommandResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=process.returncode,
        )
