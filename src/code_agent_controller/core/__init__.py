"""Core modules for the Code Agent Controller.

- job_spec / toolchain / script_builder: job spec model and the shell
  scripts derived from it
- env_injector: decryption and ``.env`` rendering of env payloads
- provisioner: SSH-driven box provisioning steps
- host_provisioner: single-host bootstrap and script execution
- allocator: warm-or-cold box allocation
- pool_manager: warm pool reconciliation
- controller: single-host workspace lifecycle
"""

from code_agent_controller.core.job_spec import (
    JobSpec,
    RuntimeSpec,
    parse_job_spec,
    parse_job_spec_json,
)
from code_agent_controller.core.env_injector import (
    EncryptionService,
    EnvInjector,
)
from code_agent_controller.core.vm_manager import VmManager
from code_agent_controller.core.provisioner import (
    Provisioner,
    SshCommandOptions,
    SshCommandResult,
    SshExecutor,
    SshProvisioner,
)
from code_agent_controller.core.host_provisioner import (
    CommandExecutor,
    HostProvisioner,
)
from code_agent_controller.core.allocator import AllocatorService
from code_agent_controller.core.pool_manager import (
    PoolManager,
    load_pool_configs,
)
from code_agent_controller.core.controller import (
    CodeAgentController,
    ExecutionOutcome,
)

__all__ = [
    # Job spec
    "JobSpec",
    "RuntimeSpec",
    "parse_job_spec",
    "parse_job_spec_json",
    # Env injection
    "EncryptionService",
    "EnvInjector",
    # Provisioning
    "VmManager",
    "Provisioner",
    "SshCommandOptions",
    "SshCommandResult",
    "SshExecutor",
    "SshProvisioner",
    "CommandExecutor",
    "HostProvisioner",
    # Boxes and pools
    "AllocatorService",
    "PoolManager",
    "load_pool_configs",
    # Single-host workspaces
    "CodeAgentController",
    "ExecutionOutcome",
]
