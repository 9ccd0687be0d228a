"""Concrete collaborators for the core services.

- docker: containers standing in for VMs, and ``docker exec`` script runner
- ssh: OpenSSH client executor for provisioning steps
- vault: Vault transit decryption of env payloads
"""

from code_agent_controller.backends.docker import (
    DockerCommandExecutor,
    DockerVmManager,
)
from code_agent_controller.backends.ssh import OpenSshExecutor
from code_agent_controller.backends.vault import VaultTransitEncryptionService

__all__ = [
    "DockerCommandExecutor",
    "DockerVmManager",
    "OpenSshExecutor",
    "VaultTransitEncryptionService",
]
