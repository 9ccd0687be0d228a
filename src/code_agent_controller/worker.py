"""Pool reconciliation worker.

Run with ``python -m code_agent_controller.worker``. Keeps every pool listed
in ``settings.pool_config_path`` at its standby/maximum bounds until SIGINT
or SIGTERM.
"""

import asyncio
import logging
import signal
from typing import Optional

from code_agent_controller.backends.docker import DockerVmManager
from code_agent_controller.backends.ssh import OpenSshExecutor
from code_agent_controller.backends.vault import VaultTransitEncryptionService
from code_agent_controller.config import settings
from code_agent_controller.core.allocator import AllocatorService
from code_agent_controller.core.env_injector import EnvInjector
from code_agent_controller.core.pool_manager import PoolManager, load_pool_configs
from code_agent_controller.core.provisioner import SshProvisioner
from code_agent_controller.models import PoolConfig
from code_agent_controller.store.agent_box_store import KeyValueAgentBoxStore
from code_agent_controller.store.key_value import create_key_value_service

logger = logging.getLogger(__name__)


def _read_pool_configs() -> list[PoolConfig]:
    # Re-read on every pass so edits apply without a restart
    configs = load_pool_configs(settings.pool_config_path)
    logger.debug(f"Loaded {len(configs)} pool configs from {settings.pool_config_path}")
    return configs


async def run_worker(stop_event: Optional[asyncio.Event] = None) -> None:
    """Wire the services and reconcile pools until a stop signal arrives."""
    logger.info(f"Starting {settings.app_name} pool worker...")

    kv = create_key_value_service(settings.kv_backend, settings.redis_url)
    store = KeyValueAgentBoxStore(kv)
    vm_manager = DockerVmManager()
    provisioner = SshProvisioner(
        executor=OpenSshExecutor(),
        env_injector=EnvInjector(VaultTransitEncryptionService()),
    )
    allocator = AllocatorService(store, vm_manager, provisioner)
    pool_manager = PoolManager(store, vm_manager, allocator)

    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await pool_manager.start(_read_pool_configs, settings.reconcile_interval_seconds)
    try:
        await stop_event.wait()
    finally:
        logger.info(f"Shutting down {settings.app_name} pool worker...")
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await pool_manager.stop()
        await allocator.wait_for_background()
        await kv.close()


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
