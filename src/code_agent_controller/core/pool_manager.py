"""Pool Manager.

Reconciles each repository's warm pool toward its PoolConfig:
- ensure_min_standby: create standby boxes until the minimum is met
- trim_above_max: stop the least recently used idle boxes above the maximum
- hibernate_idle: stop unleased boxes idle for longer than the TTL

Per-box operations inside one call run concurrently; a failing box is logged
and never aborts its siblings.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable, Optional, Union

import yaml

from code_agent_controller.core.allocator import AllocatorService
from code_agent_controller.core.vm_manager import VmManager
from code_agent_controller.models import AgentBox, AgentBoxStatus, AllocatorRequest, PoolConfig, utcnow
from code_agent_controller.store.agent_box_store import AgentBoxQuery, AgentBoxStore

logger = logging.getLogger(__name__)

POOL_REQUESTER = "pool-manager"

ConfigsProvider = Callable[[], Union[list[PoolConfig], Awaitable[list[PoolConfig]]]]


def load_pool_configs(path: Path) -> list[PoolConfig]:
    """Load pool configs from a YAML file of the form ``pools: [{repo_url: ..., ...}]``.

    A missing file means no pools.
    """
    if not path.exists():
        return []
    data = yaml.safe_load(path.read_text()) or {}
    return [PoolConfig(**entry) for entry in data.get("pools") or []]


class PoolManager:
    """Keeps warm standby capacity per repo within configured bounds."""

    def __init__(
        self,
        store: AgentBoxStore,
        vm_manager: VmManager,
        allocator: AllocatorService,
    ):
        self.store = store
        self.vm_manager = vm_manager
        self.allocator = allocator

        self._loop_task: Optional[asyncio.Task] = None

    async def reconcile_pools(self, configs: list[PoolConfig]) -> None:
        """Fill and trim each pool, one config at a time."""
        for config in configs:
            await self.ensure_min_standby(config)
            await self.trim_above_max(config)

    async def ensure_min_standby(self, config: PoolConfig) -> None:
        boxes = await self.store.list_by_repo(_query(config))
        active = sum(
            1 for box in boxes if box.status == AgentBoxStatus.READY and box.meta.is_pool_instance
        )
        pending = sum(1 for box in boxes if box.status == AgentBoxStatus.CREATING)
        needed = config.min_standby - active - pending
        if needed <= 0:
            return

        logger.info(
            f"Pool {config.repo_url}@{config.base_branch}: "
            f"{active} ready, {pending} creating, creating {needed} standby boxes"
        )
        await asyncio.gather(*(self._create_standby(config) for _ in range(needed)))

    async def trim_above_max(self, config: PoolConfig, now: Optional[datetime] = None) -> None:
        """Stop the least recently used idle boxes above ``max_instances``.

        Stopped boxes do not count toward the total. Boxes that are
        ``creating`` or busy under a valid lease are never stopped.
        """
        now = now or utcnow()
        boxes = [
            box
            for box in await self.store.list_by_repo(_query(config))
            if box.status != AgentBoxStatus.STOPPED
        ]
        excess = len(boxes) - config.max_instances
        if excess <= 0:
            return

        stoppable = sorted(
            (box for box in boxes if _idle(box, now)),
            key=lambda box: box.meta.last_activity,
        )
        victims = stoppable[:excess]
        logger.info(
            f"Pool {config.repo_url}@{config.base_branch}: "
            f"{len(boxes)} boxes above max {config.max_instances}, stopping {len(victims)}"
        )
        await asyncio.gather(*(self._stop_box(box, "excess") for box in victims))

    async def hibernate_idle(self, config: PoolConfig, now: Optional[datetime] = None) -> None:
        if not config.idle_ttl_seconds or config.idle_ttl_seconds <= 0:
            return

        now = now or utcnow()
        cutoff = now - timedelta(seconds=config.idle_ttl_seconds)
        boxes = await self.store.list_by_repo(_query(config))
        idle = [box for box in boxes if _idle(box, now) and box.meta.last_activity <= cutoff]
        if idle:
            logger.info(
                f"Pool {config.repo_url}@{config.base_branch}: hibernating {len(idle)} idle boxes"
            )
        await asyncio.gather(*(self._stop_box(box, "idle") for box in idle))

    # ==========================================================================
    # Scheduling
    # ==========================================================================

    async def start(self, configs_provider: ConfigsProvider, interval: float = 60.0) -> None:
        """Start the background reconciliation loop."""
        if self._loop_task and not self._loop_task.done():
            return

        self._loop_task = asyncio.create_task(self._run(configs_provider, interval))

    async def stop(self) -> None:
        """Stop the background reconciliation loop."""
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

    async def run_once(self, configs: list[PoolConfig]) -> None:
        """One full pass: reconcile every pool, then hibernate idle boxes."""
        await self.reconcile_pools(configs)
        for config in configs:
            await self.hibernate_idle(config)

    async def _run(self, configs_provider: ConfigsProvider, interval: float) -> None:
        while True:
            try:
                configs = configs_provider()
                if asyncio.iscoroutine(configs):
                    configs = await configs
                await self.run_once(configs)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error reconciling pools: {e}", exc_info=True)
            await asyncio.sleep(interval)

    # ==========================================================================
    # Per-box operations
    # ==========================================================================

    async def _create_standby(self, config: PoolConfig) -> None:
        request = AllocatorRequest(
            repo_url=config.repo_url,
            branch=config.base_branch,
            requested_by=POOL_REQUESTER,
            prefer_warm=False,
        )
        try:
            await self.allocator.create_pool_box(request)
        except Exception as e:
            logger.warning(f"Failed to create standby box for {config.repo_url}: {e}")

    async def _stop_box(self, box: AgentBox, reason: str) -> None:
        # Claim the box first so it cannot be leased while its VM stops
        claimed = await self.store.transition(
            box.id,
            AgentBoxStatus.STOPPED,
            expected=(AgentBoxStatus.READY, AgentBoxStatus.BUSY),
            release=True,
            unleased_only=True,
        )
        if not claimed:
            logger.info(f"Skipped stopping {reason} box {box.id}, it changed since the scan")
            return

        try:
            await self.vm_manager.stop(box.id)
            logger.info(f"Stopped {reason} box {box.id}")
        except Exception as e:
            logger.warning(f"Failed to stop {reason} box {box.id}: {e}")
            await self.store.transition(
                box.id, AgentBoxStatus.READY, expected=(AgentBoxStatus.STOPPED,)
            )


def _idle(box: AgentBox, now: datetime) -> bool:
    """Ready, or busy with an expired lease, and holding no valid lease."""
    if box.lease_valid(now):
        return False
    if box.status == AgentBoxStatus.READY:
        return True
    return box.status == AgentBoxStatus.BUSY and box.lease_expires_at is not None


def _query(config: PoolConfig) -> AgentBoxQuery:
    return AgentBoxQuery(repo_url=config.repo_url, branch=config.base_branch)
