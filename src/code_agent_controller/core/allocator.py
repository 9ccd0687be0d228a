"""Allocator Service.

Hands out agent boxes for a repo+branch:
1. Lease a warm box from the store when one is available
2. Otherwise create a new VM and persist it as ``creating``
3. Provision it (repo, dependencies, devcontainer, env) either before
   returning or as a detached background task
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from code_agent_controller.config import settings
from code_agent_controller.core.provisioner import Provisioner
from code_agent_controller.core.vm_manager import VmManager
from code_agent_controller.errors import LeaseUnavailableError, ProvisioningError
from code_agent_controller.models import (
    AgentBox,
    AgentBoxMeta,
    AgentBoxRepoContext,
    AgentBoxStatus,
    AllocatorRequest,
    AllocatorResponse,
    EnvInjectionContext,
    RepoProvisioningContext,
    VmCreateRequest,
    utcnow,
)
from code_agent_controller.store.agent_box_store import AgentBoxQuery, AgentBoxStore

logger = logging.getLogger(__name__)

PROVISIONING_MESSAGE = "Provisioning in progress"


class AllocatorService:
    """Allocates boxes from the warm pool or by cold provisioning."""

    def __init__(
        self,
        store: AgentBoxStore,
        vm_manager: VmManager,
        provisioner: Provisioner,
        default_lease_ttl_seconds: Optional[int] = None,
        async_provisioning: Optional[bool] = None,
    ):
        self.store = store
        self.vm_manager = vm_manager
        self.provisioner = provisioner
        self.default_lease_ttl_seconds = (
            default_lease_ttl_seconds or settings.default_lease_ttl_seconds
        )
        self.async_provisioning = (
            settings.async_provisioning if async_provisioning is None else async_provisioning
        )

        # Detached provisioning tasks, kept referenced until they finish
        self._background: set[asyncio.Task] = set()

    async def request_box(self, request: AllocatorRequest) -> AllocatorResponse:
        """Allocate a box for ``request.repo_url``/``request.branch``.

        A warm box is tried once; losing the lease race falls through to cold
        creation instead of searching again, which bounds allocation latency.

        Returns:
            ``busy`` for a warm hit, ``creating`` when provisioning was
            detached, ``ready`` after synchronous provisioning.

        Raises:
            VmManagerError: VM creation failed.
            ProvisioningError: synchronous provisioning failed (the VM has
                already been deleted).
        """
        lease_ttl = request.lease_ttl_seconds or self.default_lease_ttl_seconds

        if request.prefer_warm:
            try:
                return await self.lease_warm_box(request)
            except LeaseUnavailableError as e:
                logger.info(f"{e.message}, provisioning cold")

        box = await self._create_box(request, is_pool_instance=False, lease_ttl_seconds=lease_ttl)

        if self.async_provisioning:
            self._spawn_provisioning(box, request)
            return AllocatorResponse(
                box_id=box.id,
                status=box.status,
                network=box.network,
                message=PROVISIONING_MESSAGE,
            )

        status = await self._provision_box(box, request)
        return AllocatorResponse(box_id=box.id, status=status, network=box.network)

    async def lease_warm_box(self, request: AllocatorRequest) -> AllocatorResponse:
        """Lease a warm box for the request without ever creating one.

        Raises:
            LeaseUnavailableError: no warm box exists, or the one found was
                leased by someone else first.
        """
        lease_ttl = request.lease_ttl_seconds or self.default_lease_ttl_seconds
        warm = await self.store.find_available(
            AgentBoxQuery(repo_url=request.repo_url, branch=request.branch)
        )
        if warm is None:
            raise LeaseUnavailableError(
                f"No warm box for {request.repo_url}@{request.branch}"
            )
        if not await self.store.lease(warm.id, request.requested_by, lease_ttl):
            raise LeaseUnavailableError(f"Lost lease race for warm box {warm.id}")

        logger.info(f"Warm box {warm.id} leased to {request.requested_by}")
        return AllocatorResponse(
            box_id=warm.id,
            status=AgentBoxStatus.BUSY,
            network=warm.network,
        )

    async def create_pool_box(self, request: AllocatorRequest) -> AgentBox:
        """Create a standby box with no requester and provision it.

        Provisioning follows the allocator mode: detached in async mode,
        awaited (and raising on failure) otherwise. A successfully provisioned
        pool box is released so ``find_available`` can hand it out.
        """
        box = await self._create_box(request, is_pool_instance=True)
        if self.async_provisioning:
            self._spawn_provisioning(box, request)
        else:
            await self._provision_box(box, request)
        return box

    async def wait_for_background(self) -> None:
        """Wait until every detached provisioning task has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel detached provisioning tasks."""
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _create_box(
        self,
        request: AllocatorRequest,
        is_pool_instance: bool,
        lease_ttl_seconds: Optional[int] = None,
    ) -> AgentBox:
        now = utcnow()
        instance = await self.vm_manager.create(
            VmCreateRequest(
                repo_url=request.repo_url,
                branch=request.branch,
                tags={
                    "repo": request.repo_url,
                    "branch": request.branch,
                    "pool_instance": str(is_pool_instance).lower(),
                    "status": AgentBoxStatus.CREATING.value,
                    "last_used": now.isoformat(),
                },
            )
        )

        lease_expires_at = None
        if not is_pool_instance and lease_ttl_seconds:
            lease_expires_at = now + timedelta(seconds=lease_ttl_seconds)

        box = AgentBox(
            id=instance.id,
            status=AgentBoxStatus.CREATING,
            assigned_to=None if is_pool_instance else request.requested_by,
            lease_expires_at=lease_expires_at,
            repo_context=AgentBoxRepoContext(url=request.repo_url, branch=request.branch),
            network=instance.network,
            meta=AgentBoxMeta(
                created_at=now,
                last_heartbeat=now,
                last_used=now,
                is_pool_instance=is_pool_instance,
            ),
        )
        await self.store.save(box)
        logger.info(
            f"Created {'pool' if is_pool_instance else 'dedicated'} box {box.id} "
            f"for {request.repo_url}@{request.branch}"
        )
        return box

    def _spawn_provisioning(self, box: AgentBox, request: AllocatorRequest) -> None:
        task = asyncio.create_task(
            self._provision_box(box, request), name=f"provision-{box.id}"
        )
        self._background.add(task)
        task.add_done_callback(self._on_provisioning_done)

    def _on_provisioning_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.warning(f"Provisioning task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Provisioning task {task.get_name()} failed: {error}")

    async def _provision_box(self, box: AgentBox, request: AllocatorRequest) -> AgentBoxStatus:
        """Run the provisioning steps in order; the first failed step aborts.

        A provisioned dedicated box stays ``busy`` under its requester's
        lease; a pool box becomes ``ready`` and unassigned. On failure the box
        is marked ``error`` and its VM deleted. The error is raised in
        synchronous mode and only logged in async mode. Every status change
        applies only while the box is still ``creating``, so a box stopped
        meanwhile stays stopped.
        """
        repo_context = RepoProvisioningContext(
            repo_url=request.repo_url,
            branch=request.branch,
            box_id=box.id,
            network=box.network,
        )
        steps = [
            lambda: self.provisioner.prepare_repo(repo_context),
            lambda: self.provisioner.install_dependencies(repo_context),
            lambda: self.provisioner.boot_devcontainer(repo_context),
        ]
        if request.env_payload:
            env_context = EnvInjectionContext(
                env_payload=request.env_payload, box_id=box.id, network=box.network
            )
            steps.append(lambda: self.provisioner.inject_env(env_context))

        try:
            for run_step in steps:
                result = await run_step()
                if not result.ok:
                    raise ProvisioningError(result.error or f"Provisioning step {result.step} failed")

            pool = box.meta.is_pool_instance
            provisioned = await self.store.transition(
                box.id,
                AgentBoxStatus.READY if pool else AgentBoxStatus.BUSY,
                expected=(AgentBoxStatus.CREATING,),
                release=pool,
            )
            if not provisioned:
                return await self._superseded_status(box.id)
            logger.info(f"Box {box.id} provisioned and ready")
            return AgentBoxStatus.READY

        except Exception as e:
            marked = await self.store.transition(
                box.id, AgentBoxStatus.ERROR, expected=(AgentBoxStatus.CREATING,)
            )
            if marked:
                try:
                    await self.vm_manager.delete(box.id)
                except Exception as delete_error:
                    logger.warning(f"Failed to delete VM {box.id} after provisioning failure: {delete_error}")
            else:
                logger.warning(f"Box {box.id} left creating before provisioning failed, keeping its status")
            message = str(e) or "Provisioning failed"
            if self.async_provisioning:
                logger.error(f"Provisioning failed for box {box.id}: {message}")
                return AgentBoxStatus.ERROR
            if isinstance(e, ProvisioningError):
                raise
            raise ProvisioningError(message) from e

    async def _superseded_status(self, box_id: str) -> AgentBoxStatus:
        current = await self.store.get_by_id(box_id)
        status = current.status if current else AgentBoxStatus.ERROR
        logger.warning(f"Box {box_id} became {status.value} during provisioning, leaving it as is")
        return status
