"""Persistent AgentBox records with repo/status indexes and leases.

Layout in the key-value service:
- ``{prefix}:box:{id}``                primary record (JSON)
- ``{prefix}:repo:{hash}:{branch}``    sorted set of box ids per repo+branch
- ``{prefix}:status:{status}``         sorted set of box ids per status

Index scores are the box's last activity in epoch milliseconds. Scans read
the ``scan_limit`` most recently used boxes, newest first. Boxes in ``error``
are dropped from the repo index and only remain in their status index.
"""

import asyncio
import hashlib
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Protocol

from code_agent_controller.config import settings
from code_agent_controller.models import AgentBox, AgentBoxStatus, utcnow
from code_agent_controller.store.key_value import KeyValueService

logger = logging.getLogger(__name__)

LEASABLE_STATUSES = (AgentBoxStatus.READY, AgentBoxStatus.BUSY)


@dataclass(frozen=True)
class AgentBoxQuery:
    """Selects the boxes serving one repo+branch."""

    repo_url: str
    branch: str


class AgentBoxStore(Protocol):
    """Storage contract for AgentBox records."""

    async def get_by_id(self, box_id: str) -> Optional[AgentBox]: ...

    async def find_available(self, query: AgentBoxQuery) -> Optional[AgentBox]: ...

    async def list_by_repo(self, query: AgentBoxQuery) -> list[AgentBox]: ...

    async def save(self, box: AgentBox) -> None: ...

    async def update_status(self, box_id: str, status: AgentBoxStatus) -> None: ...

    async def lease(self, box_id: str, assigned_to: str, ttl_seconds: int) -> bool: ...

    async def release(self, box_id: str) -> None: ...

    async def transition(
        self,
        box_id: str,
        status: AgentBoxStatus,
        expected: Iterable[AgentBoxStatus],
        release: bool = False,
        unleased_only: bool = False,
    ) -> bool: ...


class KeyValueAgentBoxStore:
    """AgentBox store over a KeyValueService.

    Mutations of a single box are serialized through a per-id asyncio lock,
    which makes ``lease`` a compare-and-set within this process.
    """

    def __init__(
        self,
        kv: KeyValueService,
        key_prefix: Optional[str] = None,
        scan_limit: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.kv = kv
        self.key_prefix = key_prefix or settings.key_prefix
        self.scan_limit = scan_limit or settings.scan_limit
        self.clock = clock
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ==========================================================================
    # Reads
    # ==========================================================================

    async def get_by_id(self, box_id: str) -> Optional[AgentBox]:
        data = await self.kv.get(self._box_key(box_id))
        return AgentBox.model_validate(data) if data else None

    async def find_available(self, query: AgentBoxQuery) -> Optional[AgentBox]:
        """Return a ready, unleased box for the query, reclaiming an expired lease if needed.

        Ready boxes win over expired busy ones; among each kind the most
        recently used box is chosen.
        """
        now = self.clock()
        expired_busy: Optional[AgentBox] = None
        for box in await self._scan(query):
            if box.lease_valid(now):
                continue
            if box.status == AgentBoxStatus.READY:
                return box
            if box.status == AgentBoxStatus.BUSY and expired_busy is None:
                expired_busy = box

        if expired_busy is not None:
            return await self._reclaim_expired_lease(expired_busy.id)
        return None

    async def list_by_repo(self, query: AgentBoxQuery) -> list[AgentBox]:
        return await self._scan(query)

    # ==========================================================================
    # Writes
    # ==========================================================================

    async def save(self, box: AgentBox) -> None:
        """Upsert the record and move it to its current repo and status indexes."""
        previous = await self.get_by_id(box.id)
        if previous is not None:
            if previous.status != box.status:
                await self.kv.zrem(self._status_key(previous.status), box.id)
            old_repo_key = self._repo_key_for(previous)
            if old_repo_key != self._repo_key_for(box):
                await self.kv.zrem(old_repo_key, box.id)

        score = box.meta.last_activity.timestamp() * 1000
        await self.kv.set(self._box_key(box.id), box.model_dump(mode="json"))
        if box.status == AgentBoxStatus.ERROR:
            await self.kv.zrem(self._repo_key_for(box), box.id)
        else:
            await self.kv.zadd(self._repo_key_for(box), score, box.id)
        await self.kv.zadd(self._status_key(box.status), score, box.id)

    async def update_status(self, box_id: str, status: AgentBoxStatus) -> None:
        async with self._locks[box_id]:
            await self._update_status_locked(box_id, status)

    async def lease(self, box_id: str, assigned_to: str, ttl_seconds: int) -> bool:
        """Claim a box for ``ttl_seconds``.

        Returns:
            False when the box is missing, already holds a valid lease, or is
            not ready/busy; True once the lease is written.
        """
        async with self._locks[box_id]:
            box = await self.get_by_id(box_id)
            if box is None:
                return False
            now = self.clock()
            if box.lease_valid(now):
                return False
            if box.status not in LEASABLE_STATUSES:
                return False

            box.assigned_to = assigned_to
            box.lease_expires_at = now + timedelta(seconds=ttl_seconds)
            box.status = AgentBoxStatus.BUSY
            box.meta.last_used = now
            await self.save(box)
            logger.info(f"Leased box {box_id} to {assigned_to} for {ttl_seconds}s")
            return True

    async def release(self, box_id: str) -> None:
        async with self._locks[box_id]:
            await self._release_locked(box_id)

    async def transition(
        self,
        box_id: str,
        status: AgentBoxStatus,
        expected: Iterable[AgentBoxStatus],
        release: bool = False,
        unleased_only: bool = False,
    ) -> bool:
        """Move a box to ``status`` only if it is currently in one of ``expected``.

        Args:
            box_id: Box to update.
            status: Target status.
            expected: Statuses the box must be in for the change to apply.
            release: Also clear the assignee and lease and bump ``last_used``.
            unleased_only: Refuse boxes that hold a valid lease.

        Returns:
            True when the change was written.
        """
        async with self._locks[box_id]:
            box = await self.get_by_id(box_id)
            if box is None or box.status not in tuple(expected):
                return False
            now = self.clock()
            if unleased_only and box.lease_valid(now):
                return False

            if release:
                box.assigned_to = None
                box.lease_expires_at = None
                box.meta.last_used = now
            box.status = status
            await self.save(box)
            return True

    # ==========================================================================
    # Internals
    # ==========================================================================

    async def _update_status_locked(self, box_id: str, status: AgentBoxStatus) -> None:
        box = await self.get_by_id(box_id)
        if box is None:
            return
        if box.status != status:
            await self.kv.zrem(self._status_key(box.status), box_id)
        box.status = status
        await self.save(box)

    async def _release_locked(self, box_id: str) -> None:
        box = await self.get_by_id(box_id)
        if box is None:
            return
        box.assigned_to = None
        box.lease_expires_at = None
        box.status = AgentBoxStatus.READY
        box.meta.last_used = self.clock()
        await self.save(box)

    async def _reclaim_expired_lease(self, box_id: str) -> Optional[AgentBox]:
        async with self._locks[box_id]:
            # Another caller may have reclaimed or re-leased it since the scan.
            refreshed = await self.get_by_id(box_id)
            if refreshed is None or refreshed.lease_valid(self.clock()):
                return None
            if refreshed.status not in LEASABLE_STATUSES:
                return None
            logger.info(f"Reclaiming expired lease on box {box_id} from {refreshed.assigned_to}")
            await self._release_locked(box_id)
            return await self.get_by_id(box_id)

    async def _scan(self, query: AgentBoxQuery) -> list[AgentBox]:
        ids = await self.kv.zrange(self._repo_key(query), -self.scan_limit, -1)
        if not ids:
            return []
        ids.reverse()
        records = await self.kv.mget([self._box_key(box_id) for box_id in ids])
        return [AgentBox.model_validate(data) for data in records if data]

    def _box_key(self, box_id: str) -> str:
        return f"{self.key_prefix}:box:{box_id}"

    def _repo_key(self, query: AgentBoxQuery) -> str:
        repo_hash = hashlib.sha256(query.repo_url.encode()).hexdigest()[:16]
        return f"{self.key_prefix}:repo:{repo_hash}:{query.branch}"

    def _repo_key_for(self, box: AgentBox) -> str:
        return self._repo_key(AgentBoxQuery(box.repo_context.url, box.repo_context.branch))

    def _status_key(self, status: AgentBoxStatus) -> str:
        return f"{self.key_prefix}:status:{status.value}"
