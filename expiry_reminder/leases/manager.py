"""LeaseManager: cross-instance mutual exclusion for recurring tasks.

Every instance runs its own local trigger for the same task; the lease decides
which one actually performs the side effect.  Ownership is a row in
``task_leases`` keyed by task name.  Acquisition is a single conditional
upsert ("insert if absent, take over only if expired, otherwise leave alone")
followed by a read of the winner.  Write-then-verify is only safe because the
database serializes writers on the same key: of N concurrent upserts against an
expired or missing row, exactly one changes it and the rest observe the
winner's unexpired row and become no-ops.

Store errors never escape this class.  Anything that prevents the manager from
proving ownership is reported as "not acquired", so a flaky store can cause a
missed run but never a duplicate one.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from expiry_reminder.leases.models import HolderId, Lease, LeaseStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from expiry_reminder.leases.store import LeaseStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class LeaseManager:
    """Acquire, renew, release and inspect named leases for one instance.

    Args:
        store: LeaseStore backing the leases.
        holder_id: This process's identity.
        clock: Returns the current aware datetime (injectable for tests).
    """

    def __init__(
        self,
        store: LeaseStore,
        holder_id: HolderId,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._holder_id = holder_id
        self._clock = clock

    @property
    def holder_id(self) -> HolderId:
        return self._holder_id

    async def acquire(self, task_name: str, ttl: timedelta) -> bool:
        """Try to own *task_name* for *ttl* from now. Returns True on success."""
        now = self._clock()
        holder = self._holder_id.value
        try:
            await self._store.upsert_if_expired(
                task_name, holder, acquired_at=now, expires_at=now + ttl, now=now
            )
            lease = await self._store.get(task_name)
        except Exception:
            logger.exception("Lease acquire failed, treating as not acquired: %s", task_name)
            return False

        if lease is not None and lease.holder_id == holder and not lease.is_expired(now):
            logger.info(
                "Acquired lease: %s (holder=%s, expires=%s)",
                task_name,
                holder,
                lease.expires_at.isoformat(),
            )
            return True

        logger.debug(
            "Lease unavailable: %s (held by %s)",
            task_name,
            lease.holder_id if lease else "nobody",
        )
        return False

    async def release(self, task_name: str) -> bool:
        """Delete the lease if this instance holds it. Returns True if deleted."""
        try:
            released = await self._store.delete_if_holder(task_name, self._holder_id.value)
        except Exception:
            logger.exception("Lease release failed: %s", task_name)
            return False

        if released:
            logger.info("Released lease: %s", task_name)
        else:
            logger.info("Lease not held by this instance, nothing to release: %s", task_name)
        return released

    async def renew(self, task_name: str, ttl: timedelta) -> bool:
        """Extend an unexpired lease held by this instance to now + *ttl*."""
        now = self._clock()
        try:
            renewed = await self._store.extend_if_held(
                task_name, self._holder_id.value, expires_at=now + ttl, now=now
            )
        except Exception:
            logger.exception("Lease renew failed: %s", task_name)
            return False

        if renewed:
            logger.debug("Renewed lease: %s (ttl=%s)", task_name, ttl)
        else:
            logger.warning("Lease renew refused, not held or already expired: %s", task_name)
        return renewed

    async def status(self, task_name: str) -> LeaseStatus:
        """Describe the current holder of *task_name*. Never mutates."""
        now = self._clock()
        try:
            lease = await self._store.get(task_name)
        except Exception as exc:
            logger.exception("Lease status lookup failed: %s", task_name)
            return LeaseStatus(task_name=task_name, held=False, error=str(exc))

        if lease is None or lease.is_expired(now):
            return LeaseStatus(task_name=task_name, held=False)
        return self._describe(lease)

    async def list_held(self) -> list[LeaseStatus] | None:
        """Describe every unexpired lease, or None if the store is unreachable."""
        now = self._clock()
        try:
            leases = await self._store.list_all()
        except Exception:
            logger.exception("Lease listing failed")
            return None
        return [self._describe(lease) for lease in leases if not lease.is_expired(now)]

    def _describe(self, lease: Lease) -> LeaseStatus:
        return LeaseStatus(
            task_name=lease.task_name,
            held=True,
            holder_id=lease.holder_id,
            acquired_at=lease.acquired_at,
            expires_at=lease.expires_at,
            is_mine=lease.holder_id == self._holder_id.value,
        )

    async def collect_expired(self) -> int:
        """Delete every expired lease regardless of holder. Returns the count."""
        try:
            count = await self._store.delete_expired(self._clock())
        except Exception:
            logger.exception("Expired lease cleanup failed")
            return 0
        if count:
            logger.info("Cleaned up %d expired lease(s)", count)
        return count
