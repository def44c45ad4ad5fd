"""TaskExecutor: the per-fire protocol shared by every instance.

Each local trigger fire runs:

1. collect expired leases, then try to acquire the task's lease;
2. re-fetch the *current* policy and check that now is a valid fire moment
   for it (this instance's trigger may have been compiled from an older
   policy edited through another instance);
3. run the action;
4. record the run in the execution log, best-effort;
5. release the lease.

The lease is released in a ``finally`` block, and is kept alive by periodic
renewal while the action runs.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from expiry_reminder.config import settings
from expiry_reminder.scheduler.models import ActionResult, ExecutionOutcome
from expiry_reminder.scheduler.triggers import should_fire_now

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import timedelta

    from expiry_reminder.leases.manager import LeaseManager
    from expiry_reminder.scheduler.engine import SchedulerEngine
    from expiry_reminder.scheduler.interfaces import ActionInvoker, ExecutionLog, PolicyProvider

logger = logging.getLogger(__name__)

MANUAL_SUFFIX = "_manual"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TaskExecutor:
    """Runs task fires under a lease and re-validates them against the live policy.

    Args:
        leases: LeaseManager for this instance.
        policies: PolicyProvider consulted on every fire.
        action: ActionInvoker performing the side effect.
        execution_log: Audit sink for completed runs.
        task_type: Type label written to execution records.
        timezone: Canonical timezone for fire-time checks (default from settings).
        lease_ttl: Lease TTL for scheduled fires (default from settings).
        manual_lease_ttl: Lease TTL for :meth:`run_now` (default from settings).
        tolerance: Allowed distance between now and a valid fire time.
        renew_interval: Seconds between lease renewals during the action;
            None derives it from the TTL.
        clock: Returns the current aware datetime (injectable for tests).
    """

    def __init__(
        self,
        leases: LeaseManager,
        policies: PolicyProvider,
        action: ActionInvoker,
        execution_log: ExecutionLog,
        *,
        task_type: str | None = None,
        timezone: str | None = None,
        lease_ttl: timedelta | None = None,
        manual_lease_ttl: timedelta | None = None,
        tolerance: timedelta | None = None,
        renew_interval: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._leases = leases
        self._policies = policies
        self._action = action
        self._execution_log = execution_log
        self._task_type = task_type or settings.reminder_task_type
        self._timezone = timezone or settings.scheduler_timezone
        self._lease_ttl = lease_ttl or settings.lease_ttl
        self._manual_lease_ttl = manual_lease_ttl or settings.manual_lease_ttl
        self._tolerance = tolerance if tolerance is not None else settings.fire_tolerance
        self._renew_interval = renew_interval
        self._clock = clock
        self._scheduler: SchedulerEngine | None = None
        self._running: set[str] = set()

    def bind(self, scheduler: SchedulerEngine) -> None:
        """Attach the scheduler that stale triggers are restarted on."""
        self._scheduler = scheduler

    def is_running(self, task_name: str) -> bool:
        return task_name in self._running

    # -- Entry points ----------------------------------------------------------

    async def execute(self, task_name: str) -> ExecutionOutcome:
        """Handle one local trigger fire for *task_name*. Never raises."""
        if task_name in self._running:
            logger.warning("Previous run of %s still in flight, skipping fire", task_name)
            return ExecutionOutcome.ALREADY_RUNNING
        self._running.add(task_name)
        try:
            return await self._execute_fire(task_name)
        finally:
            self._running.discard(task_name)

    async def run_now(self, task_name: str) -> ExecutionOutcome:
        """Run the action immediately, outside the schedule.

        Uses the same lease name as scheduled fires (so a manual run and a
        scheduled fire never overlap) with the shorter manual TTL, skips the
        fire-time check, and records under ``<task_name>_manual``.
        """
        if task_name in self._running:
            logger.warning("Run of %s already in flight, refusing manual run", task_name)
            return ExecutionOutcome.ALREADY_RUNNING
        self._running.add(task_name)
        try:
            await self._leases.collect_expired()
            if not await self._leases.acquire(task_name, self._manual_lease_ttl):
                logger.info("Manual run of %s skipped: lease held elsewhere", task_name)
                return ExecutionOutcome.LEASE_UNAVAILABLE
            try:
                logger.info("Manual run of %s", task_name)
                return await self._run_action(
                    task_name, task_name + MANUAL_SUFFIX, self._manual_lease_ttl
                )
            finally:
                await self._leases.release(task_name)
        finally:
            self._running.discard(task_name)

    # -- Protocol --------------------------------------------------------------

    async def _execute_fire(self, task_name: str) -> ExecutionOutcome:
        await self._leases.collect_expired()
        if not await self._leases.acquire(task_name, self._lease_ttl):
            logger.info("Skipping fire of %s: lease held by another instance", task_name)
            return ExecutionOutcome.LEASE_UNAVAILABLE

        try:
            try:
                policy = await self._policies.get(task_name)
            except Exception:
                logger.exception("Could not load current policy for %s, skipping fire", task_name)
                return ExecutionOutcome.POLICY_UNAVAILABLE

            now = self._clock()
            if should_fire_now(policy, now, self._tolerance, self._timezone):
                return await self._run_action(task_name, task_name, self._lease_ttl)
        finally:
            await self._leases.release(task_name)

        logger.info(
            "Fire of %s at %s does not match the current policy %s, rebuilding trigger",
            task_name,
            now.isoformat(),
            policy,
        )
        await self._restart(task_name)
        return ExecutionOutcome.STALE_POLICY

    async def _run_action(self, task_name: str, record_name: str, ttl: timedelta) -> ExecutionOutcome:
        """Run the action with lease keep-alive, then record it."""
        keeper = asyncio.create_task(self._keep_alive(task_name, ttl))
        try:
            result = await self._action.run(task_name)
            if not isinstance(result, ActionResult):
                result = ActionResult(success=bool(result))
        except Exception as exc:
            logger.exception("Action failed for %s", task_name)
            result = ActionResult(success=False, detail=f"{type(exc).__name__}: {exc}")
        finally:
            keeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await keeper

        if result.success:
            logger.info("Action for %s succeeded: %s", task_name, result.detail or "ok")
        else:
            logger.error("Action for %s reported failure: %s", task_name, result.detail)

        status = "success" if result.success else "failed"
        await self._record(record_name, status, result.detail)
        return ExecutionOutcome.SUCCEEDED if result.success else ExecutionOutcome.FAILED

    async def _keep_alive(self, task_name: str, ttl: timedelta) -> None:
        interval = self._renew_interval or settings.get_renew_interval(ttl)
        while True:
            await asyncio.sleep(interval)
            if not await self._leases.renew(task_name, ttl):
                logger.warning("Lost lease for %s while its action was running", task_name)
                return

    async def _record(self, task_name: str, status: str, detail: str) -> None:
        try:
            await self._execution_log.record(
                task_name, self._task_type, self._clock(), status, detail
            )
        except Exception:
            logger.warning("Could not write execution record for %s", task_name, exc_info=True)

    async def _restart(self, task_name: str) -> None:
        if self._scheduler is None:
            logger.warning("No scheduler bound, cannot rebuild stale trigger for %s", task_name)
            return
        try:
            await self._scheduler.restart(task_name)
        except Exception:
            logger.exception("Rebuilding trigger for %s failed", task_name)
