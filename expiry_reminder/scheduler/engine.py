"""SchedulerEngine: APScheduler lifecycle and the per-task trigger registry."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from expiry_reminder.config import settings
from expiry_reminder.scheduler.models import CompiledTrigger, InvalidPolicy
from expiry_reminder.scheduler.triggers import build_cron_trigger, compile_policy, next_fire_time

if TYPE_CHECKING:
    from expiry_reminder.leases.manager import LeaseManager
    from expiry_reminder.scheduler.executor import TaskExecutor
    from expiry_reminder.scheduler.interfaces import PolicyProvider

logger = logging.getLogger(__name__)

_LEASE_GC_JOB_ID = "__lease_gc__"


class SchedulerEngine:
    """Owns one recurring trigger per task name on this instance.

    A task is either Stopped (absent from the registry) or Scheduled (a live
    APScheduler job built from a :class:`CompiledTrigger`).  ``start``,
    ``stop`` and ``restart`` are the only mutators.  Policy edits made through
    another instance are not pushed here; the executor notices them on the
    next fire and calls :meth:`restart`.

    Args:
        executor: TaskExecutor invoked on every fire.
        timezone: IANA timezone string (default from settings).
        leases: Optional LeaseManager for the periodic expired-lease cleanup job.
        lease_gc_interval_minutes: Cleanup period; 0 disables it.
    """

    def __init__(
        self,
        executor: TaskExecutor,
        timezone: str | None = None,
        leases: LeaseManager | None = None,
        lease_gc_interval_minutes: int | None = None,
    ) -> None:
        self._executor = executor
        self._timezone = timezone or settings.scheduler_timezone
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._leases = leases
        self._gc_interval = (
            settings.lease_gc_interval_minutes
            if lease_gc_interval_minutes is None
            else lease_gc_interval_minutes
        )
        self._triggers: dict[str, CompiledTrigger] = {}
        self._providers: dict[str, PolicyProvider] = {}
        self._running = False
        executor.bind(self)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def timezone(self) -> str:
        return self._timezone

    # -- Lifecycle -------------------------------------------------------------

    async def startup(self) -> None:
        """Start the underlying scheduler and the lease cleanup job."""
        if self._running:
            return
        if self._leases is not None and self._gc_interval > 0:
            self._scheduler.add_job(
                self._leases.collect_expired,
                trigger=IntervalTrigger(minutes=self._gc_interval, timezone=self._timezone),
                id=_LEASE_GC_JOB_ID,
                name="lease cleanup",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self._scheduler.start()
        self._running = True
        logger.info("Scheduler started (tz=%s)", self._timezone)

    async def shutdown(self) -> None:
        """Stop every task trigger and shut the scheduler down."""
        for task_name in list(self._triggers):
            await self.stop(task_name)
        if self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler stopped")

    # -- Task management -------------------------------------------------------

    async def start(
        self, task_name: str, policy_provider: PolicyProvider | None = None
    ) -> CompiledTrigger | InvalidPolicy:
        """Load the task's policy and schedule it.

        An :class:`InvalidPolicy` (missing or malformed policy, unreachable
        policy store) leaves the task Stopped and is returned, not raised.
        """
        provider = policy_provider or self._providers.get(task_name)
        if provider is None:
            msg = f"No policy provider registered for task {task_name!r}"
            raise ValueError(msg)
        self._providers[task_name] = provider

        try:
            policy = await provider.get(task_name)
        except Exception as exc:
            logger.exception("Could not load policy for %s, leaving it stopped", task_name)
            return InvalidPolicy(f"policy lookup failed: {exc}")

        compiled = compile_policy(task_name, policy)
        if isinstance(compiled, InvalidPolicy):
            logger.warning("Task %s not scheduled: %s", task_name, compiled.reason)
            return compiled

        self._add_job(compiled)
        self._triggers[task_name] = compiled
        logger.info(
            "Scheduled task %s: %s (cron '%s', tz=%s)",
            task_name,
            compiled.describe(),
            compiled.crontab,
            self._timezone,
        )
        return compiled

    async def stop(self, task_name: str) -> bool:
        """Cancel the task's trigger. Returns True if one was registered."""
        compiled = self._triggers.pop(task_name, None)
        try:
            self._scheduler.remove_job(task_name)
        except JobLookupError:
            logger.debug("Job %s not found in scheduler (may already be removed)", task_name)
        if compiled is not None:
            logger.info("Stopped task: %s", task_name)
        return compiled is not None

    async def restart(
        self, task_name: str, policy_provider: PolicyProvider | None = None
    ) -> CompiledTrigger | InvalidPolicy:
        """Rebuild the task's trigger from its current policy."""
        await self.stop(task_name)
        return await self.start(task_name, policy_provider)

    # -- Introspection ---------------------------------------------------------

    def get_trigger(self, task_name: str) -> CompiledTrigger | None:
        return self._triggers.get(task_name)

    def list_tasks(self) -> list[str]:
        return sorted(self._triggers)

    def status(self, task_name: str) -> dict[str, Any]:
        """Describe the local trigger for *task_name*."""
        compiled = self._triggers.get(task_name)
        if compiled is None:
            return {"task_name": task_name, "scheduled": False}
        job = self._scheduler.get_job(task_name)
        next_run = getattr(job, "next_run_time", None) if job else None
        if next_run is None:
            # Jobs added before the scheduler starts have no next_run_time yet
            next_run = next_fire_time(compiled, datetime.now(UTC), self._timezone)
        return {
            "task_name": task_name,
            "scheduled": True,
            "schedule": compiled.describe(),
            "crontab": compiled.crontab,
            "timezone": self._timezone,
            "next_fire_time": next_run.isoformat() if next_run else None,
            "policy": compiled.policy.to_dict() if compiled.policy else None,
            "running": self._executor.is_running(task_name),
        }

    # -- Internal --------------------------------------------------------------

    def _add_job(self, compiled: CompiledTrigger):
        """Create the APScheduler job for a compiled trigger. Returns the Job."""
        return self._scheduler.add_job(
            self._run_task,
            trigger=build_cron_trigger(compiled, self._timezone),
            id=compiled.task_name,
            name=compiled.task_name,
            args=[compiled.task_name],
            # Never overlap one task with itself; merge fires missed while busy.
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            replace_existing=True,
        )

    async def _run_task(self, task_name: str) -> None:
        """Callback invoked by APScheduler. Delegates to the executor."""
        logger.debug("Trigger fired for %s at %s", task_name, datetime.now(UTC).isoformat())
        outcome = await self._executor.execute(task_name)
        logger.info("Fire of %s finished: %s", task_name, outcome)
