"""Collaborator protocols the scheduler core calls through."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime

    from expiry_reminder.scheduler.models import ActionResult, ReminderPolicy


@runtime_checkable
class PolicyProvider(Protocol):
    """Source of the current reminder policy for a task."""

    async def get(self, task_name: str) -> ReminderPolicy | None:
        """Return the current policy, or None when none is configured."""
        ...


@runtime_checkable
class ActionInvoker(Protocol):
    """The side effect a task performs (e.g. compose and send a reminder)."""

    async def run(self, task_name: str) -> ActionResult:
        """Perform the action once. May raise; the executor records that as a failure."""
        ...


@runtime_checkable
class ExecutionLog(Protocol):
    """Append-only audit sink for task runs."""

    async def record(
        self,
        task_name: str,
        task_type: str,
        when: datetime,
        status: str,
        detail: str = "",
    ) -> None:
        """Record one run. Failures are logged by the caller and otherwise ignored."""
        ...
