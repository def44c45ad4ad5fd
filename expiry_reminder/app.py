"""Service wiring: builds the lease manager, scheduler and API for one instance."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from dataclasses import dataclass
from typing import TYPE_CHECKING

from expiry_reminder.config import settings
from expiry_reminder.leases import HolderId, LeaseManager, LeaseStore
from expiry_reminder.scheduler import (
    ExecutionLogStore,
    InvalidPolicy,
    PolicyStore,
    SchedulerEngine,
    TaskExecutor,
    WebhookAction,
)

if TYPE_CHECKING:
    from pathlib import Path

    from expiry_reminder.scheduler.interfaces import ActionInvoker

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything one service instance runs, wired together."""

    leases: LeaseManager
    policies: PolicyStore
    execution_log: ExecutionLogStore
    executor: TaskExecutor
    engine: SchedulerEngine


def build_runtime(
    action: ActionInvoker | None = None,
    db_path: Path | None = None,
    holder_id: HolderId | None = None,
) -> Runtime:
    """Construct the components for this instance without starting anything."""
    if holder_id is None:
        holder_id = HolderId(settings.instance_id) if settings.instance_id else HolderId.generate()
    leases = LeaseManager(LeaseStore(db_path=db_path), holder_id)
    policies = PolicyStore(db_path=db_path)
    execution_log = ExecutionLogStore(db_path=db_path)
    executor = TaskExecutor(
        leases=leases,
        policies=policies,
        action=action or WebhookAction(),
        execution_log=execution_log,
    )
    engine = SchedulerEngine(executor=executor, leases=leases)
    logger.info("Instance id: %s", holder_id)
    return Runtime(
        leases=leases,
        policies=policies,
        execution_log=execution_log,
        executor=executor,
        engine=engine,
    )


async def start_runtime(runtime: Runtime, task_name: str | None = None) -> None:
    """Start the scheduler and register the reminder task.

    A missing or incomplete policy is not fatal: the task stays stopped until a
    policy is saved through the API.
    """
    task_name = task_name or settings.reminder_task_name
    await runtime.engine.startup()
    result = await runtime.engine.start(task_name, runtime.policies)
    if isinstance(result, InvalidPolicy):
        logger.warning("Reminder task %s is not scheduled yet: %s", task_name, result.reason)


async def serve(runtime: Runtime | None = None) -> None:
    """Run the service until SIGINT/SIGTERM."""
    from expiry_reminder.api.server import ApiServer

    runtime = runtime or build_runtime()
    api = ApiServer(runtime)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    await start_runtime(runtime)
    await api.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down")
        await api.stop()
        await runtime.engine.shutdown()
