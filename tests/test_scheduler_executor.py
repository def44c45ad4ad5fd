"""Tests for TaskExecutor: the per-fire lease / re-validate / run / record protocol."""

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

from expiry_reminder.leases import HolderId, LeaseManager, LeaseStore
from expiry_reminder.scheduler.executor import TaskExecutor
from expiry_reminder.scheduler.models import ActionResult, ExecutionOutcome, ReminderPolicy

TASK = "email_reminder"
SHANGHAI = ZoneInfo("Asia/Shanghai")
DAILY_0930 = ReminderPolicy("daily", "09:30")


@pytest.fixture
def store(db_path: Path) -> LeaseStore:
    return LeaseStore(db_path=db_path)


@pytest.fixture
def clock(clock):
    clock.now = datetime(2025, 6, 2, 9, 30, tzinfo=SHANGHAI)
    return clock


@pytest.fixture
def leases(store: LeaseStore, clock) -> LeaseManager:
    return LeaseManager(store, HolderId("instance-a"), clock=clock)


@pytest.fixture
def policies() -> AsyncMock:
    provider = AsyncMock()
    provider.get = AsyncMock(return_value=DAILY_0930)
    return provider


@pytest.fixture
def action() -> AsyncMock:
    invoker = AsyncMock()
    invoker.run = AsyncMock(return_value=ActionResult(success=True, detail="sent 3 items"))
    return invoker


@pytest.fixture
def execution_log() -> AsyncMock:
    log = AsyncMock()
    log.record = AsyncMock()
    return log


@pytest.fixture
def scheduler() -> MagicMock:
    engine = MagicMock()
    engine.restart = AsyncMock()
    return engine


def _make_executor(leases, policies, action, execution_log, clock, **kwargs) -> TaskExecutor:
    defaults = {
        "task_type": "email",
        "timezone": "Asia/Shanghai",
        "lease_ttl": timedelta(minutes=30),
        "manual_lease_ttl": timedelta(minutes=5),
        "tolerance": timedelta(minutes=5),
        "clock": clock,
    }
    defaults.update(kwargs)
    return TaskExecutor(leases, policies, action, execution_log, **defaults)


@pytest.fixture
def executor(leases, policies, action, execution_log, clock, scheduler) -> TaskExecutor:
    ex = _make_executor(leases, policies, action, execution_log, clock)
    ex.bind(scheduler)
    return ex


# -- Happy path ----------------------------------------------------------------


async def test_fire_runs_action_and_records(
    executor: TaskExecutor, action: AsyncMock, execution_log: AsyncMock, leases, clock
) -> None:
    outcome = await executor.execute(TASK)

    assert outcome is ExecutionOutcome.SUCCEEDED
    action.run.assert_awaited_once_with(TASK)
    execution_log.record.assert_awaited_once_with(TASK, "email", clock.now, "success", "sent 3 items")
    assert (await leases.status(TASK)).held is False


async def test_fire_uses_current_policy_not_snapshot(
    executor: TaskExecutor, policies: AsyncMock
) -> None:
    await executor.execute(TASK)
    policies.get.assert_awaited_once_with(TASK)


async def test_action_returning_bool_is_accepted(executor: TaskExecutor, action: AsyncMock) -> None:
    action.run.return_value = True
    assert await executor.execute(TASK) is ExecutionOutcome.SUCCEEDED


# -- Lease unavailable ---------------------------------------------------------


async def test_skips_when_lease_held_elsewhere(
    executor: TaskExecutor, store: LeaseStore, action: AsyncMock, execution_log: AsyncMock, clock
) -> None:
    other = LeaseManager(store, HolderId("instance-b"), clock=clock)
    assert await other.acquire(TASK, timedelta(minutes=30))

    outcome = await executor.execute(TASK)

    assert outcome is ExecutionOutcome.LEASE_UNAVAILABLE
    action.run.assert_not_awaited()
    execution_log.record.assert_not_awaited()
    assert (await other.status(TASK)).is_mine is True


async def test_expired_lease_of_crashed_instance_is_collected(
    executor: TaskExecutor, store: LeaseStore, action: AsyncMock, clock
) -> None:
    crashed = LeaseManager(store, HolderId("crashed"), clock=clock)
    await crashed.acquire(TASK, timedelta(minutes=30))
    clock.advance(days=1)

    assert await executor.execute(TASK) is ExecutionOutcome.SUCCEEDED
    action.run.assert_awaited_once()


async def test_two_instances_fire_together_one_runs(
    store: LeaseStore, policies: AsyncMock, execution_log: AsyncMock, clock
) -> None:
    """Daily 09:30, TTL 30 min, both instances fire at 09:30: exactly one sends."""
    gate = asyncio.Event()

    async def _send(task_name: str) -> ActionResult:
        await gate.wait()
        return ActionResult(success=True)

    action_a = AsyncMock()
    action_a.run = AsyncMock(side_effect=_send)
    action_b = AsyncMock()
    action_b.run = AsyncMock(side_effect=_send)

    exec_a = _make_executor(
        LeaseManager(store, HolderId("instance-a"), clock=clock),
        policies, action_a, execution_log, clock,
    )
    exec_b = _make_executor(
        LeaseManager(store, HolderId("instance-b"), clock=clock),
        policies, action_b, execution_log, clock,
    )

    tasks = {asyncio.create_task(exec_a.execute(TASK)), asyncio.create_task(exec_b.execute(TASK))}
    # The loser returns as soon as its acquire fails; the winner waits on the gate.
    done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    assert [t.result() for t in done] == [ExecutionOutcome.LEASE_UNAVAILABLE]
    gate.set()
    outcomes = await asyncio.gather(*tasks)

    assert sorted(outcomes) == sorted(
        [ExecutionOutcome.SUCCEEDED, ExecutionOutcome.LEASE_UNAVAILABLE]
    )
    assert action_a.run.await_count + action_b.run.await_count == 1
    statuses = [c.args[3] for c in execution_log.record.await_args_list]
    assert statuses == ["success"]


async def test_late_fire_after_release_within_tolerance_runs_again(
    store: LeaseStore, policies: AsyncMock, execution_log: AsyncMock, clock
) -> None:
    # The lease only excludes overlapping runs. A fire that starts after the
    # winner released, still inside the tolerance window, runs the action too.
    action_a = AsyncMock()
    action_a.run = AsyncMock(return_value=ActionResult(success=True))
    action_b = AsyncMock()
    action_b.run = AsyncMock(return_value=ActionResult(success=True))
    exec_a = _make_executor(
        LeaseManager(store, HolderId("instance-a"), clock=clock),
        policies, action_a, execution_log, clock,
    )
    exec_b = _make_executor(
        LeaseManager(store, HolderId("instance-b"), clock=clock),
        policies, action_b, execution_log, clock,
    )

    assert await exec_a.execute(TASK) is ExecutionOutcome.SUCCEEDED
    clock.advance(minutes=3)
    assert await exec_b.execute(TASK) is ExecutionOutcome.SUCCEEDED

    action_a.run.assert_awaited_once_with(TASK)
    action_b.run.assert_awaited_once_with(TASK)


async def test_late_fire_after_release_outside_tolerance_is_stale(
    store: LeaseStore, policies: AsyncMock, execution_log: AsyncMock, scheduler: MagicMock, clock
) -> None:
    action_b = AsyncMock()
    exec_a = _make_executor(
        LeaseManager(store, HolderId("instance-a"), clock=clock),
        policies, AsyncMock(), execution_log, clock,
    )
    exec_b = _make_executor(
        LeaseManager(store, HolderId("instance-b"), clock=clock),
        policies, action_b, execution_log, clock,
    )
    exec_b.bind(scheduler)

    await exec_a.execute(TASK)
    clock.advance(minutes=6)

    assert await exec_b.execute(TASK) is ExecutionOutcome.STALE_POLICY
    action_b.run.assert_not_awaited()
    scheduler.restart.assert_awaited_once_with(TASK)


# -- Stale policy --------------------------------------------------------------


async def test_stale_policy_restarts_instead_of_running(
    executor: TaskExecutor,
    policies: AsyncMock,
    action: AsyncMock,
    execution_log: AsyncMock,
    scheduler: MagicMock,
    leases: LeaseManager,
) -> None:
    # Trigger compiled from 09:30; another instance changed the policy to 14:00.
    policies.get.return_value = ReminderPolicy("daily", "14:00")

    outcome = await executor.execute(TASK)

    assert outcome is ExecutionOutcome.STALE_POLICY
    action.run.assert_not_awaited()
    execution_log.record.assert_not_awaited()
    scheduler.restart.assert_awaited_once_with(TASK)
    assert (await leases.status(TASK)).held is False


async def test_stale_weekly_policy(
    executor: TaskExecutor, policies: AsyncMock, action: AsyncMock, scheduler: MagicMock
) -> None:
    # 2025-06-02 is a Monday; the policy now says Fridays.
    policies.get.return_value = ReminderPolicy("weekly", "09:30", weekday=5)

    assert await executor.execute(TASK) is ExecutionOutcome.STALE_POLICY
    action.run.assert_not_awaited()
    scheduler.restart.assert_awaited_once_with(TASK)


async def test_deleted_policy_is_treated_as_stale(
    executor: TaskExecutor, policies: AsyncMock, action: AsyncMock, scheduler: MagicMock
) -> None:
    policies.get.return_value = None

    assert await executor.execute(TASK) is ExecutionOutcome.STALE_POLICY
    action.run.assert_not_awaited()
    scheduler.restart.assert_awaited_once_with(TASK)


async def test_unparsable_policy_is_treated_as_stale(
    executor: TaskExecutor, policies: AsyncMock, action: AsyncMock, scheduler: MagicMock
) -> None:
    policies.get.return_value = ReminderPolicy("daily", "²:30")

    assert await executor.execute(TASK) is ExecutionOutcome.STALE_POLICY
    action.run.assert_not_awaited()
    scheduler.restart.assert_awaited_once_with(TASK)


async def test_lease_released_before_restart(
    executor: TaskExecutor, policies: AsyncMock, scheduler: MagicMock, leases: LeaseManager
) -> None:
    held_during_restart = []

    async def _restart(task_name: str) -> None:
        held_during_restart.append((await leases.status(task_name)).held)

    scheduler.restart.side_effect = _restart
    policies.get.return_value = ReminderPolicy("daily", "14:00")

    await executor.execute(TASK)
    assert held_during_restart == [False]


async def test_stale_without_bound_scheduler(
    leases, policies, action, execution_log, clock
) -> None:
    ex = _make_executor(leases, policies, action, execution_log, clock)
    policies.get.return_value = ReminderPolicy("daily", "14:00")
    assert await ex.execute(TASK) is ExecutionOutcome.STALE_POLICY


async def test_restart_failure_is_contained(
    executor: TaskExecutor, policies: AsyncMock, scheduler: MagicMock
) -> None:
    scheduler.restart.side_effect = RuntimeError("scheduler gone")
    policies.get.return_value = ReminderPolicy("daily", "14:00")
    assert await executor.execute(TASK) is ExecutionOutcome.STALE_POLICY


async def test_policy_lookup_failure_skips_fire(
    executor: TaskExecutor,
    policies: AsyncMock,
    action: AsyncMock,
    scheduler: MagicMock,
    leases: LeaseManager,
) -> None:
    policies.get.side_effect = ConnectionError("db down")

    assert await executor.execute(TASK) is ExecutionOutcome.POLICY_UNAVAILABLE
    action.run.assert_not_awaited()
    scheduler.restart.assert_not_awaited()
    assert (await leases.status(TASK)).held is False


# -- Action failures -----------------------------------------------------------


async def test_action_exception_recorded_as_failure(
    executor: TaskExecutor, action: AsyncMock, execution_log: AsyncMock, leases: LeaseManager
) -> None:
    action.run.side_effect = RuntimeError("SMTP unreachable")

    outcome = await executor.execute(TASK)

    assert outcome is ExecutionOutcome.FAILED
    args = execution_log.record.await_args.args
    assert args[3] == "failed"
    assert "SMTP unreachable" in args[4]
    assert (await leases.status(TASK)).held is False


async def test_action_reported_failure(
    executor: TaskExecutor, action: AsyncMock, execution_log: AsyncMock
) -> None:
    action.run.return_value = ActionResult(success=False, detail="no SMTP config")

    assert await executor.execute(TASK) is ExecutionOutcome.FAILED
    assert execution_log.record.await_args.args[3:] == ("failed", "no SMTP config")


async def test_execution_log_failure_does_not_mask_result(
    executor: TaskExecutor, execution_log: AsyncMock, leases: LeaseManager
) -> None:
    execution_log.record.side_effect = ConnectionError("log store down")

    assert await executor.execute(TASK) is ExecutionOutcome.SUCCEEDED
    assert (await leases.status(TASK)).held is False


# -- Re-entrancy and keep-alive ------------------------------------------------


async def test_overlapping_fire_is_rejected(executor: TaskExecutor, action: AsyncMock) -> None:
    gate = asyncio.Event()

    async def _slow(task_name: str) -> ActionResult:
        await gate.wait()
        return ActionResult(success=True)

    action.run.side_effect = _slow
    first = asyncio.create_task(executor.execute(TASK))
    while not executor.is_running(TASK) or not action.run.await_count:
        await asyncio.sleep(0.01)

    assert await executor.execute(TASK) is ExecutionOutcome.ALREADY_RUNNING
    gate.set()
    assert await first is ExecutionOutcome.SUCCEEDED
    assert not executor.is_running(TASK)


async def test_lease_renewed_during_long_action(
    leases, policies, action, execution_log, clock
) -> None:
    ex = _make_executor(leases, policies, action, execution_log, clock, renew_interval=0.01)
    leases.renew = AsyncMock(return_value=True)

    async def _slow(task_name: str) -> ActionResult:
        await asyncio.sleep(0.1)
        return ActionResult(success=True)

    action.run.side_effect = _slow

    assert await ex.execute(TASK) is ExecutionOutcome.SUCCEEDED
    assert leases.renew.await_count >= 1
    leases.renew.assert_awaited_with(TASK, timedelta(minutes=30))


async def test_keep_alive_stops_after_action(
    leases, policies, action, execution_log, clock
) -> None:
    ex = _make_executor(leases, policies, action, execution_log, clock, renew_interval=0.01)
    leases.renew = AsyncMock(return_value=True)

    await ex.execute(TASK)
    calls_after_run = leases.renew.await_count
    await asyncio.sleep(0.05)
    assert leases.renew.await_count == calls_after_run


# -- Manual run ----------------------------------------------------------------


async def test_run_now_skips_policy_check_and_records_manual(
    executor: TaskExecutor,
    policies: AsyncMock,
    action: AsyncMock,
    execution_log: AsyncMock,
    clock,
) -> None:
    clock.advance(hours=5)  # nowhere near the 09:30 fire time

    assert await executor.run_now(TASK) is ExecutionOutcome.SUCCEEDED
    policies.get.assert_not_awaited()
    action.run.assert_awaited_once_with(TASK)
    assert execution_log.record.await_args.args[0] == "email_reminder_manual"


async def test_run_now_uses_manual_ttl(
    executor: TaskExecutor, action: AsyncMock, leases: LeaseManager
) -> None:
    ttls = []

    async def _inspect(task_name: str) -> ActionResult:
        status = await leases.status(task_name)
        ttls.append(status.expires_at - status.acquired_at)
        return ActionResult(success=True)

    action.run.side_effect = _inspect

    await executor.run_now(TASK)
    assert ttls == [timedelta(minutes=5)]
    assert (await leases.status(TASK)).held is False


async def test_run_now_respects_lease(
    executor: TaskExecutor, store: LeaseStore, action: AsyncMock, clock
) -> None:
    other = LeaseManager(store, HolderId("instance-b"), clock=clock)
    await other.acquire(TASK, timedelta(minutes=30))

    assert await executor.run_now(TASK) is ExecutionOutcome.LEASE_UNAVAILABLE
    action.run.assert_not_awaited()
