"""Recurring reminder scheduling: policies, triggers, execution, and persistence."""

from expiry_reminder.scheduler.actions import CallableAction, WebhookAction
from expiry_reminder.scheduler.engine import SchedulerEngine
from expiry_reminder.scheduler.executor import TaskExecutor
from expiry_reminder.scheduler.models import (
    ActionResult,
    CompiledTrigger,
    ExecutionOutcome,
    Frequency,
    InvalidPolicy,
    ReminderPolicy,
)
from expiry_reminder.scheduler.store import ExecutionLogStore, PolicyStore
from expiry_reminder.scheduler.triggers import compile_policy, next_fire_time, should_fire_now

__all__ = [
    "ActionResult",
    "CallableAction",
    "CompiledTrigger",
    "ExecutionLogStore",
    "ExecutionOutcome",
    "Frequency",
    "InvalidPolicy",
    "PolicyStore",
    "ReminderPolicy",
    "SchedulerEngine",
    "TaskExecutor",
    "WebhookAction",
    "compile_policy",
    "next_fire_time",
    "should_fire_now",
]
