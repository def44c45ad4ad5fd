"""Reminder policy, compiled trigger and execution result models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any


class Frequency(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


# Cron numbering: 0 = Sunday ... 6 = Saturday.
DEFAULT_WEEKDAY = 1  # Monday
DEFAULT_DAY_OF_MONTH = 1


@dataclass(frozen=True)
class ReminderPolicy:
    """A human-entered reminder schedule, as stored by the policy editor.

    Attributes:
        frequency: ``"daily"``, ``"weekly"`` or ``"monthly"``.
        reminder_time: Time of day as ``"HH:MM"`` or ``"HH:MM:SS"`` text.
        weekday: 0 (Sunday) .. 6 (Saturday); only read for weekly policies.
            Unset means Monday.
        day_of_month: 1 .. 31; only read for monthly policies. Unset means 1.

    Nothing is validated here.  :func:`~expiry_reminder.scheduler.triggers.compile_policy`
    decides whether a policy describes a usable schedule.
    """

    frequency: str | None
    reminder_time: str | None
    weekday: int | None = None
    day_of_month: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReminderPolicy:
        """Build a policy from a JSON-ish mapping, tolerating missing keys."""
        return cls(
            frequency=data.get("frequency"),
            reminder_time=data.get("reminder_time"),
            weekday=data.get("weekday"),
            day_of_month=data.get("day_of_month"),
        )


@dataclass(frozen=True)
class InvalidPolicy:
    """Returned instead of a trigger when a policy has no valid schedule."""

    reason: str


@dataclass(frozen=True)
class CompiledTrigger:
    """A recurring-fire schedule derived from one policy snapshot.

    Attributes:
        task_name: Task the trigger drives.
        frequency: Parsed frequency.
        hour: Fire hour (0-23) in the canonical timezone.
        minute: Fire minute (0-59).
        weekday: Cron weekday for weekly triggers, else None.
        day_of_month: Day for monthly triggers, else None.
        policy: The snapshot the trigger was compiled from, kept so a freshly
            fetched policy can be compared against it.
    """

    task_name: str
    frequency: Frequency
    hour: int
    minute: int
    weekday: int | None = None
    day_of_month: int | None = None
    policy: ReminderPolicy | None = field(default=None, compare=False)

    @property
    def cron_fields(self) -> dict[str, str]:
        """The trigger as crontab-style fields (cron weekday numbering)."""
        return {
            "minute": str(self.minute),
            "hour": str(self.hour),
            "day": str(self.day_of_month) if self.day_of_month is not None else "*",
            "month": "*",
            "day_of_week": str(self.weekday) if self.weekday is not None else "*",
        }

    @property
    def crontab(self) -> str:
        f = self.cron_fields
        return f"{f['minute']} {f['hour']} {f['day']} {f['month']} {f['day_of_week']}"

    def describe(self) -> str:
        """Return a short human-readable description, for logs."""
        at = f"{self.hour:02d}:{self.minute:02d}"
        if self.frequency is Frequency.WEEKLY:
            return f"weekly on weekday {self.weekday} at {at}"
        if self.frequency is Frequency.MONTHLY:
            return f"monthly on day {self.day_of_month} at {at}"
        return f"daily at {at}"


@dataclass(frozen=True)
class ActionResult:
    """Outcome reported by an ``ActionInvoker``."""

    success: bool
    detail: str = ""


class ExecutionOutcome(StrEnum):
    """How a single fire (or manual run) ended."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    LEASE_UNAVAILABLE = "lease_unavailable"
    STALE_POLICY = "stale_policy"
    ALREADY_RUNNING = "already_running"
    POLICY_UNAVAILABLE = "policy_unavailable"

    @property
    def ran_action(self) -> bool:
        return self in (ExecutionOutcome.SUCCEEDED, ExecutionOutcome.FAILED)
