"""Trigger compiler: pure functions from ReminderPolicy to recurring schedules.

No I/O happens here.  All times are evaluated in one explicit timezone (the
deployment's canonical zone) so that every instance computes the same fire
instants regardless of its host's local zone.

Weekdays use cron numbering (0 = Sunday).  A monthly policy for a day that a
month does not have (e.g. 31 in April) does not fire in that month.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger

from expiry_reminder.scheduler.models import (
    DEFAULT_DAY_OF_MONTH,
    DEFAULT_WEEKDAY,
    CompiledTrigger,
    Frequency,
    InvalidPolicy,
    ReminderPolicy,
)

if TYPE_CHECKING:
    from datetime import tzinfo

# APScheduler's numeric day_of_week starts at Monday; names avoid the mismatch.
_CRON_WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        # isdigit() alone admits superscripts and other digits int() rejects
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def parse_time_of_day(text: str | None) -> tuple[int, int] | InvalidPolicy:
    """Parse ``"HH:MM"`` / ``"HH:MM:SS"`` into ``(hour, minute)``. Seconds are ignored."""
    if not text:
        return InvalidPolicy("time of day is not set")
    parts = str(text).strip().split(":")
    if len(parts) < 2:
        return InvalidPolicy(f"time of day {text!r} is not HH:MM")
    hour, minute = _as_int(parts[0]), _as_int(parts[1])
    if hour is None or minute is None:
        return InvalidPolicy(f"time of day {text!r} is not numeric")
    if not 0 <= hour <= 23:
        return InvalidPolicy(f"hour {hour} out of range 0-23")
    if not 0 <= minute <= 59:
        return InvalidPolicy(f"minute {minute} out of range 0-59")
    return hour, minute


def compile_policy(task_name: str, policy: ReminderPolicy | None) -> CompiledTrigger | InvalidPolicy:
    """Compile *policy* into a trigger for *task_name*, or explain why not.

    Weekly policies without a weekday fire on Monday; monthly policies without
    a day fire on the 1st.  Out-of-range values are rejected, never coerced.
    """
    if policy is None:
        return InvalidPolicy("no reminder policy configured")

    try:
        frequency = Frequency(policy.frequency)
    except ValueError:
        return InvalidPolicy(f"unknown frequency {policy.frequency!r}")

    parsed = parse_time_of_day(policy.reminder_time)
    if isinstance(parsed, InvalidPolicy):
        return parsed
    hour, minute = parsed

    if frequency is Frequency.WEEKLY:
        weekday = DEFAULT_WEEKDAY if policy.weekday is None else _as_int(policy.weekday)
        if weekday is None or not 0 <= weekday <= 6:
            return InvalidPolicy(f"weekday {policy.weekday!r} out of range 0-6")
        return CompiledTrigger(
            task_name=task_name,
            frequency=frequency,
            hour=hour,
            minute=minute,
            weekday=weekday,
            policy=policy,
        )

    if frequency is Frequency.MONTHLY:
        day = DEFAULT_DAY_OF_MONTH if policy.day_of_month is None else _as_int(policy.day_of_month)
        if day is None or not 1 <= day <= 31:
            return InvalidPolicy(f"day of month {policy.day_of_month!r} out of range 1-31")
        return CompiledTrigger(
            task_name=task_name,
            frequency=frequency,
            hour=hour,
            minute=minute,
            day_of_month=day,
            policy=policy,
        )

    return CompiledTrigger(
        task_name=task_name, frequency=frequency, hour=hour, minute=minute, policy=policy
    )


def build_cron_trigger(trigger: CompiledTrigger, timezone: str | tzinfo) -> CronTrigger:
    """Convert a compiled trigger into an APScheduler ``CronTrigger``."""
    kwargs: dict[str, object] = {"hour": trigger.hour, "minute": trigger.minute, "second": 0}
    if trigger.weekday is not None:
        kwargs["day_of_week"] = _CRON_WEEKDAY_NAMES[trigger.weekday]
    if trigger.day_of_month is not None:
        kwargs["day"] = trigger.day_of_month
    return CronTrigger(timezone=timezone, **kwargs)


def _matches_day(trigger: CompiledTrigger, day: date) -> bool:
    if trigger.frequency is Frequency.WEEKLY:
        # date.weekday(): Monday = 0; cron: Sunday = 0
        return (day.weekday() + 1) % 7 == trigger.weekday
    if trigger.frequency is Frequency.MONTHLY:
        return day.day == trigger.day_of_month
    return True


def should_fire_now(
    policy: ReminderPolicy | None,
    now: datetime,
    tolerance: timedelta,
    timezone: str | tzinfo,
) -> bool:
    """Re-derive whether *now* is a legitimate fire moment for *policy*.

    True when some scheduled fire instant of *policy* lies within *tolerance*
    of *now* (either side, so a slightly early or late local trigger still
    counts).  Candidates on the previous and next day are checked too, so a
    23:59 policy evaluated at 00:01 still matches.
    """
    compiled = compile_policy("", policy)
    if isinstance(compiled, InvalidPolicy):
        return False

    tz = ZoneInfo(timezone) if isinstance(timezone, str) else timezone
    local_now = now.astimezone(tz)
    fire_at = time(compiled.hour, compiled.minute)

    for offset in (-1, 0, 1):
        day = local_now.date() + timedelta(days=offset)
        if not _matches_day(compiled, day):
            continue
        candidate = datetime.combine(day, fire_at, tzinfo=tz)
        # Compare in UTC; same-tzinfo subtraction would ignore DST offsets
        if abs(now.astimezone(UTC) - candidate.astimezone(UTC)) <= tolerance:
            return True
    return False


def next_fire_time(
    trigger: CompiledTrigger,
    after: datetime,
    timezone: str | tzinfo,
) -> datetime | None:
    """Return the first fire instant strictly after *after*, or None."""
    cron = build_cron_trigger(trigger, timezone)
    return cron.get_next_fire_time(None, after + timedelta(microseconds=1))
