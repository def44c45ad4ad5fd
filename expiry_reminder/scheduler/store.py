"""PolicyStore and ExecutionLogStore: libsql persistence for the scheduler's collaborators."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from expiry_reminder.db import connection
from expiry_reminder.scheduler.models import ReminderPolicy

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_POLICIES = """
CREATE TABLE IF NOT EXISTS reminder_policies (
    task_name     TEXT PRIMARY KEY,
    frequency     TEXT,
    reminder_time TEXT,
    weekday       INTEGER,
    day_of_month  INTEGER,
    updated_at    TEXT NOT NULL
)
"""

_CREATE_EXECUTIONS = """
CREATE TABLE IF NOT EXISTS execution_records (
    task_name     TEXT PRIMARY KEY,
    task_type     TEXT NOT NULL,
    last_run_time TEXT NOT NULL,
    status        TEXT NOT NULL,
    detail        TEXT NOT NULL DEFAULT '',
    updated_at    TEXT NOT NULL
)
"""


class PolicyStore:
    """Persists reminder policies in SQLite / Turso; a ``PolicyProvider``.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    async def _ensure_schema(self, db) -> None:  # noqa: ANN001
        if not self._initialised:
            await db.execute(_CREATE_POLICIES)
            await db.commit()
            self._initialised = True

    async def get(self, task_name: str) -> ReminderPolicy | None:
        """Return the stored policy for *task_name*, or None."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                "SELECT frequency, reminder_time, weekday, day_of_month"
                " FROM reminder_policies WHERE task_name = ?",
                (task_name,),
            )
            row = await cursor.fetchone()
            if not row:
                return None
            return ReminderPolicy(
                frequency=row[0],
                reminder_time=row[1],
                weekday=row[2],
                day_of_month=row[3],
            )

    async def save(self, task_name: str, policy: ReminderPolicy) -> None:
        """Insert or replace the policy for *task_name*."""
        now = datetime.now(UTC).isoformat()
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            await db.execute(
                """
                INSERT OR REPLACE INTO reminder_policies
                    (task_name, frequency, reminder_time, weekday, day_of_month, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    task_name,
                    policy.frequency,
                    policy.reminder_time,
                    policy.weekday,
                    policy.day_of_month,
                    now,
                ),
            )
            await db.commit()
        logger.info("Saved reminder policy for %s: %s", task_name, policy)

    async def delete(self, task_name: str) -> bool:
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                "DELETE FROM reminder_policies WHERE task_name = ?", (task_name,)
            )
            await db.commit()
            return cursor.rowcount > 0


class ExecutionLogStore:
    """Audit sink for task runs; an ``ExecutionLog``.

    Keeps the latest run per task name: each record overwrites the previous one.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    async def _ensure_schema(self, db) -> None:  # noqa: ANN001
        if not self._initialised:
            await db.execute(_CREATE_EXECUTIONS)
            await db.commit()
            self._initialised = True

    async def record(
        self,
        task_name: str,
        task_type: str,
        when: datetime,
        status: str,
        detail: str = "",
    ) -> None:
        """Upsert the latest run of *task_name*."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            await db.execute(
                """
                INSERT INTO execution_records
                    (task_name, task_type, last_run_time, status, detail, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(task_name) DO UPDATE SET
                    task_type = excluded.task_type,
                    last_run_time = excluded.last_run_time,
                    status = excluded.status,
                    detail = excluded.detail,
                    updated_at = excluded.updated_at
                """,
                (
                    task_name,
                    task_type,
                    when.isoformat(),
                    status,
                    detail,
                    datetime.now(UTC).isoformat(),
                ),
            )
            await db.commit()
        logger.debug("Recorded %s run of %s at %s", status, task_name, when.isoformat())

    async def get(self, task_name: str) -> dict[str, Any] | None:
        """Return the latest execution record for *task_name*, or None."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                "SELECT task_name, task_type, last_run_time, status, detail"
                " FROM execution_records WHERE task_name = ?",
                (task_name,),
            )
            row = await cursor.fetchone()
            if not row:
                return None
            return {
                "task_name": row[0],
                "task_type": row[1],
                "last_run_time": row[2],
                "status": row[3],
                "detail": row[4],
            }
