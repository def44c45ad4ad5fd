"""LeaseStore: libsql data access for the ``task_leases`` table.

Pure data access: every method is a single SQL statement plus commit.  The
conditional upsert in :meth:`LeaseStore.upsert_if_expired` is the only write
that can change a row's holder; it relies on the database serializing
concurrent writers on the same key.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from expiry_reminder.db import connection
from expiry_reminder.leases.models import Lease, format_ts

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS task_leases (
    task_name   TEXT PRIMARY KEY,
    holder_id   TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at  TEXT NOT NULL
)
"""

# Insert if absent; take over only a row whose expiry has passed; otherwise
# leave the row untouched.
_UPSERT_IF_EXPIRED = """
INSERT INTO task_leases (task_name, holder_id, acquired_at, expires_at)
VALUES (?, ?, ?, ?)
ON CONFLICT(task_name) DO UPDATE SET
    holder_id = excluded.holder_id,
    acquired_at = excluded.acquired_at,
    expires_at = excluded.expires_at
WHERE task_leases.expires_at <= ?
"""


class LeaseStore:
    """Persists leases in SQLite / Turso.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    # -- Internal helpers ------------------------------------------------------

    async def _ensure_schema(self, db) -> None:  # noqa: ANN001
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            await db.commit()
            self._initialised = True

    # -- Reads -----------------------------------------------------------------

    async def get(self, task_name: str) -> Lease | None:
        """Fetch the stored row for *task_name*, expired or not."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                "SELECT task_name, holder_id, acquired_at, expires_at"
                " FROM task_leases WHERE task_name = ?",
                (task_name,),
            )
            row = await cursor.fetchone()
            return Lease.from_row(row) if row else None

    async def list_all(self) -> list[Lease]:
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                "SELECT task_name, holder_id, acquired_at, expires_at"
                " FROM task_leases ORDER BY task_name"
            )
            rows = await cursor.fetchall()
            return [Lease.from_row(row) for row in rows]

    # -- Writes ----------------------------------------------------------------

    async def upsert_if_expired(
        self,
        task_name: str,
        holder_id: str,
        acquired_at: datetime,
        expires_at: datetime,
        now: datetime,
    ) -> None:
        """Atomically insert the lease, or take over a row expired at *now*."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            await db.execute(
                _UPSERT_IF_EXPIRED,
                (
                    task_name,
                    holder_id,
                    format_ts(acquired_at),
                    format_ts(expires_at),
                    format_ts(now),
                ),
            )
            await db.commit()

    async def delete_if_holder(self, task_name: str, holder_id: str) -> bool:
        """Delete the row only if *holder_id* owns it. Returns True if deleted."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                "DELETE FROM task_leases WHERE task_name = ? AND holder_id = ?",
                (task_name, holder_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def extend_if_held(
        self,
        task_name: str,
        holder_id: str,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        """Move ``expires_at`` forward if *holder_id* owns an unexpired row."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                "UPDATE task_leases SET expires_at = ?"
                " WHERE task_name = ? AND holder_id = ? AND expires_at > ?",
                (format_ts(expires_at), task_name, holder_id, format_ts(now)),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def delete_expired(self, now: datetime) -> int:
        """Delete every row whose expiry has passed. Returns the row count."""
        async with connection(self._db_path) as db:
            await self._ensure_schema(db)
            cursor = await db.execute(
                "DELETE FROM task_leases WHERE expires_at <= ?",
                (format_ts(now),),
            )
            await db.commit()
            return cursor.rowcount
