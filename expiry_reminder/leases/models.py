"""Lease data model and holder identity."""

from __future__ import annotations

import os
import socket
import time
from dataclasses import dataclass
from datetime import UTC, datetime

# Fixed-width so that lexical order of stored timestamps equals time order.
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def format_ts(value: datetime) -> str:
    """Serialize an aware datetime to the fixed-width UTC form stored in SQL."""
    if value.tzinfo is None:
        msg = "lease timestamps must be timezone-aware"
        raise ValueError(msg)
    return value.astimezone(UTC).strftime(_TS_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class HolderId:
    """Opaque identity of one running process instance.

    Generated once at process start and passed explicitly to the
    :class:`~expiry_reminder.leases.manager.LeaseManager`.
    """

    value: str

    @classmethod
    def generate(cls) -> HolderId:
        """Build a ``hostname-pid-epochms`` token unique across instances."""
        return cls(f"{socket.gethostname()}-{os.getpid()}-{int(time.time() * 1000)}")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Lease:
    """A stored ownership record for one task name.

    Attributes:
        task_name: Unique key of the lease.
        holder_id: Instance that owns (or last owned) the lease.
        acquired_at: When the current holder took the lease.
        expires_at: After this instant the lease may be taken over.
    """

    task_name: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @classmethod
    def from_row(cls, row: tuple) -> Lease:
        """Deserialize from a ``task_leases`` row tuple."""
        return cls(
            task_name=row[0],
            holder_id=row[1],
            acquired_at=parse_ts(row[2]),
            expires_at=parse_ts(row[3]),
        )


@dataclass(frozen=True)
class LeaseStatus:
    """Read-only snapshot returned by ``LeaseManager.status``.

    ``error`` is set when the store could not be read; ``held`` is then False.
    """

    task_name: str
    held: bool
    holder_id: str | None = None
    acquired_at: datetime | None = None
    expires_at: datetime | None = None
    is_mine: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "task_name": self.task_name,
            "held": self.held,
            "holder_id": self.holder_id,
            "acquired_at": self.acquired_at.isoformat() if self.acquired_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_mine": self.is_mine,
            "error": self.error,
        }
