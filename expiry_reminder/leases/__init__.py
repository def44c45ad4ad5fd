"""Distributed leases: one durable owner per task name across instances."""

from expiry_reminder.leases.manager import LeaseManager
from expiry_reminder.leases.models import HolderId, Lease, LeaseStatus
from expiry_reminder.leases.store import LeaseStore

__all__ = [
    "HolderId",
    "Lease",
    "LeaseManager",
    "LeaseStatus",
    "LeaseStore",
]
