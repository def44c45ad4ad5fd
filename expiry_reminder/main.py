"""Expiry reminder service entry point."""

import asyncio
import logging

from expiry_reminder.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
)
logger = logging.getLogger(__name__)


def main() -> None:
    """Start the scheduler and operational API for this instance."""
    from expiry_reminder.app import serve

    if settings.turso_database_url:
        logger.info("Using shared Turso database for leases and policies")
    else:
        logger.warning(
            "TURSO_DATABASE_URL is empty, using local %s; leases only coordinate "
            "instances on this host",
            settings.database_path,
        )
    if not settings.action_webhook_url:
        logger.warning("ACTION_WEBHOOK_URL is empty, reminder runs will be recorded as failed")

    logger.info(
        "Starting expiry reminder scheduler (task=%s, tz=%s)",
        settings.reminder_task_name,
        settings.scheduler_timezone,
    )
    asyncio.run(serve())


if __name__ == "__main__":
    main()
