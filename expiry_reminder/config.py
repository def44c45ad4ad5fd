"""Application settings loaded from environment variables."""

import os
from datetime import timedelta
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Expiry reminder configuration. All values come from environment variables."""

    # Database
    database_path: Path = Field(default=Path("data/expiry_reminder.db"))

    # Turso (hosted libSQL). When set, overrides local database_path.
    # Every instance of a multi-instance deployment must point at the same store.
    turso_database_url: str = Field(default="")
    turso_auth_token: str = Field(default="")

    # Scheduler
    scheduler_timezone: str = Field(default="Asia/Shanghai")
    reminder_task_name: str = Field(default="email_reminder")
    reminder_task_type: str = Field(default="email")
    fire_tolerance_minutes: int = Field(default=5, ge=0)

    # Leases
    instance_id: str = Field(default="")
    lease_ttl_minutes: int = Field(default=30, gt=0)
    manual_lease_ttl_minutes: int = Field(default=5, gt=0)
    lease_renew_interval_seconds: int = Field(default=0, ge=0)
    lease_gc_interval_minutes: int = Field(default=15, ge=0)

    # Action
    action_webhook_url: str = Field(default="")
    action_timeout_seconds: float = Field(default=30.0, gt=0)

    # Operational API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    @property
    def lease_ttl(self) -> timedelta:
        return timedelta(minutes=self.lease_ttl_minutes)

    @property
    def manual_lease_ttl(self) -> timedelta:
        return timedelta(minutes=self.manual_lease_ttl_minutes)

    @property
    def fire_tolerance(self) -> timedelta:
        return timedelta(minutes=self.fire_tolerance_minutes)

    def get_renew_interval(self, ttl: timedelta) -> float:
        """Seconds between lease renewals while an action runs.

        Falls back to a third of *ttl* when no explicit interval is configured.
        """
        if self.lease_renew_interval_seconds:
            return float(self.lease_renew_interval_seconds)
        return ttl.total_seconds() / 3


settings = Settings()
