"""Tests for Settings configuration model."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from expiry_reminder.config import Settings


class TestDefaults:
    def test_lease_and_tolerance_defaults(self):
        s = Settings()
        assert s.lease_ttl == timedelta(minutes=30)
        assert s.manual_lease_ttl == timedelta(minutes=5)
        assert s.fire_tolerance == timedelta(minutes=5)

    def test_canonical_timezone(self):
        assert Settings().scheduler_timezone == "Asia/Shanghai"

    def test_task_defaults(self):
        s = Settings()
        assert s.reminder_task_name == "email_reminder"
        assert s.reminder_task_type == "email"


class TestRenewInterval:
    def test_defaults_to_third_of_ttl(self):
        s = Settings()
        assert s.get_renew_interval(timedelta(minutes=30)) == 600.0

    def test_explicit_interval_wins(self):
        s = Settings(lease_renew_interval_seconds=45)
        assert s.get_renew_interval(timedelta(minutes=30)) == 45.0


class TestValidation:
    def test_rejects_zero_lease_ttl(self):
        with pytest.raises(ValidationError):
            Settings(lease_ttl_minutes=0)

    def test_rejects_negative_tolerance(self):
        with pytest.raises(ValidationError):
            Settings(fire_tolerance_minutes=-1)

    def test_zero_tolerance_allowed(self):
        assert Settings(fire_tolerance_minutes=0).fire_tolerance == timedelta(0)
