"""Tests for environment-driven settings."""

from decimal import Decimal

import pytest

from randevu.platform.settings import Environment, Settings

pytestmark = pytest.mark.unit


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("ENVIRONMENT", raising=False)

        settings = Settings(_env_file=None)

        assert settings.billing.trial_days == 14
        assert settings.billing.max_failed_payments == 3
        assert settings.billing.min_proration_charge == Decimal("0.00")
        assert settings.environment == Environment.DEVELOPMENT

    def test_nested_overrides(self, monkeypatch):
        monkeypatch.setenv("BILLING__TRIAL_DAYS", "30")
        monkeypatch.setenv("PAYMENTS__BASE_URL", "http://payments.internal")

        settings = Settings(_env_file=None)

        assert settings.billing.trial_days == 30
        assert settings.payments.base_url == "http://payments.internal"

    def test_environment_is_case_insensitive(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "PRODUCTION")

        settings = Settings(_env_file=None)

        assert settings.is_production
        assert not settings.is_testing
