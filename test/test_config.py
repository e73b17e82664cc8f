"""Tests for environment-driven configuration."""

from decimal import Decimal

import pytest

from callcontrol.config import Settings, get_settings
from callcontrol.telephony.config import ProviderType, TelephonyConfig


class TestSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("PER_MINUTE_RATE", "MONITOR_INTERVAL_SECONDS", "BILLING_ROUNDING"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings()

        assert settings.monitor_interval_seconds == 10.0
        assert settings.max_zero_duration_rechecks == 6
        assert settings.per_minute_rate == Decimal("1")
        assert settings.billing_rounding == "ceil"
        assert settings.alert_sweep_interval_seconds == 60.0
        assert settings.alert_cooldown_hours == 24
        assert settings.low_credit_cooldown_minutes == 30
        assert settings.campaign_poll_interval_seconds == 5.0
        assert settings.campaign_max_wait_seconds == 300.0
        assert settings.campaign_final_duration_grace_seconds == 3.0
        assert settings.campaign_idle_sleep_seconds == 2.0
        assert settings.campaign_default_call_interval_sec == 10

    def test_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PER_MINUTE_RATE", "2.5")
        monkeypatch.setenv("BILLING_ROUNDING", "fractional")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = get_settings()

        assert settings.per_minute_rate == Decimal("2.5")
        assert settings.billing_rounding == "fractional"
        assert settings.log_level == "DEBUG"

    def test_exempt_account_ids_parsed(self) -> None:
        settings = Settings(exempt_account_ids=" a1, b2 ,,c3 ")
        assert settings.exempt_account_id_set == {"a1", "b2", "c3"}

    def test_cors_origins_list(self) -> None:
        settings = Settings(cors_origins="https://a.example, https://b.example")
        assert settings.cors_origins_list == ["https://a.example", "https://b.example"]

    def test_invalid_rounding_rejected(self) -> None:
        with pytest.raises(ValueError):
            Settings(billing_rounding="floor")


class TestTelephonyConfig:
    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TELEPHONY_PROVIDER_TYPE", "mock")
        monkeypatch.setenv("TELEPHONY_EXOTEL_ACCOUNT_SID", "acme1")

        config = TelephonyConfig()

        assert config.provider_type == ProviderType.MOCK
        assert config.exotel_account_sid == "acme1"

    def test_flow_url_from_app_id(self) -> None:
        config = TelephonyConfig(exotel_account_sid="acme1")
        assert config.flow_url("777") == "http://my.exotel.com/acme1/exoml/start_voice/777"

    def test_flow_url_passthrough(self) -> None:
        config = TelephonyConfig(exotel_account_sid="acme1")
        assert config.flow_url("https://flows.example/x") == "https://flows.example/x"

    def test_webhook_url(self) -> None:
        config = TelephonyConfig(webhook_base_url="https://cb.example/")
        assert config.get_webhook_url() == "https://cb.example/webhooks/telephony/status"
