"""Tests for configuration loading and management."""

from decimal import Decimal
from pathlib import Path

import pytest

from vpn_billing.config import ENV_OVERRIDES, Config, ConfigurationError

SETTINGS_PATH = Path(__file__).resolve().parents[2] / "config" / "settings.yaml"

MINIMAL_SETTINGS = """
database:
  url: "sqlite:///test.db"
provider:
  base_url: "https://panel.example.com"
  api_key: "file-key"
plans:
  - id: "standard"
    title: "VPN 30 days"
    price: "255.00"
    duration_days: 30
  - id: "quarter"
    title: "VPN 90 days"
    price: "690.00"
    duration_days: 90
"""


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep host environment variables from leaking into the tests."""
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("CONFIG_PATH", raising=False)


@pytest.fixture
def settings_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(MINIMAL_SETTINGS, encoding="utf-8")
    return path


@pytest.fixture
def config():
    """Config loaded from the shipped settings.yaml."""
    return Config(str(SETTINGS_PATH))


class TestShippedConfiguration:
    """Test the settings.yaml shipped with the service."""

    def test_config_loads_successfully(self, config):
        assert config.config_path.exists()
        assert str(config.config_path).endswith("settings.yaml")

    def test_standard_plan_is_configured(self, config):
        plan = config.get_plan("standard")
        assert plan is not None
        assert plan.price == Decimal("255.00")
        assert plan.duration_days == 30

    def test_webhook_settings(self, config):
        assert config.payments.webhook_path == "/yookassa-webhook"
        assert "185.71.76.0/27" in config.payments.allowed_networks
        assert config.payments.default_duration_days == 30

    def test_referral_settings(self, config):
        assert config.referral.bonus_rate == Decimal("0.15")
        assert config.referral.code_prefix == "ref_"

    def test_reconciliation_settings(self, config):
        assert config.reconciliation.period_seconds == 3600
        assert config.reconciliation.warning_window_start_hours == 23
        assert config.reconciliation.warning_window_end_hours == 25
        assert config.reconciliation.warning_ttl_hours == 48

    def test_cache_defaults_to_memory(self, config):
        assert config.cache.redis_url is None


class TestConfigurationLoading:
    """Test loading from custom files."""

    def test_explicit_path(self, settings_file):
        config = Config(str(settings_file))
        assert config.database.url == "sqlite:///test.db"
        assert config.provider.api_key == "file-key"

    def test_config_path_env_var(self, settings_file, monkeypatch):
        monkeypatch.setenv("CONFIG_PATH", str(settings_file))
        config = Config()
        assert config.config_path == settings_file

    def test_missing_sections_use_defaults(self, settings_file):
        config = Config(str(settings_file))
        assert config.telegram.bot_token == ""
        assert config.reconciliation.enabled is True
        assert config.payments.allowed_networks == []

    def test_get_plan(self, settings_file):
        config = Config(str(settings_file))
        assert config.get_plan("quarter").duration_days == 90
        assert config.get_plan("lifetime") is None

    def test_reload_picks_up_changes(self, settings_file):
        config = Config(str(settings_file))
        settings_file.write_text(
            MINIMAL_SETTINGS.replace("file-key", "rotated-key"), encoding="utf-8"
        )
        config.reload()
        assert config.provider.api_key == "rotated-key"


class TestEnvironmentOverrides:
    """Test secrets and URLs supplied through the environment."""

    def test_env_overrides_file_values(self, settings_file, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://billing@db/billing")
        monkeypatch.setenv("PROVIDER_API_KEY", "env-key")
        monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")

        config = Config(str(settings_file))

        assert config.database.url == "postgresql://billing@db/billing"
        assert config.provider.api_key == "env-key"
        assert config.telegram.bot_token == "123:abc"

    def test_env_creates_missing_section(self, settings_file, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
        config = Config(str(settings_file))
        assert config.cache.redis_url == "redis://cache:6379/0"

    def test_empty_env_value_ignored(self, settings_file, monkeypatch):
        monkeypatch.setenv("PROVIDER_API_KEY", "")
        config = Config(str(settings_file))
        assert config.provider.api_key == "file-key"


class TestConfigurationErrors:
    """Test invalid configuration handling."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            Config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("database: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="parse"):
            Config(str(path))

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- one\n- two\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="mapping"):
            Config(str(path))

    def test_validation_failure(self, tmp_path):
        path = tmp_path / "bad_plan.yaml"
        path.write_text(
            "plans:\n  - id: free\n    title: Free\n    price: '0'\n    duration_days: 30\n",
            encoding="utf-8",
        )
        with pytest.raises(ConfigurationError, match="validation"):
            Config(str(path))

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        config = Config(str(path))
        assert config.settings.plans == []
        assert config.payments.webhook_path == "/yookassa-webhook"
