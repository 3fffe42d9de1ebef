"""Configuration management - loads settings.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from vpn_billing.models.settings import PlanDefinition, SettingsFile


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


# Environment variable -> (section, field)
ENV_OVERRIDES = {
    "DATABASE_URL": ("database", "url"),
    "REDIS_URL": ("cache", "redis_url"),
    "PROVIDER_API_URL": ("provider", "base_url"),
    "PROVIDER_API_KEY": ("provider", "api_key"),
    "PROVIDER_SQUAD_ID": ("provider", "squad_id"),
    "TELEGRAM_BOT_TOKEN": ("telegram", "bot_token"),
}


class Config:
    """Application configuration loader and manager.

    Loads settings.yaml, applies environment overrides for secrets and
    connection URLs, and provides validated access to:
    - Database and cache connections
    - Provider and Telegram API settings
    - Payment, referral and reconciliation behaviour
    - Plans sold for internal balance
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to settings.yaml file. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/settings.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._settings: Optional[SettingsFile] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/settings.yaml")

    def _load_config(self) -> None:
        """Load and validate settings.yaml configuration."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/settings.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)

            if raw_config is None:
                raw_config = {}
            if not isinstance(raw_config, dict):
                raise ConfigurationError(
                    f"Configuration root must be a mapping: {self._config_path}"
                )

            self._apply_env_overrides(raw_config)
            self._settings = SettingsFile(**raw_config)

        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}")

    @staticmethod
    def _apply_env_overrides(raw_config: dict) -> None:
        for env_name, (section, field) in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                section_values = raw_config.get(section) or {}
                section_values[field] = value
                raw_config[section] = section_values

    @property
    def settings(self) -> SettingsFile:
        """Get validated settings."""
        if self._settings is None:
            raise ConfigurationError("Configuration not loaded")
        return self._settings

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    @property
    def database(self):
        return self.settings.database

    @property
    def cache(self):
        return self.settings.cache

    @property
    def provider(self):
        return self.settings.provider

    @property
    def telegram(self):
        return self.settings.telegram

    @property
    def payments(self):
        return self.settings.payments

    @property
    def referral(self):
        return self.settings.referral

    @property
    def reconciliation(self):
        return self.settings.reconciliation

    def get_plan(self, plan_id: str) -> Optional[PlanDefinition]:
        """Get plan definition by ID.

        Args:
            plan_id: Plan ID (e.g., "standard")

        Returns:
            PlanDefinition if found, None otherwise
        """
        for plan in self.settings.plans:
            if plan.id == plan_id:
                return plan
        return None

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)

    Returns:
        Config instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reset_config() -> None:
    """Drop the global configuration so the next get_config() reloads it."""
    global _config_instance
    _config_instance = None
