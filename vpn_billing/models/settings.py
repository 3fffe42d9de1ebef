"""Settings models.

Models from settings.yaml configuration.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class PlanDefinition(BaseModel):
    """Subscription plan sold for internal balance."""

    id: str = Field(..., description="Plan identifier (e.g., standard)")
    title: str = Field(..., description="Human-readable title")
    price: Decimal = Field(..., gt=0, description="Price in account currency")
    currency: str = Field(default="RUB", description="ISO 4217 currency code")
    duration_days: int = Field(..., gt=0, description="Access granted per purchase, in days")

    class Config:
        json_schema_extra = {
            "example": {
                "id": "standard",
                "title": "VPN 30 days",
                "price": "255.00",
                "currency": "RUB",
                "duration_days": 30,
            }
        }


class DatabaseConfig(BaseModel):
    """Relational store connection."""

    url: str = Field(default="sqlite:///vpn_billing.db", description="SQLAlchemy database URL")
    echo: bool = Field(default=False, description="Log emitted SQL")
    create_tables: bool = Field(default=True, description="Create missing tables on startup")


class CacheConfig(BaseModel):
    """Dedup cache connection."""

    redis_url: Optional[str] = Field(
        None, description="Redis URL; in-process cache is used when empty"
    )
    socket_timeout_seconds: float = Field(default=5.0, description="Redis socket timeout")


class ProviderConfig(BaseModel):
    """VPN provisioning API (Remnawave) settings."""

    base_url: str = Field(default="http://localhost:3000", description="Provider API base URL")
    api_key: str = Field(default="", description="Bearer token for the provider API")
    squad_id: Optional[str] = Field(None, description="Internal squad assigned to new users")
    timeout_seconds: float = Field(default=10.0, description="Per-request timeout")
    username_prefix: str = Field(default="user_", description="Prefix for remote usernames")


class TelegramConfig(BaseModel):
    """Notification delivery through the Telegram Bot API."""

    bot_token: str = Field(default="", description="Bot token")
    api_base: str = Field(default="https://api.telegram.org", description="Bot API base URL")
    timeout_seconds: float = Field(default=10.0, description="Per-request timeout")
    parse_mode: Optional[str] = Field(None, description="Optional sendMessage parse mode")


class PaymentsConfig(BaseModel):
    """Inbound payment notification settings."""

    webhook_path: str = Field(default="/yookassa-webhook", description="Webhook route path")
    allowed_networks: list[str] = Field(
        default_factory=list, description="CIDRs allowed to deliver webhooks (empty = any)"
    )
    trust_forwarded_for: bool = Field(
        default=False, description="Use the first X-Forwarded-For hop as client IP"
    )
    default_duration_days: int = Field(default=30, gt=0, description="Duration when metadata omits it")
    default_plan: str = Field(default="standard", description="Plan label for webhook purchases")


class ReferralConfig(BaseModel):
    """Referral program settings."""

    bonus_rate: Decimal = Field(default=Decimal("0.15"), ge=0, le=1, description="Share of top-up paid to referrer")
    code_prefix: str = Field(default="ref_", description="Referral code prefix")


class ReconciliationConfig(BaseModel):
    """Periodic reconciliation worker settings."""

    enabled: bool = Field(default=True, description="Start the worker with the application")
    period_seconds: int = Field(default=3600, gt=0, description="Seconds between passes")
    warning_window_start_hours: int = Field(default=23, description="Warn when expiry is at least this far")
    warning_window_end_hours: int = Field(default=25, description="Warn when expiry is at most this far")
    warning_ttl_hours: int = Field(default=48, gt=0, description="Dedup flag lifetime")


class SettingsFile(BaseModel):
    """Complete settings.yaml configuration."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    payments: PaymentsConfig = Field(default_factory=PaymentsConfig)
    referral: ReferralConfig = Field(default_factory=ReferralConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    plans: list[PlanDefinition] = Field(default_factory=list, description="Plans sold for balance")
