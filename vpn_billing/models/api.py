"""API request and response models for account, purchase and control endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class RegisterAccountRequest(BaseModel):
    """Request to register (or look up) an account on first contact."""

    telegram_id: int = Field(..., description="Telegram chat id")
    username: Optional[str] = Field(None, description="Telegram username")
    referral_code: Optional[str] = Field(None, description="Referral code from the start link")

    class Config:
        json_schema_extra = {
            "example": {
                "telegram_id": 123456789,
                "username": "alice",
                "referral_code": "ref_987654321",
            }
        }


class SubscriptionInfo(BaseModel):
    """Subscription block of an account profile."""

    state: str = Field(..., description="none, active or expired")
    remote_id: Optional[str] = Field(None, description="Provider account UUID")
    access_url: Optional[str] = Field(None, description="Subscription URL")
    expires_at: Optional[datetime] = Field(None, description="Access expiry (UTC)")
    plan: Optional[str] = Field(None, description="Plan label")


class AccountResponse(BaseModel):
    """Account profile."""

    telegram_id: int = Field(..., description="Telegram chat id")
    username: Optional[str] = Field(None, description="Telegram username")
    balance: Decimal = Field(..., description="Internal balance")
    status: str = Field(..., description="Account status (active/expired)")
    referral_code: Optional[str] = Field(None, description="Code to share with invitees")
    referrer_telegram_id: Optional[int] = Field(None, description="Who invited this account")
    invited_count: int = Field(default=0, description="Accounts invited with this account's code")
    referral_earned: Decimal = Field(default=Decimal("0"), description="Referral bonuses received")
    subscription: SubscriptionInfo = Field(..., description="Subscription state")

    class Config:
        json_schema_extra = {
            "example": {
                "telegram_id": 123456789,
                "username": "alice",
                "balance": "45.00",
                "status": "active",
                "referral_code": "ref_123456789",
                "referrer_telegram_id": None,
                "invited_count": 2,
                "referral_earned": "90.00",
                "subscription": {
                    "state": "active",
                    "remote_id": "6f1b1c2e-0c7e-4f57-b1c9-6a9a5a4b2f10",
                    "access_url": "https://vpn.example.com/sub/abc",
                    "expires_at": "2025-02-01T12:00:00",
                    "plan": "standard",
                },
            }
        }


class BalancePurchaseRequest(BaseModel):
    """Request to buy a plan with the internal balance."""

    plan: str = Field(default="standard", description="Plan ID")
    idempotency_key: Optional[str] = Field(
        None, description="Client key; repeating it does not charge twice"
    )


class BalancePurchaseResponse(BaseModel):
    """Outcome of a balance purchase."""

    status: str = Field(..., description="completed, insufficient_funds, failed or duplicate")
    failed_phase: Optional[str] = Field(None, description="reserve, provision or commit")
    plan: str = Field(..., description="Plan ID")
    price: Decimal = Field(..., description="Plan price")
    balance: Optional[Decimal] = Field(None, description="Balance after the purchase")
    expires_at: Optional[datetime] = Field(None, description="New access expiry")
    access_url: Optional[str] = Field(None, description="Subscription URL")
    message: str = Field(..., description="Human-readable outcome")


class ReconcileResponse(BaseModel):
    """Report of one reconciliation pass."""

    ran_at: datetime = Field(..., description="Pass reference time (UTC)")
    warned: int = Field(..., description="Pre-expiry warnings delivered")
    revoked: int = Field(..., description="Subscriptions revoked")
    failed: int = Field(..., description="Items that failed and will be retried")
    skipped: int = Field(..., description="Warnings already sent or undelivered")


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the payment provider."""

    status: str = Field(default="ok", description="Always ok for 200 responses")
    outcome: str = Field(..., description="ignored, duplicate, topped_up or provisioned")
