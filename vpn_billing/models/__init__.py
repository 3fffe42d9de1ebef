"""SQLAlchemy tables and pydantic models for requests, responses and settings."""

# Persistent models
from .account import Account, AccountStatus
from .subscription import Subscription, SubscriptionState
from .payment import PaymentCategory, PaymentRecord, ReferralTransaction

# Provider models
from .provider import RemoteAccount

# Payment notification models
from .webhook import (
    BALANCE_TOPUP_TYPE,
    PAYMENT_SUCCEEDED,
    PaymentAmount,
    PaymentMetadata,
    PaymentObject,
    WebhookNotification,
)

# API models
from .api import (
    AccountResponse,
    BalancePurchaseRequest,
    BalancePurchaseResponse,
    ReconcileResponse,
    RegisterAccountRequest,
    SubscriptionInfo,
    WebhookResponse,
)

__all__ = [
    # Persistent
    "Account",
    "AccountStatus",
    "Subscription",
    "SubscriptionState",
    "PaymentCategory",
    "PaymentRecord",
    "ReferralTransaction",
    # Provider
    "RemoteAccount",
    # Payment notifications
    "PAYMENT_SUCCEEDED",
    "BALANCE_TOPUP_TYPE",
    "PaymentAmount",
    "PaymentMetadata",
    "PaymentObject",
    "WebhookNotification",
    # API
    "RegisterAccountRequest",
    "SubscriptionInfo",
    "AccountResponse",
    "BalancePurchaseRequest",
    "BalancePurchaseResponse",
    "ReconcileResponse",
    "WebhookResponse",
]
