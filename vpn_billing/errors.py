"""Domain exceptions shared by services and the HTTP layer."""

from decimal import Decimal
from typing import Optional


class BillingError(Exception):
    """Base exception for billing engine errors."""

    pass


class WebhookValidationError(BillingError):
    """Raised when a payment notification is malformed or lacks an identity."""

    pass


class InsufficientFundsError(BillingError):
    """Raised when a debit exceeds the available balance."""

    def __init__(self, balance: Decimal, amount: Decimal):
        self.balance = balance
        self.amount = amount
        super().__init__(f"Insufficient funds: balance {balance}, requested {amount}")


class PersistenceError(BillingError):
    """Raised when the relational store is unavailable or rejects a write."""

    pass


class AccountNotFoundError(BillingError):
    """Raised when an account is not found in the store."""

    pass


class PlanNotFoundError(BillingError):
    """Raised when a plan is not configured."""

    pass


class ProvisioningFailedError(BillingError):
    """Raised when remote provisioning fails before the payment commit point."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)


class ConstraintViolationError(PersistenceError):
    """Raised when a write violates a unique or foreign key constraint."""

    pass
