"""State change logging for accounts and subscriptions.

Tracks transitions with before/after values for debugging and auditing.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from vpn_billing.logging_config import get_logger

logger = get_logger(__name__)


def _short(remote_id: Optional[str]) -> Optional[str]:
    if remote_id and len(remote_id) > 12:
        return remote_id[:12] + "..."
    return remote_id


def log_subscription_state_change(
    telegram_id: int,
    remote_id: Optional[str],
    old_state: Any,
    new_state: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log subscription lifecycle transition (NONE/ACTIVE/EXPIRED).

    Args:
        telegram_id: Account identity
        remote_id: Provider account id
        old_state: Previous state value
        new_state: New state value
        reason: Reason for state change
        **extra_context: Additional context (expiry, plan, etc.)
    """
    logger.info(
        "subscription_state_changed",
        telegram_id=telegram_id,
        remote_id=_short(remote_id),
        old_state=str(old_state),
        new_state=str(new_state),
        reason=reason,
        **extra_context,
    )


def log_account_status_change(
    telegram_id: int,
    old_status: Any,
    new_status: Any,
    reason: Optional[str] = None,
    **extra_context: Any,
) -> None:
    """Log account status change (active/expired)."""
    logger.info(
        "account_status_changed",
        telegram_id=telegram_id,
        old_status=str(old_status),
        new_status=str(new_status),
        reason=reason,
        **extra_context,
    )


def log_balance_change(
    account_id: int,
    delta: Decimal,
    new_balance: Decimal,
    reason: str,
    **extra_context: Any,
) -> None:
    """Log a ledger movement.

    Args:
        account_id: Account primary key
        delta: Signed amount applied
        new_balance: Balance after the movement
        reason: credit, debit, refund, referral_bonus, ...
        **extra_context: Additional context
    """
    logger.info(
        "balance_changed",
        account_id=account_id,
        delta=str(delta),
        new_balance=str(new_balance),
        reason=reason,
        **extra_context,
    )


def log_expiry_change(
    telegram_id: int,
    remote_id: Optional[str],
    old_expiry: Optional[datetime],
    new_expiry: datetime,
    reason: str,
    **extra_context: Any,
) -> None:
    """Log subscription expiry time change.

    Args:
        telegram_id: Account identity
        remote_id: Provider account id
        old_expiry: Previous expiry (None for a new subscription)
        new_expiry: New expiry
        reason: Reason for change (created, extended, ...)
        **extra_context: Additional context
    """
    extension_days = None
    if old_expiry is not None:
        extension_days = round((new_expiry - old_expiry).total_seconds() / 86400, 3)

    logger.info(
        "expiry_changed",
        telegram_id=telegram_id,
        remote_id=_short(remote_id),
        old_expiry=old_expiry.isoformat() if old_expiry else None,
        new_expiry=new_expiry.isoformat(),
        extension_days=extension_days,
        reason=reason,
        **extra_context,
    )
