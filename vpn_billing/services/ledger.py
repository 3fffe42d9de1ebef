"""Ledger - account balance and referral bonus bookkeeping.

Responsibilities:
- Credit and debit balances atomically (balance never goes negative)
- Compute and pay referral bonuses together with their audit row
- Notify referrers once their bonus is committed

The ledger performs no payment deduplication; callers guard credits with the
PaymentRecord check.
"""

import threading
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from sqlalchemy.orm import Session

from vpn_billing.errors import InsufficientFundsError
from vpn_billing.logging_config import get_logger
from vpn_billing.repositories.account_store import AccountStore, get_account_store
from vpn_billing.repositories.payment_store import PaymentStore, get_payment_store
from vpn_billing.services.notification_gateway import (
    REFERRAL_BONUS,
    NotificationGateway,
    format_amount,
    get_notification_gateway,
)
from vpn_billing.state_logger import log_balance_change

logger = get_logger(__name__)

CENT = Decimal("0.01")
DEFAULT_REFERRAL_RATE = Decimal("0.15")


def to_money(value: Union[Decimal, str, int, float]) -> Decimal:
    """Convert to a two-decimal amount (half-up).

    Raises:
        ValueError: If the value is not a finite number
    """
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class ReferralBonus:
    """A referral payout that was written to the store."""

    referrer_id: int
    referrer_telegram_id: int
    invited_id: int
    amount: Decimal
    referrer_balance: Decimal


class Ledger:
    """Balance bookkeeping for accounts.

    Args:
        account_store: Account persistence (global store if omitted)
        payment_store: Payment/referral persistence (global store if omitted)
        notification_gateway: Message delivery (global gateway if omitted)
        referral_rate: Share of a top-up paid to the referrer
        currency: Currency shown in messages
    """

    def __init__(
        self,
        account_store: Optional[AccountStore] = None,
        payment_store: Optional[PaymentStore] = None,
        notification_gateway: Optional[NotificationGateway] = None,
        referral_rate: Decimal = DEFAULT_REFERRAL_RATE,
        currency: str = "RUB",
    ) -> None:
        self._accounts = account_store if account_store is not None else get_account_store()
        self._payments = payment_store if payment_store is not None else get_payment_store()
        self._notifications = notification_gateway if notification_gateway is not None else get_notification_gateway()
        self._referral_rate = Decimal(str(referral_rate))
        self._currency = currency

    @property
    def referral_rate(self) -> Decimal:
        return self._referral_rate

    def balance(self, account_id: int) -> Decimal:
        """Get current balance.

        Raises:
            AccountNotFoundError: If no such account exists
        """
        return self._accounts.get_balance(account_id)

    def credit(
        self,
        account_id: int,
        amount: Union[Decimal, str],
        session: Optional[Session] = None,
        reason: str = "credit",
    ) -> Decimal:
        """Increase a balance.

        Args:
            account_id: Account primary key
            amount: Positive amount
            session: Optional caller transaction to join
            reason: Label for the balance log line

        Returns:
            New balance

        Raises:
            ValueError: If the amount is not positive
            AccountNotFoundError: If no such account exists
        """
        amount = to_money(amount)
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got: {amount}")

        new_balance = self._accounts.add_to_balance(account_id, amount, session=session)
        log_balance_change(account_id, amount, new_balance, reason)
        return new_balance

    def debit(
        self,
        account_id: int,
        amount: Union[Decimal, str],
        session: Optional[Session] = None,
        reason: str = "debit",
    ) -> Decimal:
        """Decrease a balance if it covers the amount.

        Returns:
            New balance

        Raises:
            ValueError: If the amount is not positive
            InsufficientFundsError: If amount > balance (balance untouched)
            AccountNotFoundError: If no such account exists
        """
        amount = to_money(amount)
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive, got: {amount}")

        new_balance = self._accounts.subtract_from_balance(account_id, amount, session=session)
        if new_balance is None:
            current = self._accounts.get_balance(account_id, session=session)
            logger.info(
                "debit_rejected",
                account_id=account_id,
                amount=str(amount),
                balance=str(current),
            )
            raise InsufficientFundsError(current, amount)

        log_balance_change(account_id, -amount, new_balance, reason)
        return new_balance

    def compute_referral_bonus(self, base_amount: Union[Decimal, str]) -> Decimal:
        """Bonus for a top-up: round_half_up(base * rate, 2)."""
        return (to_money(base_amount) * self._referral_rate).quantize(CENT, rounding=ROUND_HALF_UP)

    def pay_referral_bonus(
        self,
        referrer_id: Optional[int],
        invited_id: int,
        base_amount: Union[Decimal, str],
        session: Optional[Session] = None,
    ) -> Optional[ReferralBonus]:
        """Credit the referrer and record the referral transaction.

        Both writes share one transaction. Without a caller session the
        referrer is notified after commit; with one, the caller announces the
        returned bonus once its own transaction commits.

        Args:
            referrer_id: Referrer account id (None skips the payout)
            invited_id: Account whose top-up triggered the bonus
            base_amount: Top-up amount
            session: Optional caller transaction to join

        Returns:
            ReferralBonus if paid, None if skipped
        """
        if referrer_id is None:
            return None

        amount = self.compute_referral_bonus(base_amount)
        if amount <= 0:
            logger.debug("referral_bonus_skipped", invited_id=invited_id, base_amount=str(base_amount))
            return None

        with self._accounts.database.transaction(session) as s:
            referrer = self._accounts.get(referrer_id, session=s)
            new_balance = self.credit(referrer_id, amount, session=s, reason="referral_bonus")
            self._payments.add_referral(referrer_id, invited_id, amount, session=s)
            bonus = ReferralBonus(
                referrer_id=referrer_id,
                referrer_telegram_id=referrer.telegram_id,
                invited_id=invited_id,
                amount=amount,
                referrer_balance=new_balance,
            )

        logger.info(
            "referral_bonus_paid",
            referrer_id=referrer_id,
            invited_id=invited_id,
            amount=str(amount),
        )

        if session is None:
            self.announce_referral_bonus(bonus)
        return bonus

    def announce_referral_bonus(self, bonus: ReferralBonus) -> bool:
        """Tell the referrer about a committed bonus."""
        return self._notifications.send(
            bonus.referrer_telegram_id,
            REFERRAL_BONUS.format(amount=format_amount(bonus.amount), currency=self._currency),
        )


# Global ledger instance
_ledger_instance: Optional[Ledger] = None
_ledger_lock = threading.Lock()


def get_ledger() -> Ledger:
    """Get global ledger instance (singleton)."""
    global _ledger_instance
    if _ledger_instance is None:
        with _ledger_lock:
            if _ledger_instance is None:
                from vpn_billing.config import get_config

                _ledger_instance = Ledger(referral_rate=get_config().referral.bonus_rate)
    return _ledger_instance


def reset_ledger() -> None:
    global _ledger_instance
    with _ledger_lock:
        _ledger_instance = None
