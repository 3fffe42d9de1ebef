"""Webhook processor - turns payment notifications into balance credits and
subscription changes.

Flow for ``payment.succeeded``:
1. Validate identity, transaction id and amount
2. Find-or-create the account
3. Skip transactions that already have a PaymentRecord
4. Balance top-up: credit, referral bonus and PaymentRecord in one transaction
5. Subscription: provision/extend, then subscription change and PaymentRecord
   in one transaction

Every other event is acknowledged and ignored. Notifications go out only
after the PaymentRecord is committed.
"""

import enum
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from vpn_billing.database import Database
from vpn_billing.errors import (
    ConstraintViolationError,
    ProvisioningFailedError,
    WebhookValidationError,
)
from vpn_billing.logging_config import get_logger
from vpn_billing.models.account import Account
from vpn_billing.models.payment import PaymentCategory
from vpn_billing.models.webhook import BALANCE_TOPUP_TYPE, PaymentObject, WebhookNotification
from vpn_billing.repositories.payment_store import PaymentStore, get_payment_store
from vpn_billing.services.account_locks import AccountLockTable, get_account_locks
from vpn_billing.services.account_service import AccountService, get_account_service
from vpn_billing.services.ledger import Ledger, get_ledger, to_money
from vpn_billing.services.notification_gateway import (
    TOPUP_CONFIRMED,
    NotificationGateway,
    format_amount,
    get_notification_gateway,
)
from vpn_billing.services.provider_client import ProviderError
from vpn_billing.services.subscription_manager import (
    PendingPayment,
    SubscriptionManager,
    get_subscription_manager,
)
from vpn_billing.utils.durations import resolve_duration

logger = get_logger(__name__)


class WebhookOutcome(str, enum.Enum):
    """What processing a notification did."""

    IGNORED = "ignored"  # Not a payment.succeeded event
    DUPLICATE = "duplicate"  # Transaction already processed
    TOPPED_UP = "topped_up"  # Balance credited
    PROVISIONED = "provisioned"  # Subscription created or extended


@dataclass
class WebhookResult:
    """Result of processing one notification."""

    outcome: WebhookOutcome
    transaction_id: Optional[str] = None
    telegram_id: Optional[int] = None
    balance: Optional[Decimal] = None
    expires_at: Optional[datetime] = None
    access_url: Optional[str] = None


@dataclass
class ValidatedPayment:
    """Fields of a payment.succeeded notification after validation."""

    transaction_id: str
    telegram_id: int
    amount: Decimal
    currency: str
    duration: timedelta
    is_topup: bool


class WebhookProcessor:
    """Entry point for payment notifications.

    Args:
        database: Store used for the top-up transaction
        account_service: Find-or-create for accounts
        ledger: Balance bookkeeping
        subscription_manager: Subscription lifecycle
        payment_store: Payment persistence (dedup check)
        notifications: Message delivery
        locks: Per-account lock table
        default_duration_days: Duration when metadata omits it
        default_plan: Plan label stored for webhook purchases
    """

    def __init__(
        self,
        database: Optional[Database] = None,
        account_service: Optional[AccountService] = None,
        ledger: Optional[Ledger] = None,
        subscription_manager: Optional[SubscriptionManager] = None,
        payment_store: Optional[PaymentStore] = None,
        notifications: Optional[NotificationGateway] = None,
        locks: Optional[AccountLockTable] = None,
        default_duration_days: int = 30,
        default_plan: str = "standard",
    ) -> None:
        self._payments = payment_store if payment_store is not None else get_payment_store()
        self._database = database if database is not None else self._payments.database
        self._accounts = account_service if account_service is not None else get_account_service()
        self._ledger = ledger if ledger is not None else get_ledger()
        self._subscriptions = subscription_manager if subscription_manager is not None else get_subscription_manager()
        self._notifications = notifications if notifications is not None else get_notification_gateway()
        self._locks = locks if locks is not None else get_account_locks()
        self._default_duration_days = default_duration_days
        self._default_plan = default_plan

    def process(self, notification: WebhookNotification) -> WebhookResult:
        """Process one notification.

        Returns:
            WebhookResult describing what happened

        Raises:
            WebhookValidationError: Payload is malformed (no side effects)
            ProvisioningFailedError: Provider failed; nothing recorded, redelivery will retry
            PersistenceError: Store failed; redelivery will retry
        """
        if not notification.is_payment_succeeded:
            logger.info("webhook_event_ignored", event_type=notification.event)
            return WebhookResult(outcome=WebhookOutcome.IGNORED)

        payment = self._validate(notification.object)

        logger.info(
            "payment_processing",
            transaction_id=payment.transaction_id,
            telegram_id=payment.telegram_id,
            amount=str(payment.amount),
            topup=payment.is_topup,
        )

        with self._locks.hold(payment.telegram_id):
            account = self._accounts.get_or_create(payment.telegram_id)

            if self._payments.exists(payment.transaction_id):
                logger.info("payment_duplicate", transaction_id=payment.transaction_id)
                return WebhookResult(
                    outcome=WebhookOutcome.DUPLICATE,
                    transaction_id=payment.transaction_id,
                    telegram_id=payment.telegram_id,
                )

            if payment.is_topup:
                return self._process_topup(account, payment)
            return self._process_subscription(account, payment)

    def _validate(self, obj: PaymentObject) -> ValidatedPayment:
        if not obj.id:
            raise WebhookValidationError("Payment object lacks id")

        raw_id = obj.metadata.telegram_id
        if raw_id is None or isinstance(raw_id, bool) or str(raw_id).strip() == "":
            raise WebhookValidationError(f"Payment {obj.id} lacks metadata.telegram_id")
        try:
            telegram_id = int(str(raw_id).strip())
        except ValueError:
            raise WebhookValidationError(f"Invalid telegram_id in payment {obj.id}: {raw_id!r}")

        if obj.amount is None:
            raise WebhookValidationError(f"Payment {obj.id} lacks amount")
        try:
            amount = to_money(obj.amount.value)
        except ValueError:
            raise WebhookValidationError(f"Invalid amount in payment {obj.id}: {obj.amount.value!r}")
        if amount <= 0:
            raise WebhookValidationError(f"Non-positive amount in payment {obj.id}: {amount}")

        try:
            duration = resolve_duration(obj.metadata.duration, self._default_duration_days)
        except ValueError:
            logger.warning(
                "payment_duration_invalid",
                transaction_id=obj.id,
                duration=obj.metadata.duration,
                default_days=self._default_duration_days,
            )
            duration = timedelta(days=self._default_duration_days)

        return ValidatedPayment(
            transaction_id=obj.id,
            telegram_id=telegram_id,
            amount=amount,
            currency=obj.amount.currency,
            duration=duration,
            is_topup=obj.metadata.type == BALANCE_TOPUP_TYPE,
        )

    def _process_topup(self, account: Account, payment: ValidatedPayment) -> WebhookResult:
        try:
            with self._database.transaction() as s:
                new_balance = self._ledger.credit(
                    account.id, payment.amount, session=s, reason="balance_topup"
                )
                bonus = self._ledger.pay_referral_bonus(
                    account.referrer_id, account.id, payment.amount, session=s
                )
                self._payments.add(
                    account_id=account.id,
                    amount=payment.amount,
                    category=PaymentCategory.BALANCE_TOPUP,
                    transaction_id=payment.transaction_id,
                    currency=payment.currency,
                    session=s,
                )
        except ConstraintViolationError:
            if self._payments.exists(payment.transaction_id):
                logger.info("payment_duplicate_on_commit", transaction_id=payment.transaction_id)
                return WebhookResult(
                    outcome=WebhookOutcome.DUPLICATE,
                    transaction_id=payment.transaction_id,
                    telegram_id=payment.telegram_id,
                )
            raise

        logger.info(
            "balance_topped_up",
            transaction_id=payment.transaction_id,
            telegram_id=payment.telegram_id,
            amount=str(payment.amount),
            balance=str(new_balance),
        )

        self._notifications.send(
            payment.telegram_id,
            TOPUP_CONFIRMED.format(
                amount=format_amount(payment.amount),
                balance=format_amount(new_balance),
                currency=payment.currency,
            ),
        )
        if bonus is not None:
            self._ledger.announce_referral_bonus(bonus)

        return WebhookResult(
            outcome=WebhookOutcome.TOPPED_UP,
            transaction_id=payment.transaction_id,
            telegram_id=payment.telegram_id,
            balance=new_balance,
        )

    def _process_subscription(self, account: Account, payment: ValidatedPayment) -> WebhookResult:
        try:
            result = self._subscriptions.purchase(
                account,
                payment.duration,
                plan=self._default_plan,
                payment=PendingPayment(
                    transaction_id=payment.transaction_id,
                    amount=payment.amount,
                    category=PaymentCategory.SUBSCRIPTION,
                    currency=payment.currency,
                ),
            )
        except ProviderError as e:
            logger.error(
                "payment_provisioning_failed",
                transaction_id=payment.transaction_id,
                telegram_id=payment.telegram_id,
                status_code=e.status_code,
                error=str(e),
            )
            raise ProvisioningFailedError(
                f"Provisioning failed for payment {payment.transaction_id}: {e}", cause=e
            ) from e
        except ConstraintViolationError:
            if self._payments.exists(payment.transaction_id):
                logger.info("payment_duplicate_on_commit", transaction_id=payment.transaction_id)
                return WebhookResult(
                    outcome=WebhookOutcome.DUPLICATE,
                    transaction_id=payment.transaction_id,
                    telegram_id=payment.telegram_id,
                )
            raise

        logger.info(
            "subscription_paid",
            transaction_id=payment.transaction_id,
            telegram_id=payment.telegram_id,
            expires_at=result.expires_at.isoformat(),
            previous_state=result.previous_state.value,
        )
        self._subscriptions.announce(result)

        return WebhookResult(
            outcome=WebhookOutcome.PROVISIONED,
            transaction_id=payment.transaction_id,
            telegram_id=payment.telegram_id,
            expires_at=result.expires_at,
            access_url=result.access_url,
        )


# Global processor instance
_processor_instance: Optional[WebhookProcessor] = None
_processor_lock = threading.Lock()


def get_webhook_processor() -> WebhookProcessor:
    """Get global webhook processor instance (singleton)."""
    global _processor_instance
    if _processor_instance is None:
        with _processor_lock:
            if _processor_instance is None:
                from vpn_billing.config import get_config

                payments = get_config().payments
                _processor_instance = WebhookProcessor(
                    default_duration_days=payments.default_duration_days,
                    default_plan=payments.default_plan,
                )
    return _processor_instance


def reset_webhook_processor() -> None:
    global _processor_instance
    with _processor_lock:
        _processor_instance = None
