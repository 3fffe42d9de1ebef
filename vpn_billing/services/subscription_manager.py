"""Subscription state manager - VPN access lifecycle for one account.

State machine:
- NONE → ACTIVE: provider create, new subscription row
- ACTIVE → ACTIVE: provider extend, local expiry moves forward
- ACTIVE → EXPIRED: provider disable after lapse, account marked expired
- EXPIRED → ACTIVE: provider extend plus explicit enable, account reactivated

Remote calls happen before any local write. When a purchase carries a
payment, the subscription change and the PaymentRecord commit together.
"""

import enum
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from vpn_billing.database import Database
from vpn_billing.errors import (
    AccountNotFoundError,
    InsufficientFundsError,
    PersistenceError,
    PlanNotFoundError,
)
from vpn_billing.logging_config import get_logger
from vpn_billing.models.account import Account, AccountStatus
from vpn_billing.models.payment import PaymentCategory, PaymentRecord
from vpn_billing.models.settings import PlanDefinition
from vpn_billing.models.subscription import Subscription, SubscriptionState
from vpn_billing.repositories.account_store import AccountStore, get_account_store
from vpn_billing.repositories.payment_store import PaymentStore, get_payment_store
from vpn_billing.repositories.subscription_store import (
    SubscriptionStore,
    get_subscription_store,
)
from vpn_billing.services.account_locks import AccountLockTable, get_account_locks
from vpn_billing.services.ledger import Ledger, get_ledger
from vpn_billing.services.notification_gateway import (
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_READY,
    NotificationGateway,
    format_expiry,
    get_notification_gateway,
)
from vpn_billing.services.provider_client import (
    ProviderClient,
    ProviderError,
    get_provider_client,
)
from vpn_billing.services.time_controller import TimeController, get_time_controller
from vpn_billing.state_logger import (
    log_account_status_change,
    log_expiry_change,
    log_subscription_state_change,
)

logger = get_logger(__name__)


class PurchaseStatus(str, enum.Enum):
    """Outcome of a balance purchase."""

    COMPLETED = "completed"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class PurchasePhase(str, enum.Enum):
    """Phase of the reserve → provision → commit sequence."""

    RESERVE = "reserve"  # Balance debit
    PROVISION = "provision"  # Remote create/extend
    COMMIT = "commit"  # Subscription + payment write


@dataclass
class PendingPayment:
    """Payment to record in the same transaction as the subscription change."""

    transaction_id: str
    amount: Decimal
    category: PaymentCategory = PaymentCategory.SUBSCRIPTION
    currency: str = "RUB"


@dataclass
class ProvisioningResult:
    """Result of a successful purchase."""

    account_id: int
    telegram_id: int
    remote_id: str
    access_url: str
    expires_at: datetime
    previous_state: SubscriptionState
    previous_expiry: Optional[datetime] = None
    payment: Optional[PaymentRecord] = None


@dataclass
class PurchaseOutcome:
    """Result of purchase_with_balance, carrying the failed phase if any."""

    status: PurchaseStatus
    plan: str
    price: Decimal
    failed_phase: Optional[PurchasePhase] = None
    balance: Optional[Decimal] = None
    expires_at: Optional[datetime] = None
    access_url: Optional[str] = None
    transaction_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == PurchaseStatus.COMPLETED


def derive_state(account: Account, subscription: Optional[Subscription]) -> SubscriptionState:
    """Derive lifecycle state from the subscription row and account status."""
    if subscription is None or not subscription.remote_id:
        return SubscriptionState.NONE
    if account.is_expired:
        return SubscriptionState.EXPIRED
    return SubscriptionState.ACTIVE


class SubscriptionManager:
    """Owns subscription transitions and the balance purchase flow.

    Args:
        database: Store used for multi-row transactions
        account_store: Account persistence
        subscription_store: Subscription persistence
        payment_store: Payment persistence
        ledger: Balance bookkeeping
        provider: Provisioning API client
        notifications: Message delivery
        locks: Per-account lock table
        clock: Time source
        plans: Plans sold for balance, keyed by id (configuration if omitted)
    """

    def __init__(
        self,
        database: Optional[Database] = None,
        account_store: Optional[AccountStore] = None,
        subscription_store: Optional[SubscriptionStore] = None,
        payment_store: Optional[PaymentStore] = None,
        ledger: Optional[Ledger] = None,
        provider: Optional[ProviderClient] = None,
        notifications: Optional[NotificationGateway] = None,
        locks: Optional[AccountLockTable] = None,
        clock: Optional[TimeController] = None,
        plans: Optional[Iterable[PlanDefinition]] = None,
    ) -> None:
        self._accounts = account_store if account_store is not None else get_account_store()
        self._database = database if database is not None else self._accounts.database
        self._subscriptions = subscription_store if subscription_store is not None else get_subscription_store()
        self._payments = payment_store if payment_store is not None else get_payment_store()
        self._ledger = ledger if ledger is not None else get_ledger()
        self._provider = provider if provider is not None else get_provider_client()
        self._notifications = notifications if notifications is not None else get_notification_gateway()
        self._locks = locks if locks is not None else get_account_locks()
        self._clock = clock if clock is not None else get_time_controller()

        if plans is None:
            from vpn_billing.config import get_config

            plans = get_config().settings.plans
        self._plans = {plan.id: plan for plan in plans}

    def get_plan(self, plan_id: str) -> PlanDefinition:
        """Get plan definition by ID.

        Raises:
            PlanNotFoundError: If the plan is not configured
        """
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan not found: {plan_id}")
        return plan

    def state_of(self, account: Account) -> SubscriptionState:
        """Current lifecycle state of an account's subscription."""
        fresh = self._accounts.get(account.id)
        subscription = self._subscriptions.find_by_account(account.id)
        return derive_state(fresh, subscription)

    def purchase(
        self,
        account: Account,
        duration: timedelta,
        plan: str = "standard",
        payment: Optional[PendingPayment] = None,
    ) -> ProvisioningResult:
        """Provision or extend access for an account.

        Args:
            account: Paying account
            duration: Access period bought
            plan: Plan label stored on the subscription
            payment: Payment to record together with the subscription change

        Returns:
            ProvisioningResult with the new expiry and access URL

        Raises:
            ProviderError: If the remote call fails (nothing written locally)
            PersistenceError: If the local commit fails
        """
        if duration <= timedelta(0):
            raise ValueError(f"Duration must be positive, got: {duration}")

        account = self._accounts.get(account.id)
        subscription = self._subscriptions.find_by_account(account.id)
        state = derive_state(account, subscription)
        previous_expiry = subscription.expires_at if subscription is not None else None

        if state == SubscriptionState.NONE:
            remote = self._provider.create(account.telegram_id, duration)
            remote_id = remote.remote_id
            access_url = remote.access_url
            new_expiry = remote.expires_at
        else:
            remote_id = subscription.remote_id
            # Enable first: a failed enable must leave the remote expiry untouched
            if state == SubscriptionState.EXPIRED:
                self._provider.enable(remote_id)
            new_expiry = self._provider.extend(remote_id, duration)
            if previous_expiry is not None and new_expiry < previous_expiry:
                new_expiry = previous_expiry
            access_url = subscription.access_url or self._backfill_access_url(account, remote_id)

        with self._database.transaction() as s:
            if subscription is None:
                self._subscriptions.add(
                    Subscription(
                        account_id=account.id,
                        remote_id=remote_id,
                        access_url=access_url,
                        expires_at=new_expiry,
                        plan=plan,
                    ),
                    session=s,
                )
            else:
                row = self._subscriptions.get_by_account(account.id, session=s)
                row.remote_id = remote_id
                self._subscriptions.update_expiry(
                    account.id, new_expiry, access_url=access_url, plan=plan, session=s
                )

            if account.status == AccountStatus.EXPIRED:
                self._accounts.set_status(account.id, AccountStatus.ACTIVE, session=s)

            record = None
            if payment is not None:
                record = self._payments.add(
                    account_id=account.id,
                    amount=payment.amount,
                    category=payment.category,
                    transaction_id=payment.transaction_id,
                    currency=payment.currency,
                    session=s,
                )

        log_expiry_change(
            account.telegram_id,
            remote_id,
            previous_expiry,
            new_expiry,
            reason="created" if state == SubscriptionState.NONE else "extended",
            plan=plan,
        )
        if state != SubscriptionState.ACTIVE:
            log_subscription_state_change(
                account.telegram_id,
                remote_id,
                state.value,
                SubscriptionState.ACTIVE.value,
                reason="purchase",
            )
        if account.status == AccountStatus.EXPIRED:
            log_account_status_change(
                account.telegram_id,
                AccountStatus.EXPIRED.value,
                AccountStatus.ACTIVE.value,
                reason="repurchase",
            )

        return ProvisioningResult(
            account_id=account.id,
            telegram_id=account.telegram_id,
            remote_id=remote_id,
            access_url=access_url,
            expires_at=new_expiry,
            previous_state=state,
            previous_expiry=previous_expiry,
            payment=record,
        )

    def _backfill_access_url(self, account: Account, remote_id: str) -> str:
        """Fetch a missing access URL from the provider (legacy rows)."""
        try:
            access_url = self._provider.fetch(remote_id).access_url
        except ProviderError as e:
            logger.warning(
                "access_url_backfill_failed",
                telegram_id=account.telegram_id,
                remote_id=remote_id,
                error=str(e),
            )
            return ""
        if access_url:
            logger.info("access_url_backfilled", telegram_id=account.telegram_id)
        return access_url

    def announce(self, result: ProvisioningResult) -> bool:
        """Send the access-URL message for a committed purchase."""
        return self._notifications.send(
            result.telegram_id,
            SUBSCRIPTION_READY.format(
                expires=format_expiry(result.expires_at),
                access_url=result.access_url or "(link is being prepared, ask support if it does not arrive)",
            ),
        )

    def revoke(self, account: Account, now: Optional[datetime] = None) -> bool:
        """Disable access for a lapsed subscription.

        Only acts when the subscription expired before ``now`` and the
        account is not already expired. The account is marked expired only
        after the provider confirms the disable.

        Returns:
            True if access was revoked, False if nothing was due

        Raises:
            ProviderError: If disable fails (account stays active)
        """
        with self._locks.hold(account.telegram_id):
            account = self._accounts.get(account.id)
            subscription = self._subscriptions.find_by_account(account.id)
            now = now or self._clock.now()

            if subscription is None or not subscription.remote_id:
                return False
            if account.is_expired or not subscription.is_lapsed(now):
                return False

            self._provider.disable(subscription.remote_id)
            self._accounts.set_status(account.id, AccountStatus.EXPIRED)

            log_subscription_state_change(
                account.telegram_id,
                subscription.remote_id,
                SubscriptionState.ACTIVE.value,
                SubscriptionState.EXPIRED.value,
                reason="lapsed",
                expired_at=subscription.expires_at.isoformat(),
            )
            log_account_status_change(
                account.telegram_id,
                AccountStatus.ACTIVE.value,
                AccountStatus.EXPIRED.value,
                reason="lapsed",
            )

        self._notifications.send(account.telegram_id, SUBSCRIPTION_EXPIRED)
        return True

    def purchase_with_balance(
        self,
        telegram_id: int,
        plan_id: str = "standard",
        idempotency_key: Optional[str] = None,
    ) -> PurchaseOutcome:
        """Buy a plan with the internal balance.

        Runs reserve (debit) → provision (create/extend) → commit
        (subscription + PaymentRecord), releasing the reserved amount if
        provision or commit fails.

        Args:
            telegram_id: Buyer identity
            plan_id: Plan to buy
            idempotency_key: Client key; a repeated key returns DUPLICATE

        Returns:
            PurchaseOutcome

        Raises:
            AccountNotFoundError: If the buyer has no account
            PlanNotFoundError: If the plan is not configured
            PersistenceError: If the release after a failure cannot be written
        """
        plan = self.get_plan(plan_id)
        price = plan.price
        transaction_id = f"balance:{idempotency_key or uuid.uuid4().hex}"

        with self._locks.hold(telegram_id):
            account = self._accounts.find_by_telegram_id(telegram_id)
            if account is None:
                raise AccountNotFoundError(f"Account not found: telegram_id={telegram_id}")

            outcome = PurchaseOutcome(
                status=PurchaseStatus.COMPLETED,
                plan=plan.id,
                price=price,
                transaction_id=transaction_id,
            )

            if idempotency_key and self._payments.exists(transaction_id):
                subscription = self._subscriptions.find_by_account(account.id)
                outcome.status = PurchaseStatus.DUPLICATE
                outcome.balance = self._ledger.balance(account.id)
                if subscription is not None:
                    outcome.expires_at = subscription.expires_at
                    outcome.access_url = subscription.access_url
                logger.info("balance_purchase_duplicate", telegram_id=telegram_id, transaction_id=transaction_id)
                return outcome

            # Reserve
            try:
                balance_after = self._ledger.debit(account.id, price, reason="purchase_reserve")
            except InsufficientFundsError as e:
                outcome.status = PurchaseStatus.INSUFFICIENT_FUNDS
                outcome.failed_phase = PurchasePhase.RESERVE
                outcome.balance = e.balance
                outcome.error = str(e)
                logger.info(
                    "balance_purchase_insufficient_funds",
                    telegram_id=telegram_id,
                    plan=plan.id,
                    balance=str(e.balance),
                    price=str(price),
                )
                return outcome
            except PersistenceError as e:
                outcome.status = PurchaseStatus.FAILED
                outcome.failed_phase = PurchasePhase.RESERVE
                outcome.error = str(e)
                logger.error("balance_purchase_reserve_failed", telegram_id=telegram_id, error=str(e))
                return outcome

            # Provision + commit
            try:
                result = self.purchase(
                    account,
                    timedelta(days=plan.duration_days),
                    plan=plan.id,
                    payment=PendingPayment(
                        transaction_id=transaction_id,
                        amount=price,
                        category=PaymentCategory.SUBSCRIPTION,
                        currency=plan.currency,
                    ),
                )
            except ProviderError as e:
                outcome.failed_phase = PurchasePhase.PROVISION
                outcome.error = str(e)
            except PersistenceError as e:
                outcome.failed_phase = PurchasePhase.COMMIT
                outcome.error = str(e)

            if outcome.failed_phase is not None:
                outcome.status = PurchaseStatus.FAILED
                outcome.balance = self._release(account, price, outcome)
                return outcome

        outcome.balance = balance_after
        outcome.expires_at = result.expires_at
        outcome.access_url = result.access_url
        logger.info(
            "balance_purchase_completed",
            telegram_id=telegram_id,
            plan=plan.id,
            price=str(price),
            balance=str(balance_after),
            expires_at=result.expires_at.isoformat(),
        )
        self.announce(result)
        return outcome

    def _release(self, account: Account, amount: Decimal, outcome: PurchaseOutcome) -> Decimal:
        """Give back a reserved amount after a failed provision or commit."""
        logger.warning(
            "balance_purchase_failed",
            telegram_id=account.telegram_id,
            phase=outcome.failed_phase.value,
            error=outcome.error,
        )
        try:
            return self._ledger.credit(account.id, amount, reason="purchase_release")
        except PersistenceError as e:
            logger.error(
                "balance_purchase_release_failed",
                telegram_id=account.telegram_id,
                amount=str(amount),
                transaction_id=outcome.transaction_id,
                error=str(e),
            )
            raise


# Global manager instance
_manager_instance: Optional[SubscriptionManager] = None
_manager_lock = threading.Lock()


def get_subscription_manager() -> SubscriptionManager:
    """Get global subscription manager instance (singleton)."""
    global _manager_instance
    if _manager_instance is None:
        with _manager_lock:
            if _manager_instance is None:
                _manager_instance = SubscriptionManager()
    return _manager_instance


def reset_subscription_manager() -> None:
    global _manager_instance
    with _manager_lock:
        _manager_instance = None
