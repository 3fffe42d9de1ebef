"""Subscription store - SQL-backed subscription records.

Manages subscription rows, expiry updates, and the time-based queries the
reconciliation worker scans with.
"""

import threading
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from vpn_billing.database import Database, get_database
from vpn_billing.models.account import Account, AccountStatus
from vpn_billing.models.subscription import Subscription
from vpn_billing.utils.timestamps import utc_now


class SubscriptionNotFoundError(Exception):
    """Raised when a subscription is not found in the store."""

    pass


class SubscriptionStore:
    """Persistent storage for subscription records.

    One row per account (unique account_id). Supports lookup by account and
    remote id, and the expiry-window queries used by reconciliation.
    """

    def __init__(self, database: Optional[Database] = None):
        self._database = database if database is not None else get_database()

    def add(self, subscription: Subscription, session: Optional[Session] = None) -> Subscription:
        """Add a subscription.

        Args:
            subscription: Subscription to store

        Raises:
            ConstraintViolationError: If the account already has a subscription
                (raised on commit when no session is given)
        """
        with self._database.transaction(session) as s:
            s.add(subscription)
            s.flush()
            return subscription

    def find_by_account(
        self, account_id: int, session: Optional[Session] = None
    ) -> Optional[Subscription]:
        """Find the subscription owned by an account (returns None if not found)."""
        with self._database.transaction(session) as s:
            return s.execute(
                select(Subscription).where(Subscription.account_id == account_id)
            ).unique().scalar_one_or_none()

    def get_by_account(self, account_id: int, session: Optional[Session] = None) -> Subscription:
        """Get the subscription owned by an account.

        Raises:
            SubscriptionNotFoundError: If the account has no subscription
        """
        subscription = self.find_by_account(account_id, session=session)
        if subscription is None:
            raise SubscriptionNotFoundError(f"Subscription not found for account: {account_id}")
        return subscription

    def update_expiry(
        self,
        account_id: int,
        expires_at: datetime,
        access_url: Optional[str] = None,
        plan: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> Subscription:
        """Set a new expiry (and optionally access URL and plan).

        Raises:
            SubscriptionNotFoundError: If the account has no subscription
        """
        with self._database.transaction(session) as s:
            subscription = self.get_by_account(account_id, session=s)
            subscription.expires_at = expires_at
            if access_url:
                subscription.access_url = access_url
            if plan:
                subscription.plan = plan
            subscription.updated_at = utc_now()
            s.flush()
            return subscription

    def get_expiring_between(
        self, start: datetime, end: datetime, session: Optional[Session] = None
    ) -> List[Subscription]:
        """Get subscriptions whose expiry falls inside [start, end].

        Args:
            start: Window start (naive UTC)
            end: Window end (naive UTC)

        Returns:
            List of Subscription objects, oldest expiry first
        """
        with self._database.transaction(session) as s:
            return list(
                s.execute(
                    select(Subscription)
                    .where(Subscription.expires_at >= start, Subscription.expires_at <= end)
                    .order_by(Subscription.expires_at)
                ).unique().scalars()
            )

    def get_lapsed(self, now: datetime, session: Optional[Session] = None) -> List[Subscription]:
        """Get subscriptions due for revocation.

        Returns subscriptions that expired before ``now``, have a remote
        account, and whose account is not already marked expired.
        """
        with self._database.transaction(session) as s:
            return list(
                s.execute(
                    select(Subscription)
                    .join(Account, Account.id == Subscription.account_id)
                    .where(
                        Subscription.expires_at < now,
                        Subscription.remote_id != "",
                        Account.status != AccountStatus.EXPIRED,
                    )
                    .order_by(Subscription.expires_at)
                ).unique().scalars()
            )

    def get_all(self) -> List[Subscription]:
        with self._database.transaction() as s:
            return list(s.execute(select(Subscription)).unique().scalars())

    def count(self) -> int:
        return len(self.get_all())


# Global store instance
_store_instance: Optional[SubscriptionStore] = None
_store_lock = threading.Lock()


def get_subscription_store() -> SubscriptionStore:
    """Get global subscription store instance (singleton).

    Returns:
        SubscriptionStore instance
    """
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = SubscriptionStore()
    return _store_instance


def reset_subscription_store() -> None:
    """Forget the global subscription store."""
    global _store_instance
    with _store_lock:
        _store_instance = None
