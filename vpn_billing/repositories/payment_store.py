"""Payment store - processed payments and referral payouts.

A PaymentRecord exists exactly once per processed provider transaction; its
presence is the idempotency marker for webhook redelivery.
"""

import threading
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from vpn_billing.database import Database, get_database
from vpn_billing.models.payment import PaymentCategory, PaymentRecord, ReferralTransaction


class PaymentStore:
    """Persistent storage for payment records and referral transactions."""

    def __init__(self, database: Optional[Database] = None):
        self._database = database if database is not None else get_database()

    @property
    def database(self) -> Database:
        return self._database

    def exists(self, transaction_id: str, session: Optional[Session] = None) -> bool:
        """Check if a provider transaction was already processed.

        Args:
            transaction_id: Provider transaction id

        Returns:
            True if a PaymentRecord exists for it
        """
        return self.find_by_transaction_id(transaction_id, session=session) is not None

    def find_by_transaction_id(
        self, transaction_id: str, session: Optional[Session] = None
    ) -> Optional[PaymentRecord]:
        with self._database.transaction(session) as s:
            return s.execute(
                select(PaymentRecord).where(
                    PaymentRecord.provider_transaction_id == transaction_id
                )
            ).scalar_one_or_none()

    def add(
        self,
        account_id: int,
        amount: Decimal,
        category: PaymentCategory,
        transaction_id: str,
        currency: str = "RUB",
        session: Optional[Session] = None,
    ) -> PaymentRecord:
        """Record a processed payment.

        Raises:
            ConstraintViolationError: If the transaction id is already recorded
                (raised on commit when no session is given)
        """
        with self._database.transaction(session) as s:
            record = PaymentRecord(
                account_id=account_id,
                amount=amount,
                currency=currency,
                status="succeeded",
                category=category,
                provider_transaction_id=transaction_id,
            )
            s.add(record)
            s.flush()
            return record

    def get_by_account(self, account_id: int) -> List[PaymentRecord]:
        with self._database.transaction() as s:
            return list(
                s.execute(
                    select(PaymentRecord)
                    .where(PaymentRecord.account_id == account_id)
                    .order_by(PaymentRecord.id)
                ).scalars()
            )

    def add_referral(
        self,
        referrer_id: int,
        invited_id: int,
        amount: Decimal,
        session: Optional[Session] = None,
    ) -> ReferralTransaction:
        with self._database.transaction(session) as s:
            transaction = ReferralTransaction(
                referrer_id=referrer_id, invited_id=invited_id, amount=amount
            )
            s.add(transaction)
            s.flush()
            return transaction

    def get_referrals_for(self, referrer_id: int) -> List[ReferralTransaction]:
        with self._database.transaction() as s:
            return list(
                s.execute(
                    select(ReferralTransaction)
                    .where(ReferralTransaction.referrer_id == referrer_id)
                    .order_by(ReferralTransaction.id)
                ).scalars()
            )


# Global store instance
_store_instance: Optional[PaymentStore] = None
_store_lock = threading.Lock()


def get_payment_store() -> PaymentStore:
    """Get global payment store instance (singleton).

    Returns:
        PaymentStore instance
    """
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = PaymentStore()
    return _store_instance


def reset_payment_store() -> None:
    """Forget the global payment store."""
    global _store_instance
    with _store_lock:
        _store_instance = None
