"""Account store - SQL-backed account records and balance mutations.

Balance changes are single conditional UPDATE statements, so concurrent
credits and debits never lose writes and the balance never goes negative.
"""

import threading
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from vpn_billing.database import Database, get_database
from vpn_billing.errors import AccountNotFoundError, ConstraintViolationError
from vpn_billing.logging_config import get_logger
from vpn_billing.models.account import Account, AccountStatus
from vpn_billing.utils.timestamps import utc_now

logger = get_logger(__name__)


class AccountStore:
    """Persistent storage for accounts.

    Every method accepts an optional session. When given, the call joins the
    caller's transaction; otherwise it runs in its own.
    """

    def __init__(self, database: Optional[Database] = None):
        self._database = database if database is not None else get_database()

    @property
    def database(self) -> Database:
        return self._database

    def get(self, account_id: int, session: Optional[Session] = None) -> Account:
        """Get account by primary key.

        Raises:
            AccountNotFoundError: If no such account exists
        """
        with self._database.transaction(session) as s:
            account = s.get(Account, account_id)
            if account is None:
                raise AccountNotFoundError(f"Account not found: id={account_id}")
            return account

    def find_by_telegram_id(
        self, telegram_id: int, session: Optional[Session] = None
    ) -> Optional[Account]:
        """Find account by Telegram chat id (returns None if not found)."""
        with self._database.transaction(session) as s:
            return s.execute(
                select(Account).where(Account.telegram_id == telegram_id)
            ).unique().scalar_one_or_none()

    def get_by_telegram_id(self, telegram_id: int, session: Optional[Session] = None) -> Account:
        """Get account by Telegram chat id.

        Raises:
            AccountNotFoundError: If no such account exists
        """
        account = self.find_by_telegram_id(telegram_id, session=session)
        if account is None:
            raise AccountNotFoundError(f"Account not found: telegram_id={telegram_id}")
        return account

    def find_by_referral_code(
        self, referral_code: str, session: Optional[Session] = None
    ) -> Optional[Account]:
        with self._database.transaction(session) as s:
            return s.execute(
                select(Account).where(Account.referral_code == referral_code)
            ).unique().scalar_one_or_none()

    def get_or_create(
        self,
        telegram_id: int,
        username: Optional[str] = None,
        referral_prefix: str = "ref_",
    ) -> tuple[Account, bool]:
        """Find the account for a Telegram id, creating it on first contact.

        Runs in its own transaction. A concurrent insert of the same id is
        resolved by re-reading the winner's row.

        Args:
            telegram_id: Telegram chat id
            username: Telegram username, stored on creation
            referral_prefix: Prefix of the generated referral code

        Returns:
            Tuple of (account, created)
        """
        existing = self.find_by_telegram_id(telegram_id)
        if existing is not None:
            return existing, False

        try:
            with self._database.transaction() as s:
                account = Account(
                    telegram_id=telegram_id,
                    username=username,
                    balance=Decimal("0.00"),
                    referral_code=f"{referral_prefix}{telegram_id}",
                    status=AccountStatus.ACTIVE,
                )
                s.add(account)
        except ConstraintViolationError:
            logger.info("account_create_race_resolved", telegram_id=telegram_id)
            return self.get_by_telegram_id(telegram_id), False

        logger.info("account_created", telegram_id=telegram_id, account_id=account.id)
        return self.get(account.id), True

    def ensure_referral_code(self, account: Account, referral_prefix: str = "ref_") -> Account:
        """Backfill a missing referral code."""
        if account.referral_code:
            return account
        code = f"{referral_prefix}{account.telegram_id}"
        with self._database.transaction() as s:
            s.execute(
                update(Account)
                .where(Account.id == account.id, Account.referral_code.is_(None))
                .values(referral_code=code, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
        return self.get(account.id)

    def set_referrer(
        self, account_id: int, referrer_id: int, session: Optional[Session] = None
    ) -> bool:
        """Link a referrer unless one is already set.

        Returns:
            True if the referrer was linked, False if one was already present
        """
        with self._database.transaction(session) as s:
            result = s.execute(
                update(Account)
                .where(Account.id == account_id, Account.referrer_id.is_(None))
                .values(referrer_id=referrer_id, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def set_status(
        self, account_id: int, status: AccountStatus, session: Optional[Session] = None
    ) -> None:
        with self._database.transaction(session) as s:
            result = s.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(status=status, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise AccountNotFoundError(f"Account not found: id={account_id}")

    def get_balance(self, account_id: int, session: Optional[Session] = None) -> Decimal:
        with self._database.transaction(session) as s:
            balance = s.execute(
                select(Account.balance).where(Account.id == account_id)
            ).scalar_one_or_none()
            if balance is None:
                raise AccountNotFoundError(f"Account not found: id={account_id}")
            return Decimal(balance)

    def add_to_balance(
        self, account_id: int, amount: Decimal, session: Optional[Session] = None
    ) -> Decimal:
        """Atomically add to the balance.

        Returns:
            Balance after the update

        Raises:
            AccountNotFoundError: If no such account exists
        """
        with self._database.transaction(session) as s:
            result = s.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(balance=Account.balance + amount, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise AccountNotFoundError(f"Account not found: id={account_id}")
            return self.get_balance(account_id, session=s)

    def subtract_from_balance(
        self, account_id: int, amount: Decimal, session: Optional[Session] = None
    ) -> Optional[Decimal]:
        """Atomically subtract from the balance if it covers the amount.

        Returns:
            Balance after the update, or None if funds were insufficient
        """
        with self._database.transaction(session) as s:
            result = s.execute(
                update(Account)
                .where(Account.id == account_id, Account.balance >= amount)
                .values(balance=Account.balance - amount, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            return self.get_balance(account_id, session=s)

    def count_invited(self, referrer_id: int) -> int:
        """Count accounts that joined with this account as referrer."""
        with self._database.transaction() as s:
            return len(s.execute(select(Account.id).where(Account.referrer_id == referrer_id)).all())

    def count(self) -> int:
        with self._database.transaction() as s:
            return len(s.execute(select(Account.id)).all())


# Global store instance
_store_instance: Optional[AccountStore] = None
_store_lock = threading.Lock()


def get_account_store() -> AccountStore:
    """Get global account store instance (singleton).

    Returns:
        AccountStore instance
    """
    global _store_instance
    if _store_instance is None:
        with _store_lock:
            if _store_instance is None:
                _store_instance = AccountStore()
    return _store_instance


def reset_account_store() -> None:
    """Forget the global account store."""
    global _store_instance
    with _store_lock:
        _store_instance = None
