"""Account onboarding - find-or-create on first contact and referral linking."""

import threading
from typing import Optional

from vpn_billing.logging_config import get_logger
from vpn_billing.models.account import Account
from vpn_billing.repositories.account_store import AccountStore, get_account_store
from vpn_billing.services.account_locks import AccountLockTable, get_account_locks

logger = get_logger(__name__)


class AccountService:
    """Registers accounts and links referrers.

    Args:
        account_store: Account persistence (global store if omitted)
        locks: Per-account lock table (global table if omitted)
        referral_prefix: Prefix of generated referral codes
    """

    def __init__(
        self,
        account_store: Optional[AccountStore] = None,
        locks: Optional[AccountLockTable] = None,
        referral_prefix: str = "ref_",
    ) -> None:
        self._accounts = account_store if account_store is not None else get_account_store()
        self._locks = locks if locks is not None else get_account_locks()
        self._referral_prefix = referral_prefix

    def get_or_create(self, telegram_id: int, username: Optional[str] = None) -> Account:
        """Find the account for an identity, creating it if needed."""
        account, created = self._accounts.get_or_create(
            telegram_id, username=username, referral_prefix=self._referral_prefix
        )
        if not created:
            account = self._accounts.ensure_referral_code(account, self._referral_prefix)
        return account

    def register(
        self,
        telegram_id: int,
        username: Optional[str] = None,
        referral_code: Optional[str] = None,
    ) -> Account:
        """Register an account on first contact.

        A referral code belonging to another account links that account as
        referrer, but only if no referrer is set yet. Self-referral and
        unknown codes are ignored.

        Args:
            telegram_id: Telegram chat id
            username: Telegram username
            referral_code: Code from the start link (e.g., ref_123)

        Returns:
            The (possibly new) account
        """
        with self._locks.hold(telegram_id):
            account = self.get_or_create(telegram_id, username=username)

            if referral_code and account.referrer_id is None:
                referrer = self._accounts.find_by_referral_code(referral_code.strip())
                if referrer is None:
                    logger.info("referral_code_unknown", telegram_id=telegram_id, code=referral_code)
                elif referrer.id == account.id:
                    logger.info("self_referral_ignored", telegram_id=telegram_id)
                elif self._accounts.set_referrer(account.id, referrer.id):
                    logger.info(
                        "referrer_linked",
                        telegram_id=telegram_id,
                        referrer_telegram_id=referrer.telegram_id,
                    )
                    account = self._accounts.get(account.id)

            return account


# Global service instance
_service_instance: Optional[AccountService] = None
_service_lock = threading.Lock()


def get_account_service() -> AccountService:
    global _service_instance
    if _service_instance is None:
        with _service_lock:
            if _service_instance is None:
                from vpn_billing.config import get_config

                _service_instance = AccountService(referral_prefix=get_config().referral.code_prefix)
    return _service_instance


def reset_account_service() -> None:
    global _service_instance
    with _service_lock:
        _service_instance = None
