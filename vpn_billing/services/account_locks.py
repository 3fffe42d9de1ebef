"""Per-account lock table.

Serializes mutations of one account (webhook processing, balance purchase,
revocation) without blocking work on other accounts.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, Optional

from vpn_billing.logging_config import get_logger

logger = get_logger(__name__)


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.holders = 0


class AccountLockTable:
    """Keyed re-entrant locks created on demand.

    An entry is dropped once its last holder (or waiter) releases it, so the
    table only grows with the number of accounts currently being worked on.
    """

    def __init__(self) -> None:
        self._entries: Dict[Hashable, _LockEntry] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: Hashable, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the lock for one account identity.

        Args:
            key: Account identity (Telegram chat id)
            timeout: Seconds to wait; None waits forever

        Raises:
            TimeoutError: If the lock could not be acquired in time
        """
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = _LockEntry()
                self._entries[key] = entry
            entry.holders += 1

        acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            self._release_entry(key, entry)
            logger.warning("account_lock_timeout", account=key, timeout=timeout)
            raise TimeoutError(f"Timed out waiting for account lock: {key}")

        try:
            yield
        finally:
            entry.lock.release()
            self._release_entry(key, entry)

    def _release_entry(self, key: Hashable, entry: _LockEntry) -> None:
        with self._guard:
            entry.holders -= 1
            if entry.holders == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def is_held(self, key: Hashable) -> bool:
        with self._guard:
            return key in self._entries

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


# Global lock table
_table_instance: Optional[AccountLockTable] = None
_table_lock = threading.Lock()


def get_account_locks() -> AccountLockTable:
    global _table_instance
    if _table_instance is None:
        with _table_lock:
            if _table_instance is None:
                _table_instance = AccountLockTable()
    return _table_instance


def reset_account_locks() -> None:
    global _table_instance
    with _table_lock:
        _table_instance = None
