"""Reconciliation worker - periodic expiry warnings and revocation.

Each pass:
- Warns users whose access expires in roughly 24 hours, at most once per
  dedup TTL (flag set only after the warning is delivered)
- Revokes subscriptions that have lapsed but whose account is not yet
  marked expired

Items are processed independently; one failure never aborts the batch, and
anything that failed is picked up again by the next pass.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from vpn_billing.logging_config import get_logger, log_context
from vpn_billing.repositories.dedup_cache import DedupCache, get_dedup_cache
from vpn_billing.repositories.subscription_store import (
    SubscriptionStore,
    get_subscription_store,
)
from vpn_billing.services.notification_gateway import (
    EXPIRY_WARNING,
    NotificationGateway,
    get_notification_gateway,
)
from vpn_billing.services.subscription_manager import (
    SubscriptionManager,
    get_subscription_manager,
)
from vpn_billing.services.time_controller import TimeController, get_time_controller

logger = get_logger(__name__)

WARNING_KEY_PREFIX = "notified_24h:"


def warning_key(telegram_id: int) -> str:
    return f"{WARNING_KEY_PREFIX}{telegram_id}"


@dataclass
class ReconciliationReport:
    """Counters for one pass."""

    ran_at: datetime
    warned: int = 0
    revoked: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


class ReconciliationWorker:
    """Runs reconciliation passes on a fixed period in a daemon thread.

    Args:
        subscription_store: Source of subscriptions to scan
        subscription_manager: Performs revocation
        cache: Dedup flags for warnings
        notifications: Message delivery
        clock: Time source
        period_seconds: Seconds between passes
        window_start_hours: Warn when expiry is at least now + this
        window_end_hours: Warn when expiry is at most now + this
        warning_ttl_hours: Lifetime of the "already warned" flag
    """

    def __init__(
        self,
        subscription_store: Optional[SubscriptionStore] = None,
        subscription_manager: Optional[SubscriptionManager] = None,
        cache: Optional[DedupCache] = None,
        notifications: Optional[NotificationGateway] = None,
        clock: Optional[TimeController] = None,
        period_seconds: float = 3600,
        window_start_hours: int = 23,
        window_end_hours: int = 25,
        warning_ttl_hours: int = 48,
    ) -> None:
        if window_end_hours < window_start_hours:
            raise ValueError("Warning window end must not precede its start")

        self._subscriptions = subscription_store if subscription_store is not None else get_subscription_store()
        self._manager = subscription_manager if subscription_manager is not None else get_subscription_manager()
        self._cache = cache if cache is not None else get_dedup_cache()
        self._notifications = notifications if notifications is not None else get_notification_gateway()
        self._clock = clock if clock is not None else get_time_controller()
        self._period_seconds = period_seconds
        self._window_start = timedelta(hours=window_start_hours)
        self._window_end = timedelta(hours=window_end_hours)
        self._warning_ttl_seconds = int(timedelta(hours=warning_ttl_hours).total_seconds())

        self._stop_event = threading.Event()
        self._pass_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[ReconciliationReport] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the worker thread. The first pass runs immediately."""
        if self.is_running:
            logger.warning("reconciliation_worker_already_running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="reconciliation-worker", daemon=True
        )
        self._thread.start()
        logger.info("reconciliation_worker_started", period_seconds=self._period_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the worker to stop and wait for it.

        An in-flight pass is allowed to finish.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("reconciliation_worker_stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error("reconciliation_pass_failed", error=str(e), exc_info=True)
            # Missed ticks are not caught up; the next pass waits a full period
            if self._stop_event.wait(self._period_seconds):
                break

    def run_once(self, now: Optional[datetime] = None) -> ReconciliationReport:
        """Run one reconciliation pass.

        Args:
            now: Reference time (defaults to the clock)

        Returns:
            ReconciliationReport with per-pass counters
        """
        with self._pass_lock:
            now = now or self._clock.now()
            report = ReconciliationReport(ran_at=now)

            with log_context(reconciliation_pass=now.isoformat()):
                self._send_expiry_warnings(now, report)
                self._revoke_lapsed(now, report)

            logger.info(
                "reconciliation_pass_completed",
                ran_at=now.isoformat(),
                warned=report.warned,
                revoked=report.revoked,
                failed=report.failed,
                skipped=report.skipped,
            )
            self.last_report = report
            return report

    def _send_expiry_warnings(self, now: datetime, report: ReconciliationReport) -> None:
        try:
            due = self._subscriptions.get_expiring_between(now + self._window_start, now + self._window_end)
        except Exception as e:
            logger.error("expiry_warning_scan_failed", error=str(e))
            report.failed += 1
            report.errors.append(f"warning scan: {e}")
            return

        for subscription in due:
            telegram_id = subscription.account.telegram_id
            key = warning_key(telegram_id)
            try:
                if self._cache.exists(key):
                    report.skipped += 1
                    continue

                if not self._notifications.send(telegram_id, EXPIRY_WARNING):
                    logger.warning("expiry_warning_undelivered", telegram_id=telegram_id)
                    report.skipped += 1
                    continue

                self._cache.set(key, self._warning_ttl_seconds)
                report.warned += 1
                logger.info(
                    "expiry_warning_sent",
                    telegram_id=telegram_id,
                    expires_at=subscription.expires_at.isoformat(),
                )
            except Exception as e:
                logger.error("expiry_warning_failed", telegram_id=telegram_id, error=str(e))
                report.failed += 1
                report.errors.append(f"warning {telegram_id}: {e}")

    def _revoke_lapsed(self, now: datetime, report: ReconciliationReport) -> None:
        try:
            lapsed = self._subscriptions.get_lapsed(now)
        except Exception as e:
            logger.error("expiration_scan_failed", error=str(e))
            report.failed += 1
            report.errors.append(f"expiration scan: {e}")
            return

        for subscription in lapsed:
            account = subscription.account
            try:
                if self._manager.revoke(account, now=now):
                    report.revoked += 1
                else:
                    report.skipped += 1
            except Exception as e:
                logger.error(
                    "subscription_revoke_failed",
                    telegram_id=account.telegram_id,
                    remote_id=subscription.remote_id,
                    error=str(e),
                )
                report.failed += 1
                report.errors.append(f"revoke {account.telegram_id}: {e}")


# Global worker instance
_worker_instance: Optional[ReconciliationWorker] = None
_worker_lock = threading.Lock()


def get_reconciliation_worker() -> ReconciliationWorker:
    """Get global reconciliation worker (singleton) built from configuration."""
    global _worker_instance
    if _worker_instance is None:
        with _worker_lock:
            if _worker_instance is None:
                from vpn_billing.config import get_config

                settings = get_config().reconciliation
                _worker_instance = ReconciliationWorker(
                    period_seconds=settings.period_seconds,
                    window_start_hours=settings.warning_window_start_hours,
                    window_end_hours=settings.warning_window_end_hours,
                    warning_ttl_hours=settings.warning_ttl_hours,
                )
    return _worker_instance


def reset_reconciliation_worker() -> None:
    """Stop and forget the global worker."""
    global _worker_instance
    with _worker_lock:
        if _worker_instance is not None:
            _worker_instance.stop()
        _worker_instance = None
