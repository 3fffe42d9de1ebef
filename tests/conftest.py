"""Shared fixtures: a throwaway SQLite store, a frozen clock, an in-memory
provisioning service and services wired to them."""

import os
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock

import pytest

ROOT = Path(__file__).resolve().parents[1]

# vpn_billing.main builds its app from the global configuration on import
os.environ.setdefault("CONFIG_PATH", str(ROOT / "config" / "settings.yaml"))

from vpn_billing.database import Database  # noqa: E402
from vpn_billing.models.provider import RemoteAccount  # noqa: E402
from vpn_billing.models.settings import PlanDefinition  # noqa: E402
from vpn_billing.models.webhook import WebhookNotification  # noqa: E402
from vpn_billing.repositories.account_store import AccountStore  # noqa: E402
from vpn_billing.repositories.dedup_cache import MemoryDedupCache  # noqa: E402
from vpn_billing.repositories.payment_store import PaymentStore  # noqa: E402
from vpn_billing.repositories.subscription_store import SubscriptionStore  # noqa: E402
from vpn_billing.services.account_locks import AccountLockTable  # noqa: E402
from vpn_billing.services.account_service import AccountService  # noqa: E402
from vpn_billing.services.ledger import Ledger  # noqa: E402
from vpn_billing.services.notification_gateway import NotificationGateway  # noqa: E402
from vpn_billing.services.provider_client import ProviderError  # noqa: E402
from vpn_billing.services.reconciliation_worker import ReconciliationWorker  # noqa: E402
from vpn_billing.services.subscription_manager import SubscriptionManager  # noqa: E402
from vpn_billing.services.time_controller import TimeController  # noqa: E402
from vpn_billing.services.webhook_processor import WebhookProcessor  # noqa: E402

START_TIME = datetime(2025, 1, 1, 12, 0, 0)


class FakeProvider:
    """In-memory provisioning service with the ProviderClient interface.

    Methods named in ``fail_on`` raise ProviderError. Every call is recorded
    in ``calls`` as (method, argument).
    """

    def __init__(self, clock: TimeController):
        self._clock = clock
        self.accounts: dict[str, RemoteAccount] = {}
        self.calls: list[tuple] = []
        self.fail_on: set[str] = set()

    def _record(self, method: str, argument) -> None:
        self.calls.append((method, argument))
        if method in self.fail_on:
            raise ProviderError(f"{method} failed", status_code=503, body="unavailable")

    def _get(self, remote_id: str) -> RemoteAccount:
        if remote_id not in self.accounts:
            raise ProviderError(f"unknown user {remote_id}", status_code=404)
        return self.accounts[remote_id]

    def methods_called(self) -> list[str]:
        return [method for method, _ in self.calls]

    def create(self, account_identity: int, duration: timedelta) -> RemoteAccount:
        self._record("create", account_identity)
        remote = RemoteAccount(
            remote_id=f"remote-{account_identity}",
            access_url=f"https://vpn.example.com/sub/{account_identity}",
            expires_at=self._clock.now() + duration,
            status="ACTIVE",
        )
        self.accounts[remote.remote_id] = remote
        return remote

    def fetch(self, remote_id: str) -> RemoteAccount:
        self._record("fetch", remote_id)
        return self._get(remote_id)

    def extend(self, remote_id: str, duration: timedelta) -> datetime:
        self._record("extend", remote_id)
        current = self._get(remote_id)
        new_expiry = max(self._clock.now(), current.expires_at) + duration
        self.accounts[remote_id] = current.model_copy(update={"expires_at": new_expiry})
        return new_expiry

    def disable(self, remote_id: str) -> bool:
        self._record("disable", remote_id)
        self.accounts[remote_id] = self._get(remote_id).model_copy(update={"status": "DISABLED"})
        return True

    def enable(self, remote_id: str) -> bool:
        self._record("enable", remote_id)
        self.accounts[remote_id] = self._get(remote_id).model_copy(update={"status": "ACTIVE"})
        return True

    def close(self) -> None:
        pass


@pytest.fixture
def database(tmp_path):
    """Fresh SQLite database with all tables."""
    db = Database(f"sqlite:///{tmp_path / 'billing.db'}")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def account_store(database):
    return AccountStore(database)


@pytest.fixture
def subscription_store(database):
    return SubscriptionStore(database)


@pytest.fixture
def payment_store(database):
    return PaymentStore(database)


@pytest.fixture
def clock():
    """Clock frozen at START_TIME."""
    return TimeController(frozen_at=START_TIME)


@pytest.fixture
def notifications():
    """Gateway mock that reports every message as delivered."""
    gateway = MagicMock(spec=NotificationGateway)
    gateway.send.return_value = True
    return gateway


@pytest.fixture
def provider(clock):
    return FakeProvider(clock)


@pytest.fixture
def locks():
    return AccountLockTable()


@pytest.fixture
def plans():
    return [
        PlanDefinition(
            id="standard",
            title="VPN 30 days",
            price=Decimal("255.00"),
            currency="RUB",
            duration_days=30,
        ),
    ]


@pytest.fixture
def ledger(account_store, payment_store, notifications):
    return Ledger(
        account_store=account_store,
        payment_store=payment_store,
        notification_gateway=notifications,
        referral_rate=Decimal("0.15"),
    )


@pytest.fixture
def account_service(account_store, locks):
    return AccountService(account_store=account_store, locks=locks, referral_prefix="ref_")


@pytest.fixture
def subscription_manager(
    database,
    account_store,
    subscription_store,
    payment_store,
    ledger,
    provider,
    notifications,
    locks,
    clock,
    plans,
):
    return SubscriptionManager(
        database=database,
        account_store=account_store,
        subscription_store=subscription_store,
        payment_store=payment_store,
        ledger=ledger,
        provider=provider,
        notifications=notifications,
        locks=locks,
        clock=clock,
        plans=plans,
    )


@pytest.fixture
def webhook_processor(
    database,
    account_service,
    ledger,
    subscription_manager,
    payment_store,
    notifications,
    locks,
):
    return WebhookProcessor(
        database=database,
        account_service=account_service,
        ledger=ledger,
        subscription_manager=subscription_manager,
        payment_store=payment_store,
        notifications=notifications,
        locks=locks,
        default_duration_days=30,
        default_plan="standard",
    )


@pytest.fixture
def dedup_cache():
    return MemoryDedupCache()


@pytest.fixture
def reconciliation_worker(subscription_store, subscription_manager, dedup_cache, notifications, clock):
    worker = ReconciliationWorker(
        subscription_store=subscription_store,
        subscription_manager=subscription_manager,
        cache=dedup_cache,
        notifications=notifications,
        clock=clock,
        period_seconds=3600,
        window_start_hours=23,
        window_end_hours=25,
        warning_ttl_hours=48,
    )
    yield worker
    worker.stop(timeout=5)


@pytest.fixture
def make_notification():
    """Factory for payment notification payloads."""

    def _make(
        transaction_id="pay-1",
        telegram_id="123456789",
        amount="300.00",
        event="payment.succeeded",
        payment_type=None,
        duration=None,
        as_model=True,
    ):
        metadata = {}
        if telegram_id is not None:
            metadata["telegram_id"] = telegram_id
        if payment_type is not None:
            metadata["type"] = payment_type
        if duration is not None:
            metadata["duration"] = duration

        payload = {
            "type": "notification",
            "event": event,
            "object": {
                "id": transaction_id,
                "status": "succeeded",
                "paid": True,
                "metadata": metadata,
            },
        }
        if amount is not None:
            payload["object"]["amount"] = {"value": amount, "currency": "RUB"}

        if as_model:
            return WebhookNotification.model_validate(payload)
        return payload

    return _make
