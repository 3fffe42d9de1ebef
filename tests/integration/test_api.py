"""HTTP tests for the webhook, account, purchase and control endpoints."""

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import yaml
from fastapi.testclient import TestClient

from vpn_billing.config import Config
from vpn_billing.main import create_app
from vpn_billing.repositories.account_store import get_account_store
from vpn_billing.repositories.dedup_cache import MemoryDedupCache
from vpn_billing.repositories.payment_store import get_payment_store
from vpn_billing.services.account_service import get_account_service
from vpn_billing.services.reconciliation_worker import get_reconciliation_worker
from vpn_billing.services.subscription_manager import get_subscription_manager
from vpn_billing.services.webhook_processor import get_webhook_processor

WEBHOOK_PATH = "/yookassa-webhook"
TELEGRAM_ID = 123456789


def write_settings(path, allowed_networks=(), trust_forwarded_for=False):
    settings = {
        "database": {"url": "sqlite://", "create_tables": False},
        "payments": {
            "webhook_path": WEBHOOK_PATH,
            "allowed_networks": list(allowed_networks),
            "trust_forwarded_for": trust_forwarded_for,
        },
        "reconciliation": {"enabled": False},
        "plans": [{"id": "standard", "title": "VPN 30 days", "price": "255.00", "duration_days": 30}],
    }
    path.write_text(yaml.safe_dump(settings), encoding="utf-8")
    return Config(str(path))


def wire(
    app, webhook_processor, account_service, account_store, payment_store, subscription_manager, reconciliation_worker
):
    app.dependency_overrides[get_webhook_processor] = lambda: webhook_processor
    app.dependency_overrides[get_account_service] = lambda: account_service
    app.dependency_overrides[get_account_store] = lambda: account_store
    app.dependency_overrides[get_payment_store] = lambda: payment_store
    app.dependency_overrides[get_subscription_manager] = lambda: subscription_manager
    app.dependency_overrides[get_reconciliation_worker] = lambda: reconciliation_worker


@pytest.fixture
def client(
    tmp_path,
    webhook_processor,
    account_service,
    account_store,
    payment_store,
    subscription_manager,
    reconciliation_worker,
):
    """Client for an app that accepts webhooks from any source."""
    app = create_app(write_settings(tmp_path / "settings.yaml"))
    wire(
        app,
        webhook_processor,
        account_service,
        account_store,
        payment_store,
        subscription_manager,
        reconciliation_worker,
    )
    return TestClient(app)


@pytest.fixture
def restricted_client(
    tmp_path,
    webhook_processor,
    account_service,
    account_store,
    payment_store,
    subscription_manager,
    reconciliation_worker,
):
    """Client for an app that only accepts webhooks from the provider network."""
    config = write_settings(
        tmp_path / "restricted.yaml",
        allowed_networks=["185.71.76.0/27", "2a02:5180::/32"],
        trust_forwarded_for=True,
    )
    app = create_app(config)
    wire(
        app,
        webhook_processor,
        account_service,
        account_store,
        payment_store,
        subscription_manager,
        reconciliation_worker,
    )
    return TestClient(app)


@pytest.fixture
def topup(client, make_notification):
    """Deliver a balance top-up notification."""

    def _topup(amount="300.00", transaction_id="pay-1", telegram_id=str(TELEGRAM_ID)):
        payload = make_notification(
            transaction_id=transaction_id,
            telegram_id=telegram_id,
            amount=amount,
            payment_type="balance_topup",
            as_model=False,
        )
        return client.post(WEBHOOK_PATH, json=payload)

    return _topup


class TestServiceEndpoints:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "vpn-billing-engine"

    def test_request_id_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-abc"})
        assert response.headers["X-Request-ID"] == "req-abc"

    def test_request_id_generated(self, client):
        assert client.get("/").headers.get("X-Request-ID")

    def test_health(self, client, database):
        with patch("vpn_billing.database.get_database", return_value=database), patch(
            "vpn_billing.repositories.dedup_cache.get_dedup_cache", return_value=MemoryDedupCache()
        ):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["cache"] == "memory (connected)"

    def test_health_degraded(self, client):
        broken = MagicMock()
        broken.ping.return_value = False
        with patch("vpn_billing.database.get_database", return_value=broken), patch(
            "vpn_billing.repositories.dedup_cache.get_dedup_cache", return_value=MemoryDedupCache()
        ):
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["database"] == "unavailable"


class TestWebhook:
    def test_topup(self, topup, account_store):
        response = topup()

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "outcome": "topped_up"}
        account = account_store.get_by_telegram_id(TELEGRAM_ID)
        assert account.balance == Decimal("300.00")

    def test_redelivery_acknowledged(self, topup, account_store):
        topup()
        response = topup()

        assert response.status_code == 200
        assert response.json()["outcome"] == "duplicate"
        assert account_store.get_by_telegram_id(TELEGRAM_ID).balance == Decimal("300.00")

    def test_other_event_ignored(self, client, make_notification):
        payload = make_notification(event="payment.canceled", as_model=False)
        response = client.post(WEBHOOK_PATH, json=payload)

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    def test_subscription_payment(self, client, make_notification, subscription_store, account_store):
        payload = make_notification(amount="255.00", duration="30d", as_model=False)
        response = client.post(WEBHOOK_PATH, json=payload)

        assert response.status_code == 200
        assert response.json()["outcome"] == "provisioned"
        account = account_store.get_by_telegram_id(TELEGRAM_ID)
        assert subscription_store.find_by_account(account.id) is not None

    def test_malformed_json(self, client):
        response = client.post(
            WEBHOOK_PATH, content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    def test_invalid_payload_shape(self, client):
        response = client.post(WEBHOOK_PATH, json={"type": "notification"})
        assert response.status_code == 400

    def test_missing_identity(self, client, make_notification, account_store):
        payload = make_notification(telegram_id=None, payment_type="balance_topup", as_model=False)
        response = client.post(WEBHOOK_PATH, json=payload)

        assert response.status_code == 400
        assert account_store.count() == 0

    def test_get_not_allowed(self, client):
        assert client.get(WEBHOOK_PATH).status_code == 405

    def test_provider_failure_returns_500_and_redelivery_succeeds(
        self, client, make_notification, provider, payment_store
    ):
        payload = make_notification(amount="255.00", as_model=False)
        provider.fail_on.add("create")

        failed = client.post(WEBHOOK_PATH, json=payload)

        assert failed.status_code == 500
        assert payment_store.exists("pay-1") is False

        provider.fail_on.clear()
        retried = client.post(WEBHOOK_PATH, json=payload)

        assert retried.status_code == 200
        assert retried.json()["outcome"] == "provisioned"


class TestWebhookSource:
    def test_unknown_source_forbidden(self, restricted_client, make_notification, account_store):
        payload = make_notification(payment_type="balance_topup", as_model=False)
        response = restricted_client.post(
            WEBHOOK_PATH, json=payload, headers={"X-Forwarded-For": "203.0.113.7"}
        )

        assert response.status_code == 403
        assert account_store.count() == 0

    def test_missing_forwarded_header_forbidden(self, restricted_client, make_notification):
        payload = make_notification(payment_type="balance_topup", as_model=False)
        assert restricted_client.post(WEBHOOK_PATH, json=payload).status_code == 403

    def test_provider_source_allowed(self, restricted_client, make_notification):
        payload = make_notification(payment_type="balance_topup", as_model=False)
        response = restricted_client.post(
            WEBHOOK_PATH, json=payload, headers={"X-Forwarded-For": "185.71.76.5, 10.0.0.1"}
        )
        assert response.status_code == 200

    def test_other_paths_unrestricted(self, restricted_client):
        response = restricted_client.post("/accounts", json={"telegram_id": 42})
        assert response.status_code == 200


class TestAccounts:
    def test_register(self, client):
        response = client.post("/accounts", json={"telegram_id": 42, "username": "alice"})

        body = response.json()
        assert response.status_code == 200
        assert body["telegram_id"] == 42
        assert body["referral_code"] == "ref_42"
        assert Decimal(str(body["balance"])) == Decimal("0")
        assert body["subscription"]["state"] == "none"

    def test_register_with_referral(self, client):
        client.post("/accounts", json={"telegram_id": 100})
        response = client.post("/accounts", json={"telegram_id": 42, "referral_code": "ref_100"})
        assert response.json()["referrer_telegram_id"] == 100

    def test_referral_stats(self, client, topup):
        client.post("/accounts", json={"telegram_id": 100})
        client.post("/accounts", json={"telegram_id": TELEGRAM_ID, "referral_code": "ref_100"})
        client.post("/accounts", json={"telegram_id": 200, "referral_code": "ref_100"})
        topup(amount="1000.00")

        body = client.get("/accounts/100").json()

        assert body["invited_count"] == 2
        assert Decimal(str(body["referral_earned"])) == Decimal("150.00")

    def test_no_referrals(self, client):
        body = client.post("/accounts", json={"telegram_id": 42}).json()

        assert body["invited_count"] == 0
        assert Decimal(str(body["referral_earned"])) == Decimal("0")

    def test_register_requires_identity(self, client):
        assert client.post("/accounts", json={"username": "alice"}).status_code == 422

    def test_get_profile(self, client, topup):
        topup()
        response = client.get(f"/accounts/{TELEGRAM_ID}")

        assert response.status_code == 200
        assert Decimal(str(response.json()["balance"])) == Decimal("300.00")

    def test_get_unknown(self, client):
        assert client.get("/accounts/999").status_code == 404


class TestBalancePurchase:
    def test_insufficient_funds(self, client):
        client.post("/accounts", json={"telegram_id": TELEGRAM_ID})

        response = client.post(f"/accounts/{TELEGRAM_ID}/purchases", json={})

        body = response.json()
        assert response.status_code == 402
        assert body["status"] == "insufficient_funds"
        assert body["failed_phase"] == "reserve"
        assert Decimal(str(body["balance"])) == Decimal("0")

    def test_completed(self, client, topup, clock):
        topup()

        response = client.post(f"/accounts/{TELEGRAM_ID}/purchases", json={"plan": "standard"})

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "completed"
        assert Decimal(str(body["balance"])) == Decimal("45.00")
        assert datetime.fromisoformat(body["expires_at"]) == clock.now() + timedelta(days=30)

        profile = client.get(f"/accounts/{TELEGRAM_ID}").json()
        assert profile["subscription"]["state"] == "active"

    def test_idempotency_key(self, client, topup):
        topup()
        request = {"plan": "standard", "idempotency_key": "order-1"}

        client.post(f"/accounts/{TELEGRAM_ID}/purchases", json=request)
        response = client.post(f"/accounts/{TELEGRAM_ID}/purchases", json=request)

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"
        assert Decimal(str(response.json()["balance"])) == Decimal("45.00")

    def test_provider_failure(self, client, topup, provider):
        topup()
        provider.fail_on.add("create")

        response = client.post(f"/accounts/{TELEGRAM_ID}/purchases", json={})

        body = response.json()
        assert response.status_code == 502
        assert body["failed_phase"] == "provision"
        assert Decimal(str(body["balance"])) == Decimal("300.00")

    def test_unknown_plan(self, client, topup):
        topup()
        response = client.post(f"/accounts/{TELEGRAM_ID}/purchases", json={"plan": "lifetime"})
        assert response.status_code == 404

    def test_unknown_account(self, client):
        assert client.post("/accounts/999/purchases", json={}).status_code == 404


class TestControl:
    def test_reconcile_nothing_due(self, client):
        response = client.post("/control/reconcile")

        assert response.status_code == 200
        body = response.json()
        assert body["warned"] == 0
        assert body["revoked"] == 0

    def test_reconcile_revokes_lapsed(self, client, topup, clock, account_store):
        topup()
        client.post(f"/accounts/{TELEGRAM_ID}/purchases", json={})
        clock.advance_time(days=31)

        response = client.post("/control/reconcile")

        assert response.json()["revoked"] == 1
        assert account_store.get_by_telegram_id(TELEGRAM_ID).status.value == "expired"
        assert client.get(f"/accounts/{TELEGRAM_ID}").json()["subscription"]["state"] == "expired"
