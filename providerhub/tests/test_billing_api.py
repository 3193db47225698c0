import json
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from providerhub.main import app
from providerhub.tests.mocks import FakeBillingProvider, sub
from providerhub.tests.seed import seed_provider

AUTH = {"X-User-Id": "alice"}


@pytest.fixture
def client(db):
    seed_provider("alice", "alice@example.com")
    return TestClient(app)


@pytest.fixture
def provider():
    fake = FakeBillingProvider(customers={"alice@example.com": ["cus_a"]})
    with patch("providerhub.features.billing.service.get_provider", return_value=fake):
        yield fake


def test_missing_auth_returns_error_envelope(client):
    resp = client.get("/api/billing/status", headers={"x-request-id": "req-123"})

    assert resp.status_code == 401
    body = resp.json()
    assert body["error"]["code"] == "unauthorized"
    assert body["error"]["request_id"] == "req-123"
    assert resp.headers["x-request-id"] == "req-123"


def test_status_defaults_to_free(client):
    resp = client.get("/api/billing/status", headers=AUTH)

    assert resp.status_code == 200
    body = resp.json()
    assert body["enabled"] is False
    assert body["account_type"] == "provider"
    assert body["subscribed"] is False
    assert body["tier"] == "free"
    assert body["last_reconciled_at"] is None


def test_reconcile_when_billing_disabled(client):
    resp = client.post("/api/billing/reconcile", headers=AUTH)

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"


def test_reconcile_returns_snapshot(client, provider):
    provider.subscriptions["cus_a"] = [sub("sub_1", "active", created=100, price_id="price_pro")]

    resp = client.post("/api/billing/reconcile", headers=AUTH, json={"force": True})

    assert resp.status_code == 200
    body = resp.json()
    assert body["subscribed"] is True
    assert body["tier"] == "pro"

    status = client.get("/api/billing/status", headers=AUTH).json()
    assert status["tier"] == "pro"


def test_reconcile_provider_outage_is_502(client, provider):
    provider.fail = True

    resp = client.post("/api/billing/reconcile", headers=AUTH, json={"force": True})

    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "billing_unavailable"


def test_checkout_new_subscription(client, provider):
    resp = client.post("/api/billing/checkout", headers=AUTH, json={"tier": "starter"})

    assert resp.status_code == 200
    assert resp.json() == {"url": "https://checkout.stripe.test/price_starter", "is_new_checkout": True}


def test_checkout_with_active_starter_returns_portal(client, provider):
    provider.subscriptions["cus_a"] = [sub("sub_1", "active", created=100, price_id="price_starter")]

    resp = client.post("/api/billing/checkout", headers=AUTH, json={"tier": "pro"})

    assert resp.status_code == 200
    assert resp.json() == {"url": "https://billing.stripe.test/portal/cus_a", "is_new_checkout": False}


def test_checkout_free_tier_rejected(client, provider):
    resp = client.post("/api/billing/checkout", headers=AUTH, json={"tier": "free"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_checkout_unknown_tier_is_422(client, provider):
    resp = client.post("/api/billing/checkout", headers=AUTH, json={"tier": "platinum"})
    assert resp.status_code == 422


def test_checkout_missing_price_is_config_error(client, provider, monkeypatch):
    monkeypatch.delenv("STRIPE_PRICE_STARTER")

    resp = client.post("/api/billing/checkout", headers=AUTH, json={"tier": "starter"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "billing_config_required"


def test_portal_not_configured(client, provider):
    provider.portal_configured = False

    resp = client.post("/api/billing/portal", headers=AUTH, json={})

    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "billing_config_required"
    assert error["config_url"].startswith("https://dashboard.stripe.com/")


def test_portal_returns_url(client, provider):
    resp = client.post("/api/billing/portal", headers=AUTH)

    assert resp.status_code == 200
    assert resp.json()["url"] == "https://billing.stripe.test/portal/cus_a"


def test_webhook_invalid_signature(client, provider):
    resp = client.post(
        "/api/billing/webhook",
        content=json.dumps({"event_id": "evt_1", "event_type": "x"}),
        headers={"stripe-signature": "forged"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_webhook"


def test_webhook_accepted(client, provider):
    resp = client.post(
        "/api/billing/webhook",
        content=json.dumps({
            "event_id": "evt_ok",
            "event_type": "checkout.session.completed",
            "customer_ref": "cus_a",
            "metadata": {"account_id": "alice"},
        }),
        headers={"stripe-signature": "valid"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_ok"}


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
