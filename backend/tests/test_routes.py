"""
Token Billing API Tests

Tests for:
- GET /api/tokens/balance, /transactions, /transactions/export
- GET /api/tokens/analytics, /analytics/timeline, /stats, /overview
- POST /api/tokens/spend, /api/tokens/purchase
- GET/POST /api/subscription, /api/subscription/auto-renew, /history
- GET /api/invoices/{id}, POST /api/invoices/{id}/settle
- POST /api/admin/credit
"""

import csv
import io
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from token_billing.auth import JWT_ALGORITHM, JWT_SECRET, AccountType, create_token
from token_billing.errors import BillingError
from token_billing.routes import billing_error_handler, billing_router

CLIENT_ID = "client-1"
WEBHOOK_HEADERS = {"X-Billing-Webhook-Secret": "test-webhook-secret"}


@pytest.fixture
def app(service):
    app = FastAPI()
    app.include_router(billing_router, prefix="/api")
    app.add_exception_handler(BillingError, billing_error_handler)
    app.state.billing = service
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_token(CLIENT_ID, AccountType.CLIENT)}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_token('admin-1', AccountType.ADMIN)}"}


def credit(client, admin_headers, tokens, key):
    response = client.post(
        "/api/admin/credit",
        json={"account_id": CLIENT_ID, "tokens": tokens, "reason": "welcome bonus"},
        headers={**admin_headers, "Idempotency-Key": key}
    )
    assert response.status_code == 200, f"Credit failed: {response.text}"
    return response.json()


class TestAuth:
    """Authentication boundary"""

    def test_missing_token(self, client):
        response = client.get("/api/tokens/balance")
        assert response.status_code in (401, 403)

    def test_unknown_account_type(self, client):
        token = jwt.encode(
            {"sub": CLIENT_ID, "account_type": "robot", "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
            JWT_SECRET,
            algorithm=JWT_ALGORITHM
        )
        response = client.get("/api/tokens/balance", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_admin_endpoint_needs_admin(self, client, auth_headers):
        response = client.post(
            "/api/admin/credit",
            json={"account_id": CLIENT_ID, "tokens": 10},
            headers=auth_headers
        )
        assert response.status_code == 403


class TestTokenEndpoints:
    """Balance, spend and history endpoints"""

    def test_credit_spend_balance(self, client, auth_headers, admin_headers):
        txn = credit(client, admin_headers, 100, "grant-1")
        assert txn["kind"] == "earned"
        assert txn["category"] == "admin_grant"

        response = client.post("/api/tokens/spend", json={"amount": 30, "category": "ai_assistant"}, headers=auth_headers)
        assert response.status_code == 200, f"Failed: {response.text}"
        assert response.json()["resulting_available"] == 70

        balance = client.get("/api/tokens/balance", headers=auth_headers).json()
        assert balance == {"available": 70, "total": 100, "spent": 30}

    def test_overdraw_returns_402(self, client, auth_headers):
        response = client.post("/api/tokens/spend", json={"amount": 5}, headers=auth_headers)

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["error_code"] == "INSUFFICIENT_BALANCE"
        assert detail["available"] == 0
        assert detail["requested"] == 5

    def test_invalid_amount_returns_400(self, client, auth_headers):
        response = client.post("/api/tokens/spend", json={"amount": 0}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "VALIDATION_ERROR"

    def test_spend_replay_with_same_key(self, client, auth_headers, admin_headers):
        credit(client, admin_headers, 50, "grant-1")
        headers = {**auth_headers, "Idempotency-Key": "spend-1"}

        first = client.post("/api/tokens/spend", json={"amount": 10}, headers=headers).json()
        second = client.post("/api/tokens/spend", json={"amount": 10}, headers=headers).json()

        assert first["id"] == second["id"]
        assert client.get("/api/tokens/balance", headers=auth_headers).json()["spent"] == 10

    def test_admin_credit_replay(self, client, auth_headers, admin_headers):
        credit(client, admin_headers, 100, "grant-1")
        credit(client, admin_headers, 100, "grant-1")

        assert client.get("/api/tokens/balance", headers=auth_headers).json()["total"] == 100

    def test_transactions_page(self, client, auth_headers, admin_headers):
        for i in range(3):
            credit(client, admin_headers, 10, f"grant-{i}")

        response = client.get("/api/tokens/transactions?limit=2", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert len(data["transactions"]) == 2
        assert data["transactions"][0]["sequence_no"] == 3
        assert data["pagination"]["total_pages"] == 2
        assert data["pagination"]["has_next"] is True

    def test_transactions_bad_kind(self, client, auth_headers):
        response = client.get("/api/tokens/transactions?kind=refund", headers=auth_headers)
        assert response.status_code == 400

    def test_export(self, client, auth_headers, admin_headers):
        credit(client, admin_headers, 100, "grant-1")
        client.post("/api/tokens/spend", json={"amount": 40}, headers=auth_headers)

        response = client.get("/api/tokens/transactions/export", headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        rows = list(csv.DictReader(io.StringIO(response.text)))
        assert [r["type"] for r in rows] == ["spent", "earned"]
        assert rows[0]["resultingBalance"] == "60"


class TestAnalyticsEndpoints:

    def test_analytics(self, client, auth_headers, admin_headers):
        credit(client, admin_headers, 100, "grant-1")
        client.post("/api/tokens/spend", json={"amount": 25, "category": "chat"}, headers=auth_headers)

        response = client.get("/api/tokens/analytics?period=week", headers=auth_headers)

        assert response.status_code == 200
        breakdown = response.json()["breakdown"]
        assert breakdown[0] == {"category": "chat", "tokens_used": 25, "unused": 0}

    def test_invalid_period(self, client, auth_headers):
        response = client.get("/api/tokens/analytics?period=decade", headers=auth_headers)
        assert response.status_code == 400

    def test_timeline_and_stats(self, client, auth_headers, admin_headers):
        credit(client, admin_headers, 100, "grant-1")

        timeline = client.get("/api/tokens/analytics/timeline?view=monthly", headers=auth_headers).json()
        stats = client.get("/api/tokens/stats", headers=auth_headers).json()

        assert [b["name"] for b in timeline["buckets"]] == ["Week 1", "Week 2", "Week 3", "Week 4"]
        assert stats["current_balance"] == 100

    def test_overview(self, client, auth_headers, admin_headers):
        credit(client, admin_headers, 100, "grant-1")

        data = client.get("/api/tokens/overview", headers=auth_headers).json()

        assert data["balance"]["available"] == 100
        assert len(data["recent_transactions"]) == 1
        assert isinstance(data["analytics"], list)

    def test_public_catalogues(self, client):
        bundles = client.get("/api/tokens/bundles").json()["bundles"]
        plans = client.get("/api/subscription/plans").json()["plans"]

        assert [b["id"] for b in bundles] == ["bundle-100", "bundle-500", "bundle-1000", "bundle-5000"]
        assert {p["id"] for p in plans} == {"free", "advanced", "enterprise", "custom"}


class TestPurchaseAndSettlement:

    def test_purchase_then_settle(self, client, auth_headers):
        response = client.post("/api/tokens/purchase", json={"bundle_id": "bundle-100"}, headers=auth_headers)
        assert response.status_code == 200, f"Failed: {response.text}"
        invoice = response.json()
        assert invoice["status"] == "Pending"

        unauthenticated = client.post(f"/api/invoices/{invoice['id']}/settle", json={"outcome": "paid"})
        assert unauthenticated.status_code == 401

        settled = client.post(
            f"/api/invoices/{invoice['id']}/settle",
            json={"outcome": "paid"},
            headers=WEBHOOK_HEADERS
        ).json()
        assert settled["invoice"]["status"] == "Paid"
        assert settled["already_settled"] is False

        again = client.post(
            f"/api/invoices/{invoice['id']}/settle",
            json={"outcome": "paid"},
            headers=WEBHOOK_HEADERS
        ).json()
        assert again["already_settled"] is True

        assert client.get("/api/tokens/balance", headers=auth_headers).json()["available"] == 100

    def test_unknown_bundle(self, client, auth_headers):
        response = client.post("/api/tokens/purchase", json={"bundle_id": "bundle-3"}, headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "NOT_FOUND"

    def test_invoice_of_other_account(self, client, auth_headers):
        invoice = client.post("/api/tokens/purchase", json={"bundle_id": "bundle-100"}, headers=auth_headers).json()
        other = {"Authorization": f"Bearer {create_token('client-2', AccountType.LAWYER)}"}

        assert client.get(f"/api/invoices/{invoice['id']}", headers=auth_headers).status_code == 200
        assert client.get(f"/api/invoices/{invoice['id']}", headers=other).status_code == 404


class TestSubscriptionEndpoints:

    def test_subscription_flow(self, client, auth_headers):
        assert client.get("/api/subscription", headers=auth_headers).status_code == 404

        headers = {**auth_headers, "Idempotency-Key": "sub-1"}
        first = client.post("/api/subscription", json={"plan_id": "advanced", "billing_cycle": "monthly"}, headers=headers)
        assert first.status_code == 200, f"Failed: {first.text}"
        assert first.json()["status"] == "active"

        replay = client.post("/api/subscription", json={"plan_id": "enterprise"}, headers=headers).json()
        assert replay["current_plan_id"] == "advanced"

        changed = client.post(
            "/api/subscription",
            json={"plan_id": "enterprise", "idempotency_key": "sub-2"},
            headers=auth_headers
        ).json()
        assert changed["current_plan_id"] == "enterprise"
        assert changed["next_billing_date"] == first.json()["next_billing_date"]

        toggled = client.post("/api/subscription/auto-renew", json={}, headers=auth_headers).json()
        assert toggled["auto_renew"] is False

        current = client.get("/api/subscription", headers=auth_headers).json()
        assert current["current_plan_id"] == "enterprise"

    def test_auto_renew_replay_does_not_toggle_back(self, client, auth_headers):
        client.post("/api/subscription", json={"plan_id": "advanced"}, headers=auth_headers)
        headers = {**auth_headers, "Idempotency-Key": "toggle-1"}

        first = client.post("/api/subscription/auto-renew", json={}, headers=headers)
        replay = client.post("/api/subscription/auto-renew", json={}, headers=headers)

        assert first.status_code == 200, f"Failed: {first.text}"
        assert first.json()["auto_renew"] is False
        assert replay.json()["auto_renew"] is False
        current = client.get("/api/subscription", headers=auth_headers).json()
        assert current["auto_renew"] is False

    def test_invalid_cycle(self, client, auth_headers):
        response = client.post(
            "/api/subscription",
            json={"plan_id": "advanced", "billing_cycle": "weekly"},
            headers=auth_headers
        )
        assert response.status_code == 400

    def test_history_and_export(self, client, auth_headers):
        client.post("/api/tokens/purchase", json={"bundle_id": "bundle-500"}, headers=auth_headers)

        history = client.get("/api/subscription/history", headers=auth_headers).json()
        export = client.get("/api/subscription/history/export", headers=auth_headers)

        assert history["count"] == 1
        assert export.status_code == 200
        assert export.text.splitlines()[0] == "id,date,description,amount,status"
        assert history["invoices"][0]["id"] in export.text
