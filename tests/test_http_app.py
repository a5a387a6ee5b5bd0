# tests/test_http_app.py
"""
HTTP surface tests with in-memory services.

Lifespan is not entered (no DB pool); app.state.services is set directly
and the token dependencies are overridden.
"""
from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from app.transport.http_app import PRODUCTION_CORS_METHODS, app
from app.transport.security import require_admin_auth, require_admin_host, require_service_token
from conftest import CUSTOMER_ID, OTHER_CUSTOMER_ID

NEW_REQUEST = {
    "category": "plumbing",
    "latitude": 19.076,
    "longitude": 72.8777,
    "address": "12 Marine Drive",
    "estimated_price": 50_000,
}


def as_actor(actor_id: str, role: str) -> dict:
    return {"X-Actor-Id": actor_id, "X-Actor-Role": role}


CUSTOMER = as_actor(CUSTOMER_ID, "customer")
OTHER_CUSTOMER = as_actor(OTHER_CUSTOMER_ID, "customer")
HELPER_1 = as_actor("helper-1", "helper")
HELPER_2 = as_actor("helper-2", "helper")


@pytest.fixture
def client(services):
    app.state.services = services
    app.dependency_overrides[require_service_token] = lambda: None
    app.dependency_overrides[require_admin_auth] = lambda: None
    app.dependency_overrides[require_admin_host] = lambda: None
    yield TestClient(app)
    app.dependency_overrides.clear()
    del app.state.services


def _create(client) -> dict:
    response = client.post("/requests", json=NEW_REQUEST, headers=CUSTOMER)
    assert response.status_code == 201
    return response.json()["request"]


class TestPublic:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}

    def test_unknown_route(self, client):
        assert client.get("/nope").status_code == 404

    def test_security_headers(self, client):
        response = client.get("/health")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "X-Request-ID" in response.headers


class TestGatewayAuth:
    def test_missing_service_token(self, client):
        app.dependency_overrides.pop(require_service_token)

        with patch("app.transport.security.settings") as mock_settings:
            mock_settings.service_token = "Xk9mQ2vL8nR4pW7jH3bF6tY1cZ5aD0eG"
            response = client.post("/requests", json=NEW_REQUEST, headers=CUSTOMER)

        assert response.status_code == 401

    def test_missing_actor_headers(self, client):
        assert client.post("/requests", json=NEW_REQUEST).status_code == 401

    def test_system_role_cannot_be_asserted(self, client):
        response = client.post("/requests", json=NEW_REQUEST, headers=as_actor("x", "system"))
        assert response.status_code == 403


class TestRequests:
    def test_create_dispatches(self, client):
        response = client.post("/requests", json=NEW_REQUEST, headers=CUSTOMER)

        assert response.status_code == 201
        body = response.json()
        assert body["request"]["status"] == "open"
        assert body["request"]["broadcast_status"] == "broadcasting"
        assert len(body["request"]["start_otp"]) == 6
        assert body["dispatch"]["candidates"] == 3

    def test_only_customers_create(self, client):
        response = client.post("/requests", json=NEW_REQUEST, headers=HELPER_1)

        assert response.status_code == 403
        assert response.json()["error"] == "not_authorized"

    def test_invalid_payload(self, client):
        bad = dict(NEW_REQUEST, latitude=123.0)
        assert client.post("/requests", json=bad, headers=CUSTOMER).status_code == 422

    def test_otps_only_for_owner(self, client):
        created = _create(client)

        owner_view = client.get(f"/requests/{created['id']}", headers=CUSTOMER).json()
        helper_view = client.get(f"/requests/{created['id']}", headers=HELPER_1).json()

        assert owner_view["start_otp"] == created["start_otp"]
        assert helper_view["start_otp"] is None
        assert helper_view["end_otp"] is None

    def test_other_customer_cannot_view(self, client):
        created = _create(client)

        response = client.get(f"/requests/{created['id']}", headers=OTHER_CUSTOMER)

        assert response.status_code == 403

    def test_status_view(self, client):
        created = _create(client)

        body = client.get(f"/requests/{created['id']}/status", headers=HELPER_2).json()

        assert body == {
            "request_id": created["id"],
            "status": "open",
            "broadcast_status": "broadcasting",
            "assigned_helper_id": None,
        }

    def test_unknown_request(self, client):
        response = client.get("/requests/does-not-exist", headers=CUSTOMER)

        assert response.status_code == 404
        assert response.json()["error"] == "request_not_found"

    def test_redispatch_is_idempotent(self, client):
        created = _create(client)

        body = client.post(f"/requests/{created['id']}/dispatch", headers=CUSTOMER).json()

        assert body["already_broadcasting"] is True

    def test_cancel(self, client):
        created = _create(client)

        response = client.post(
            f"/requests/{created['id']}/cancel", json={"reason": "found someone"}, headers=CUSTOMER,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["cancellation_reason"] == "found someone"


class TestAccept:
    def test_first_accept_wins(self, client):
        created = _create(client)

        first = client.post(f"/requests/{created['id']}/accept", headers=HELPER_1)
        second = client.post(f"/requests/{created['id']}/accept", headers=HELPER_2)

        assert first.status_code == 200
        assert first.json()["outcome"] == "assigned_ok"
        assert first.json()["assigned_helper_id"] == "helper-1"
        assert second.status_code == 409
        assert second.json()["outcome"] == "already_assigned"
        assert second.json()["assigned_helper_id"] is None

    def test_unknown_request(self, client):
        response = client.post("/requests/does-not-exist/accept", headers=HELPER_1)

        assert response.status_code == 404
        assert response.json()["outcome"] == "request_not_found"

    def test_customer_cannot_accept(self, client):
        created = _create(client)

        assert client.post(f"/requests/{created['id']}/accept", headers=CUSTOMER).status_code == 403


class TestJobFlow:
    def test_fund_work_and_release(self, client, ledger):
        created = _create(client)
        rid = created["id"]

        funded = client.post(
            f"/requests/{rid}/escrow/fund",
            json={"amount": 50_000, "payment_reference": "pay_789"},
            headers=CUSTOMER,
        )
        assert funded.status_code == 201
        assert funded.json()["status"] == "funded"

        assert client.post(f"/requests/{rid}/accept", headers=HELPER_1).status_code == 200

        wrong = client.post(f"/requests/{rid}/start", json={"otp": "000000x"}, headers=HELPER_1)
        assert wrong.status_code == 400
        assert wrong.json()["error"] == "invalid_otp"

        started = client.post(f"/requests/{rid}/start", json={"otp": created["start_otp"]}, headers=HELPER_1)
        assert started.json()["status"] == "in_progress"

        completed = client.post(f"/requests/{rid}/complete", json={"otp": created["end_otp"]}, headers=HELPER_1)
        assert completed.json()["status"] == "completed"

        escrow = client.get(f"/requests/{rid}/escrow", headers=CUSTOMER).json()
        assert escrow["status"] == "released"
        assert escrow["helper_id"] == "helper-1"
        assert escrow["commission_amount"] == 5_000
        assert ledger.balance("helper-1") == 45_000

    def test_fund_by_other_customer(self, client):
        created = _create(client)

        response = client.post(
            f"/requests/{created['id']}/escrow/fund",
            json={"amount": 50_000, "payment_reference": "pay_1"},
            headers=OTHER_CUSTOMER,
        )

        assert response.status_code == 403

    def test_fund_rejects_non_positive_amount(self, client):
        created = _create(client)

        response = client.post(
            f"/requests/{created['id']}/escrow/fund",
            json={"amount": 0, "payment_reference": "pay_1"},
            headers=CUSTOMER,
        )

        assert response.status_code == 422

    def test_refund_open_request(self, client):
        created = _create(client)
        client.post(
            f"/requests/{created['id']}/escrow/fund",
            json={"amount": 50_000, "payment_reference": "pay_2"},
            headers=CUSTOMER,
        )
        client.post(f"/requests/{created['id']}/cancel", json={}, headers=CUSTOMER)

        escrow = client.get(f"/requests/{created['id']}/escrow", headers=CUSTOMER).json()

        assert escrow["status"] == "refunded"

    def test_customer_refund_refused_while_live(self, client, ledger):
        created = _create(client)
        client.post(
            f"/requests/{created['id']}/escrow/fund",
            json={"amount": 50_000, "payment_reference": "pay_3"},
            headers=CUSTOMER,
        )
        client.post(f"/requests/{created['id']}/accept", headers=HELPER_1)

        response = client.post(f"/requests/{created['id']}/escrow/refund", headers=CUSTOMER)

        assert response.status_code == 409
        assert response.json()["error"] == "not_available"
        assert ledger.balance(CUSTOMER_ID) == 0


def _earn(client, amount: int = 50_000) -> None:
    created = _create(client)
    rid = created["id"]
    client.post(
        f"/requests/{rid}/escrow/fund",
        json={"amount": amount, "payment_reference": f"pay_{rid}"},
        headers=CUSTOMER,
    )
    client.post(f"/requests/{rid}/accept", headers=HELPER_1)
    client.post(f"/requests/{rid}/start", json={"otp": created["start_otp"]}, headers=HELPER_1)
    client.post(f"/requests/{rid}/complete", json={"otp": created["end_otp"]}, headers=HELPER_1)


class TestWallets:
    def test_balance_for_acting_helper(self, client):
        _earn(client)

        wallet = client.get("/wallets/me", headers=HELPER_1).json()

        assert wallet == {
            "owner_id": "helper-1",
            "kind": "helper",
            "available_balance": 45_000,
            "escrow_balance": 0,
        }
        assert client.get("/wallets/me", headers=HELPER_2).json()["available_balance"] == 0

    def test_entries_scoped_to_actor(self, client):
        _earn(client)

        entries = client.get("/wallets/me/entries", headers=HELPER_1).json()["entries"]

        assert len(entries) == 1
        assert entries[0]["direction"] == "credit"
        assert entries[0]["amount"] == 45_000
        assert "account_id" not in entries[0]

    def test_entries_limit_validated(self, client):
        assert client.get("/wallets/me/entries?limit=0", headers=CUSTOMER).status_code == 422

    def test_withdraw(self, client, ledger):
        _earn(client)

        response = client.post(
            "/wallets/me/withdrawals", json={"amount": 20_000, "reference": "wd_1"}, headers=HELPER_1,
        )

        assert response.status_code == 201
        assert response.json()["amount"] == 20_000
        assert client.get("/wallets/me", headers=HELPER_1).json()["available_balance"] == 25_000
        assert ledger.total_balance() == 0

    def test_withdraw_more_than_available(self, client):
        _earn(client)

        response = client.post(
            "/wallets/me/withdrawals", json={"amount": 45_001, "reference": "wd_1"}, headers=HELPER_1,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "insufficient_funds"

    def test_withdraw_rejects_non_positive_amount(self, client):
        response = client.post(
            "/wallets/me/withdrawals", json={"amount": 0, "reference": "wd_1"}, headers=HELPER_1,
        )

        assert response.status_code == 422

    def test_wallet_requires_actor(self, client):
        assert client.get("/wallets/me").status_code == 401


class TestAdmin:
    def test_commission_roundtrip(self, client):
        assert client.get("/admin/commission").json() == {"commission_rate_bps": 1000}

        response = client.put("/admin/commission", json={"rate_bps": 1250})

        assert response.json() == {"commission_rate_bps": 1250, "previous_rate_bps": 1000}
        assert client.get("/admin/commission").json() == {"commission_rate_bps": 1250}

    def test_commission_out_of_range(self, client):
        assert client.put("/admin/commission", json={"rate_bps": 10_001}).status_code == 422

    def test_sweep(self, client):
        _create(client)

        assert client.post("/admin/sweep").json() == {"expired_offers": 0, "expired_broadcasts": 0}

    def test_reconcile(self, client):
        body = client.post("/admin/reconcile").json()

        assert body["ledger_ok"] is True
        assert body["repair"]["helpers_released"] == 0

    def test_rebroadcast_clears_assignment(self, client):
        created = _create(client)
        client.post(f"/requests/{created['id']}/accept", headers=HELPER_1)

        body = client.post(f"/admin/requests/{created['id']}/rebroadcast").json()

        assert body["broadcast_status"] == "broadcasting"
        status = client.get(f"/requests/{created['id']}/status", headers=CUSTOMER).json()
        assert status["assigned_helper_id"] is None

    def test_admin_requires_auth(self, client):
        app.dependency_overrides.pop(require_admin_auth)

        with patch("app.transport.security.settings") as mock_settings:
            mock_settings.admin_token = "Xk9mQ2vL8nR4pW7jH3bF6tY1cZ5aD0eG"
            mock_settings.admin_auth_mode = "bearer"
            response = client.post("/admin/sweep")

        assert response.status_code == 401


def test_production_cors_allows_every_route_method():
    used = {
        method
        for route in app.routes
        if isinstance(route, APIRoute)
        for method in route.methods
    }
    assert used - {"HEAD", "OPTIONS"} <= set(PRODUCTION_CORS_METHODS)
