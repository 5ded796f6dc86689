"""
HTTP tests for the ledger API.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
import structlog
from fastapi.testclient import TestClient

from referral_ledger.api import app, get_service
from referral_ledger.config import Settings
from referral_ledger.logging import setup_logging
from referral_ledger.service import ReferralLedgerService

HEADERS = {"X-Tenant-ID": "acme"}
OTHER_HEADERS = {"X-Tenant-ID": "globex"}


@pytest.fixture
def client():
    service = ReferralLedgerService()
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create_referral(client, headers=HEADERS):
    response = client.post("/referrals", headers=headers, json={
        "referrer_id": str(uuid4()),
        "referred_id": str(uuid4()),
        "referral_code": "JOHN-2024",
        "type": "agency",
        "commission_percentage": "20",
    })
    assert response.status_code == 201
    return response.json()["id"]


def _earn(client, referral_id, amount, **extra):
    return client.post(f"/referrals/{referral_id}/earnings", headers=HEADERS, json={
        "amount": amount, "currency": "USD", "source_kind": "subscription", **extra,
    })


def _withdraw(client, referral_id, amount):
    return client.post(f"/referrals/{referral_id}/withdrawals", headers=HEADERS, json={
        "amount": amount,
        "currency": "USD",
        "method": "paypal",
        "payment_details": {"paypal_email": "john@example.com"},
    })


class TestTenantHeader:
    """Tests for tenant resolution."""

    def test_health_needs_no_tenant(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_tenant(self, client):
        response = client.get("/stats")

        assert response.status_code == 400
        assert "required" in response.json()["detail"]

    def test_invalid_tenant(self, client):
        response = client.get("/stats", headers={"X-Tenant-ID": "acme corp!"})

        assert response.status_code == 400

    def test_cross_tenant_is_not_found(self, client):
        referral_id = _create_referral(client)

        response = client.get(f"/referrals/{referral_id}", headers=OTHER_HEADERS)

        assert response.status_code == 404


class TestEarningsEndpoints:

    def test_record_earning(self, client):
        referral_id = _create_referral(client)

        response = _earn(client, referral_id, "50.00")

        assert response.status_code == 201
        body = response.json()
        assert Decimal(body["analytics"]["total_earnings"]) == Decimal("50")
        assert Decimal(body["analytics"]["pending_payments"]) == Decimal("50")

    def test_invalid_amount(self, client):
        referral_id = _create_referral(client)

        response = _earn(client, referral_id, "0")

        assert response.status_code == 400

    def test_unknown_referral(self, client):
        response = _earn(client, str(uuid4()), "10")

        assert response.status_code == 404

    def test_approve_earning(self, client):
        referral_id = _create_referral(client)
        earning_id = _earn(client, referral_id, "10").json()["earning"]["id"]

        response = client.patch(
            f"/referrals/{referral_id}/earnings/{earning_id}",
            headers=HEADERS,
            json={"status": "approved"},
        )

        assert response.status_code == 200
        referral = client.get(f"/referrals/{referral_id}", headers=HEADERS).json()
        assert referral["status"] == "completed"


class TestWithdrawalEndpoints:

    def test_withdrawal_flow(self, client):
        referral_id = _create_referral(client)
        _earn(client, referral_id, "50")

        created = _withdraw(client, referral_id, "30")
        assert created.status_code == 201
        assert Decimal(created.json()["balance"]["available"]) == Decimal("20")

        refused = _withdraw(client, referral_id, "25")
        assert refused.status_code == 400
        assert "Insufficient balance" in refused.json()["detail"]

        withdrawal_id = created.json()["withdrawal"]["id"]
        skipped = client.patch(
            f"/referrals/{referral_id}/withdrawals/{withdrawal_id}",
            headers=HEADERS,
            json={"status": "completed"},
        )
        assert skipped.status_code == 409

        processing = client.patch(
            f"/referrals/{referral_id}/withdrawals/{withdrawal_id}",
            headers=HEADERS,
            json={"status": "processing"},
        )
        assert processing.status_code == 200

        settled = client.patch(
            f"/referrals/{referral_id}/withdrawals/{withdrawal_id}",
            headers=HEADERS,
            json={"status": "completed", "transaction_id": "txn-9"},
        )
        assert settled.status_code == 200
        assert settled.json()["withdrawal"]["transaction_id"] == "txn-9"

        again = client.patch(
            f"/referrals/{referral_id}/withdrawals/{withdrawal_id}",
            headers=HEADERS,
            json={"status": "failed"},
        )
        assert again.status_code == 409

    def test_unknown_withdrawal(self, client):
        referral_id = _create_referral(client)

        response = client.patch(
            f"/referrals/{referral_id}/withdrawals/{uuid4()}",
            headers=HEADERS,
            json={"status": "completed"},
        )

        assert response.status_code == 404

    def test_balance_and_pending_listing(self, client):
        referral_id = _create_referral(client)
        _earn(client, referral_id, "40")
        _withdraw(client, referral_id, "15")

        balance = client.get(f"/referrals/{referral_id}/balance", headers=HEADERS).json()
        pending = client.get("/withdrawals/pending", headers=HEADERS).json()

        assert Decimal(balance["available"]) == Decimal("25")
        assert Decimal(balance["reserved_or_settled"]) == Decimal("15")
        assert [r["id"] for r in pending] == [referral_id]


class TestMilestoneAndTrackingEndpoints:

    def test_milestone_idempotent(self, client):
        referral_id = _create_referral(client)

        first = client.post(f"/referrals/{referral_id}/milestones/first_payment", headers=HEADERS)
        second = client.post(f"/referrals/{referral_id}/milestones/first_payment", headers=HEADERS)

        assert first.status_code == 200
        assert first.json()["changed"] is True
        assert second.status_code == 200
        assert second.json()["changed"] is False
        assert second.json()["milestone"]["achieved"] is True
        assert second.json()["milestone"]["achieved_at"] == first.json()["milestone"]["achieved_at"]

    def test_unknown_milestone_type(self, client):
        referral_id = _create_referral(client)

        response = client.post(f"/referrals/{referral_id}/milestones/birthday", headers=HEADERS)

        assert response.status_code == 422

    def test_clicks_and_signups(self, client):
        referral_id = _create_referral(client)

        for _ in range(4):
            client.post(f"/referrals/{referral_id}/clicks", headers=HEADERS)
        response = client.post(f"/referrals/{referral_id}/signups", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["conversion_rate"] == 25


class TestAdminEndpoints:

    def test_stats_and_active(self, client):
        referral_id = _create_referral(client)
        _create_referral(client)
        _create_referral(client, headers=OTHER_HEADERS)
        _earn(client, referral_id, "70", status="approved")

        stats = client.get("/stats", headers=HEADERS).json()
        active = client.get("/referrals/active", headers=HEADERS).json()

        assert stats["total_referrals"] == 2
        assert Decimal(stats["total_earnings"]) == Decimal("70")
        assert [r["id"] for r in active] == [referral_id]

    def test_cancel_and_repair(self, client):
        referral_id = _create_referral(client)

        cancelled = client.post(f"/referrals/{referral_id}/cancel", headers=HEADERS)
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

        assert _earn(client, referral_id, "10").status_code == 409
        assert client.post(f"/referrals/{referral_id}/cancel", headers=HEADERS).status_code == 409

        repaired = client.post(f"/referrals/{referral_id}/repair", headers=HEADERS)
        assert repaired.status_code == 200
        assert repaired.json()["drifted"] is False

    def test_expire_runs(self, client):
        _create_referral(client)

        response = client.post("/referrals/expire", headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == []


class TestLogging:
    """The app configures structlog once at import; the renderer follows log_format."""

    def test_renderer_follows_log_format(self):
        try:
            setup_logging(Settings(log_format="console"))
            assert isinstance(structlog.get_config()["processors"][-1], structlog.dev.ConsoleRenderer)

            setup_logging(Settings(log_format="json"))
            assert isinstance(structlog.get_config()["processors"][-1], structlog.processors.JSONRenderer)
        finally:
            setup_logging()
