"""
HTTP API Tests

Exercises the FastAPI app end to end against a temporary SQLite store:
referral redirect, affiliate administration, ingestion, ledger reads and
payouts.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from affiliates.api import create_app
from affiliates.tables import utcnow

AUTH = {"Authorization": "Bearer test-admin-token"}


@pytest.fixture
def client(settings, db, notifier):
    with TestClient(create_app(settings, db, notifier)) as test_client:
        yield test_client


@pytest.fixture
def code(client):
    """Referral code of a freshly approved affiliate."""
    created = client.post("/affiliates/apply", json={"name": "Jane Creator", "email": "jane@example.com"})
    affiliate_id = created.json()["id"]
    approved = client.patch(f"/affiliates/{affiliate_id}", json={"status": "approved"}, headers=AUTH)
    return approved.json()["code"]


def period():
    now = utcnow()
    return {
        "periodStart": (now - timedelta(days=1)).isoformat(),
        "periodEnd": (now + timedelta(days=1)).isoformat(),
    }


class TestSystem:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestReferralRedirect:
    """Tests for the /r/{code} entry point."""

    def test_known_code_sets_cookie(self, client, code):
        response = client.get(f"/r/{code.lower()}", follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == f"http://testserver/?ref={code}"
        cookie = response.headers["set-cookie"].lower()
        assert cookie.startswith(f"affiliate_code={code.lower()}")
        assert "max-age=2592000" in cookie
        assert "samesite=lax" in cookie
        assert "httponly" not in cookie

    def test_unknown_code_redirects_without_cookie(self, client):
        response = client.get("/r/ZZZ", follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == "http://testserver/"
        assert "set-cookie" not in response.headers

    def test_clicks_are_counted(self, client, code):
        client.get(f"/r/{code}", follow_redirects=False)
        client.get(f"/r/{code}", follow_redirects=False)

        affiliate_id = client.get("/affiliates", headers=AUTH).json()[0]["id"]
        summary = client.get(f"/affiliates/{affiliate_id}/summary", headers=AUTH).json()
        assert summary["clicks"] == 2


class TestAffiliateAdmin:
    """Tests for application and admin endpoints."""

    def test_apply_and_notify(self, client, notifier):
        response = client.post(
            "/affiliates/apply",
            json={"name": "Jane", "email": "jane@example.com", "socialHandle": "@jane"},
        )

        assert response.status_code == 201
        assert notifier.sent[0][0] == "application_received"

    def test_apply_rejects_bad_email(self, client):
        response = client.post("/affiliates/apply", json={"name": "Jane", "email": "nope"})

        assert response.status_code == 400

    def test_admin_routes_require_token(self, client):
        assert client.get("/affiliates").status_code == 401
        assert client.get("/affiliates", headers={"Authorization": "Bearer wrong"}).status_code == 403

    def test_approve_returns_code(self, client, notifier):
        affiliate_id = client.post(
            "/affiliates/apply", json={"name": "Jane", "email": "jane@example.com"}
        ).json()["id"]

        response = client.patch(f"/affiliates/{affiliate_id}", json={"status": "approved"}, headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "approved"
        assert body["code"] == "JANEJANE001"
        assert notifier.sent[-1][0] == "affiliate_approved"

    def test_invalid_status_is_bad_request(self, client):
        affiliate_id = client.post(
            "/affiliates/apply", json={"name": "Jane", "email": "jane@example.com"}
        ).json()["id"]

        response = client.patch(f"/affiliates/{affiliate_id}", json={"status": "bogus"}, headers=AUTH)

        assert response.status_code == 400

    def test_unknown_affiliate_is_not_found(self, client):
        assert client.get("/affiliates/999", headers=AUTH).status_code == 404
        assert client.patch("/affiliates/999", json={"status": "approved"}, headers=AUTH).status_code == 404

    def test_list_filters_by_status(self, client, code):
        client.post("/affiliates/apply", json={"name": "Pat", "email": "pat@example.com"})

        pending = client.get("/affiliates", params={"status": "pending"}, headers=AUTH).json()

        assert [a["email"] for a in pending] == ["pat@example.com"]


class TestIngestion:
    """Tests for conversion and refund ingestion."""

    def test_conversion_then_duplicate(self, client, code):
        body = {"orderId": "O1", "revenueCents": 10000, "cookieCode": code}

        first = client.post("/conversions", json=body, headers=AUTH)
        second = client.post("/conversions", json=body, headers=AUTH)

        assert first.status_code == 201
        assert first.json()["conversion"]["commissionCents"] == 1000
        assert second.status_code == 200
        assert second.json()["created"] is False
        assert second.json()["conversion"]["id"] == first.json()["conversion"]["id"]

    def test_unattributed_conversion(self, client):
        response = client.post("/conversions", json={"orderId": "O1", "revenueCents": 10000}, headers=AUTH)

        assert response.status_code == 200
        assert response.json()["attributed"] is False

    def test_refund_flow(self, client, code):
        client.post("/conversions", json={"orderId": "O1", "revenueCents": 10000, "cookieCode": code},
                    headers=AUTH)

        first = client.post("/refunds", json={"orderId": "O1", "refundAmountCents": 5000}, headers=AUTH)
        second = client.post("/refunds", json={"orderId": "O1", "refundAmountCents": 6000}, headers=AUTH)
        third = client.post("/refunds", json={"orderId": "O1", "refundAmountCents": 100}, headers=AUTH)

        assert first.json()["appliedCents"] == 500
        assert second.json()["appliedCents"] == 500
        assert third.status_code == 409

    def test_refund_id_reused_across_orders_conflicts(self, client, code):
        for order_id in ("O1", "O2"):
            client.post("/conversions", json={"orderId": order_id, "revenueCents": 10000, "cookieCode": code},
                        headers=AUTH)
        body = {"orderId": "O1", "refundAmountCents": 5000, "refundId": "R-1"}

        assert client.post("/refunds", json=body, headers=AUTH).json()["appliedCents"] == 500
        assert client.post("/refunds", json=body, headers=AUTH).json()["appliedCents"] == 500
        conflict = client.post("/refunds", json={**body, "orderId": "O2"}, headers=AUTH)

        assert conflict.status_code == 409

    def test_refund_unknown_order(self, client):
        response = client.post("/refunds", json={"orderId": "nope", "refundAmountCents": 100}, headers=AUTH)

        assert response.status_code == 404

    def test_refund_requires_positive_amount(self, client):
        response = client.post("/refunds", json={"orderId": "O1", "refundAmountCents": 0}, headers=AUTH)

        assert response.status_code == 400


class TestLedgerAndPayouts:
    """Tests for balance, statement and payout endpoints."""

    @pytest.fixture
    def affiliate_id(self, client, code):
        client.post("/conversions", json={"orderId": "O1", "revenueCents": 10000, "cookieCode": code},
                    headers=AUTH)
        client.post("/conversions", json={"orderId": "O2", "revenueCents": 5000, "cookieCode": code},
                    headers=AUTH)
        return client.get("/affiliates", headers=AUTH).json()[0]["id"]

    def test_balance_and_statement(self, client, affiliate_id):
        balance = client.get(f"/affiliates/{affiliate_id}/balance", headers=AUTH).json()
        statement = client.get(f"/affiliates/{affiliate_id}/statement", headers=AUTH).json()

        assert balance["balanceCents"] == 1500
        assert [line["runningBalanceCents"] for line in statement["lines"]] == [1000, 1500]
        assert statement["closingBalanceCents"] == 1500

    def test_balance_unknown_affiliate(self, client):
        assert client.get("/affiliates/999/balance", headers=AUTH).status_code == 404

    def test_payout_lifecycle(self, client, affiliate_id):
        generated = client.post("/payouts/generate", json={**period(), "affiliateId": affiliate_id}, headers=AUTH)
        assert generated.status_code == 200
        batch = generated.json()
        assert batch["created"] == 1
        payout = batch["payouts"][0]
        assert payout["totalCents"] == 1500

        again = client.post("/payouts/generate", json=period(), headers=AUTH).json()
        assert again["created"] == 0

        assert client.post(f"/payouts/{payout['id']}/paid", headers=AUTH).status_code == 409
        assert client.post(f"/payouts/{payout['id']}/approve", headers=AUTH).json()["status"] == "approved"

        paid = client.post(f"/payouts/{payout['id']}/paid", json={"reference": "wire-1"}, headers=AUTH)
        assert paid.json()["status"] == "paid"
        assert paid.json()["reference"] == "wire-1"

        assert client.post(f"/payouts/{payout['id']}/paid", headers=AUTH).status_code == 409
        assert client.get(f"/payouts/{payout['id']}", headers=AUTH).json()["totalCents"] == 1500
        assert client.get(f"/affiliates/{affiliate_id}/balance", headers=AUTH).json()["balanceCents"] == 0

    def test_generate_rejects_inverted_period(self, client):
        body = period()
        body["periodStart"], body["periodEnd"] = body["periodEnd"], body["periodStart"]

        assert client.post("/payouts/generate", json=body, headers=AUTH).status_code == 400

    def test_export_csv(self, client, affiliate_id):
        response = client.get("/payouts/export", headers=AUTH)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.splitlines()
        assert lines[0] == '"affiliate_id","name","email","code","order_count","revenue"'
        assert lines[1] == f'{affiliate_id},"Jane Creator","jane@example.com","JANEJANE001",2,15000'

    def test_conversions_listing(self, client, affiliate_id):
        orders = client.get(f"/affiliates/{affiliate_id}/conversions", headers=AUTH).json()

        assert [c["orderId"] for c in orders] == ["O2", "O1"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
