"""Tests for the tenant-facing payments API.

Covers:
- Authentication required (JSON 401)
- Listing and status filter scoped to the logged-in tenant
- Payment detail, including cross-tenant 404
- Refund endpoint: success, validation errors, reconnect prompt
- Settings: read and toggle payments_enabled
"""

from decimal import Decimal

import pytest

from app.models.transaction import Transaction


@pytest.fixture
def paid_transaction(db_session, transaction, mp_api, payment_factory):
    transaction.provider_payment_id = "987654321"
    transaction.payment_status = "paid"
    transaction.legacy_status = "paid"
    transaction.amount_paid = Decimal("150.00")
    db_session.commit()
    mp_api.payments["987654321"] = payment_factory()
    return transaction


class TestAuthGuard:

    def test_list_requires_login(self, client):
        resp = client.get("/api/payments")
        assert resp.status_code == 401
        assert resp.get_json()["error"] == "unauthenticated"

    def test_refund_requires_login(self, client, paid_transaction):
        resp = client.post("/api/payments/987654321/refunds", json={})
        assert resp.status_code == 401


class TestListPayments:

    def test_lists_only_own_payments(self, client, login, db_session, tenant, other_tenant,
                                     transaction):
        db_session.add(Transaction(
            tenant_id=other_tenant.id, external_reference="other-1", amount=Decimal("5.00"),
        ))
        db_session.commit()
        login(tenant)

        resp = client.get("/api/payments")

        assert resp.status_code == 200
        payments = resp.get_json()["payments"]
        assert [p["external_reference"] for p in payments] == ["42"]
        assert payments[0]["amount"] == "150.00"

    def test_status_filter(self, client, login, tenant, transaction, stripe_transaction):
        login(tenant)

        resp = client.get("/api/payments?status=paid")

        assert [p["id"] for p in resp.get_json()["payments"]] == [stripe_transaction.id]

    def test_unknown_status_rejected(self, client, login, tenant):
        login(tenant)
        resp = client.get("/api/payments?status=bogus")
        assert resp.status_code == 400


class TestGetPayment:

    def test_detail_with_refundable_amount(self, client, login, tenant, paid_transaction):
        login(tenant)

        resp = client.get("/api/payments/987654321")

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["payment_status"] == "paid"
        assert body["refundable_amount"] == "150.00"

    def test_other_tenant_gets_404(self, client, login, other_tenant, paid_transaction):
        login(other_tenant)

        resp = client.get("/api/payments/987654321")

        assert resp.status_code == 404
        assert resp.get_json()["error"] == "payment_not_found"


class TestRefundEndpoint:

    def test_partial_refund(self, client, login, db_session, tenant, paid_transaction, mp_api):
        login(tenant)

        resp = client.post("/api/payments/987654321/refunds", json={"amount": "30.00"})

        assert resp.status_code == 201
        body = resp.get_json()
        assert body["refund"]["refunded_amount"] == "30.00"
        assert body["refund"]["initiator"] == f"tenant:{tenant.id}"
        assert body["payment"]["payment_status"] == "partially_refunded"
        assert body["payment"]["amount_paid"] == "120.00"

    def test_retry_with_same_key_refunds_once(self, client, login, tenant,
                                             paid_transaction, mp_api):
        login(tenant)
        body = {"amount": "30.00", "idempotency_key": "client-key-1"}

        first = client.post("/api/payments/987654321/refunds", json=body)
        again = client.post("/api/payments/987654321/refunds", json=body)

        assert first.status_code == 201
        assert again.status_code == 201
        assert again.get_json()["refund"]["id"] == first.get_json()["refund"]["id"]
        assert again.get_json()["payment"]["amount_paid"] == "120.00"
        assert len(mp_api.calls_to("POST", "/refunds")) == 1

    def test_full_refund(self, client, login, tenant, paid_transaction, mp_api):
        login(tenant)

        resp = client.post("/api/payments/987654321/refunds", json={})

        assert resp.status_code == 201
        assert resp.get_json()["payment"]["payment_status"] == "refunded"

    def test_amount_above_balance_is_422(self, client, login, tenant, paid_transaction,
                                         mp_api):
        login(tenant)

        resp = client.post("/api/payments/987654321/refunds", json={"amount": "500"})

        assert resp.status_code == 422
        body = resp.get_json()
        assert body["error"] == "amount_exceeds_balance"
        assert body["detail"] == {"refundable": "150.00"}
        assert mp_api.calls_to("POST", "/refunds") == []

    def test_non_numeric_amount_is_422(self, client, login, tenant, paid_transaction):
        login(tenant)
        resp = client.post("/api/payments/987654321/refunds", json={"amount": "thirty"})
        assert resp.status_code == 422
        assert resp.get_json()["error"] == "invalid_amount"

    def test_provider_rejection_surfaces_body(self, client, login, tenant, paid_transaction,
                                              mp_api):
        mp_api.refund_responses.append(
            (400, {"message": "Payment already refunded", "status": 400})
        )
        login(tenant)

        resp = client.post("/api/payments/987654321/refunds", json={})

        assert resp.status_code == 422
        assert resp.get_json()["detail"]["message"] == "Payment already refunded"

    def test_disconnected_tenant_told_to_reconnect(self, client, login, db_session, tenant,
                                                   paid_transaction, mp_api):
        tenant.mp_connection_status = "disconnected"
        tenant.mp_disconnected_reason = "invalid_grant"
        db_session.commit()
        login(tenant)

        resp = client.post("/api/payments/987654321/refunds", json={})

        assert resp.status_code == 401
        body = resp.get_json()
        assert body["error"] == "credential_expired"
        assert body["action"] == "reconnect"

    def test_other_tenant_cannot_refund(self, client, login, other_tenant, paid_transaction,
                                        mp_api):
        login(other_tenant)

        resp = client.post("/api/payments/987654321/refunds", json={})

        assert resp.status_code == 404
        assert mp_api.calls_to("POST", "/refunds") == []

    def test_list_refunds(self, client, login, tenant, paid_transaction, mp_api):
        login(tenant)
        client.post("/api/payments/987654321/refunds", json={"amount": "10.00"})

        resp = client.get("/api/payments/987654321/refunds")

        assert resp.status_code == 200
        body = resp.get_json()
        assert len(body["records"]) == 1
        assert len(body["provider_refunds"]) == 1


class TestSettings:

    def test_get_settings(self, client, login, tenant):
        login(tenant)

        body = client.get("/api/payments/settings").get_json()

        assert body["payments_enabled"] is True
        assert body["mercadopago"]["connected"] is True
        assert body["mercadopago"]["user_id"] == "777"
        assert body["stripe"]["account_id"] == "acct_test"

    def test_disable_payments(self, client, login, db_session, tenant):
        login(tenant)

        resp = client.put("/api/payments/settings", json={"payments_enabled": False})

        assert resp.status_code == 200
        db_session.refresh(tenant)
        assert tenant.payments_enabled is False

    def test_enable_without_provider_is_422(self, client, login, other_tenant):
        login(other_tenant)

        resp = client.put("/api/payments/settings", json={"payments_enabled": True})

        assert resp.status_code == 422
        assert resp.get_json()["error"] == "not_connected"

    def test_non_boolean_rejected(self, client, login, tenant):
        login(tenant)
        resp = client.put("/api/payments/settings", json={"payments_enabled": "yes"})
        assert resp.status_code == 400
