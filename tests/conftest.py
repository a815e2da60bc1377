"""Shared test fixtures for the payment reconciliation test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off, inline webhooks)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- tenant / other_tenant: connected and unconnected tenant accounts
- transaction / stripe_transaction: payable transactions of `tenant`
- mp_api: fake Mercado Pago REST API behind requests.request
- mp_headers: signs a Mercado Pago webhook body
- login: logs a tenant into the test client session
"""

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from app import create_app
from app.extensions import db as _db
from app.models.tenant import TenantAccount
from app.models.transaction import Transaction

MP_BASE_URL = "https://api.mercadopago.test"
PLATFORM_TOKEN = "APP_USR-platform-test"
SELLER_TOKEN = "APP_USR-seller-777"
WEBHOOK_SECRET = "mp_webhook_secret_test"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


# ──────────────────────────────────────────────
# Tenants & transactions
# ──────────────────────────────────────────────

@pytest.fixture
def tenant(db_session):
    """Tenant connected to Mercado Pago (collector 777) and Stripe."""
    tenant = TenantAccount(
        name="Clinica Sorriso",
        email="contato@sorriso.example",
        payments_enabled=True,
        mp_user_id="777",
        mp_connection_status="connected",
        stripe_account_id="acct_test",
    )
    tenant.mp_access_token = SELLER_TOKEN
    tenant.mp_refresh_token = "TG-refresh-777"
    tenant.mp_token_expires_at = datetime.now(timezone.utc) + timedelta(hours=6)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture
def other_tenant(db_session):
    """Tenant without any provider connection."""
    tenant = TenantAccount(name="Barbearia Central", email="oi@central.example")
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture
def transaction(db_session, tenant):
    """Pending Mercado Pago transaction for R$ 150.00 (external_reference 42)."""
    txn = Transaction(
        tenant_id=tenant.id,
        provider="mercadopago",
        external_reference="42",
        amount=Decimal("150.00"),
        currency="BRL",
    )
    db_session.add(txn)
    db_session.commit()
    return txn


@pytest.fixture
def stripe_transaction(db_session, tenant):
    """Paid Stripe Connect transaction for $100.00."""
    txn = Transaction(
        tenant_id=tenant.id,
        provider="stripe",
        external_reference="stripe-ref-1",
        provider_payment_id="pi_123",
        amount=Decimal("100.00"),
        amount_paid=Decimal("100.00"),
        currency="USD",
        payment_status="paid",
        legacy_status="paid",
    )
    db_session.add(txn)
    db_session.commit()
    return txn


@pytest.fixture
def login(client):
    """Return a helper that logs a tenant into the test client session."""

    def _login(tenant):
        with client.session_transaction() as sess:
            sess["_user_id"] = tenant.id
            sess["_fresh"] = True
        return client

    return _login


# ──────────────────────────────────────────────
# Mercado Pago
# ──────────────────────────────────────────────

class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self.text = json.dumps(body, default=str) if body is not None else ""
        self.content = self.text.encode()


class FakeMercadoPago:
    """Canned Mercado Pago API, installed in place of requests.request.

    payments holds the seller-scoped view of each payment; platform_payments
    overrides what the platform credential sees. refund_responses is a queue
    of (status, body) tuples or exceptions consumed by refund creation.
    """

    def __init__(self):
        self.payments = {}
        self.platform_payments = {}
        self.orders = {}
        self.refunds = {}
        self.refund_responses = []
        self.calls = []

    def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        headers = kwargs.get("headers") or {}
        platform = headers.get("Authorization") == f"Bearer {PLATFORM_TOKEN}"
        path = url.replace(MP_BASE_URL, "")
        parts = path.strip("/").split("/")

        if method == "GET" and path.startswith("/v1/payments/") and len(parts) == 3:
            payment_id = parts[2]
            if platform and payment_id in self.platform_payments:
                return FakeResponse(200, self.platform_payments[payment_id])
            if payment_id in self.payments:
                return FakeResponse(200, self.payments[payment_id])
            return FakeResponse(404, {"message": "Payment not found", "status": 404})

        if method == "GET" and path.startswith("/merchant_orders/"):
            order = self.orders.get(parts[1])
            if order is None:
                return FakeResponse(404, {"message": "Merchant order not found", "status": 404})
            return FakeResponse(200, order)

        if method == "POST" and path.endswith("/refunds"):
            payment_id = parts[2]
            if self.refund_responses:
                queued = self.refund_responses.pop(0)
                if isinstance(queued, Exception):
                    raise queued
                return FakeResponse(*queued)
            body = json.loads(kwargs.get("data") or "{}")
            amount = body.get("amount")
            if amount is None:
                amount = self.payments.get(payment_id, {}).get("transaction_amount")
            refund = {"id": 9000 + len(self.calls), "payment_id": payment_id,
                      "amount": amount, "status": "approved"}
            self.refunds.setdefault(payment_id, []).append(refund)
            return FakeResponse(201, refund)

        if method == "GET" and path.endswith("/refunds"):
            return FakeResponse(200, self.refunds.get(parts[2], []))

        return FakeResponse(404, {"message": f"No route for {method} {path}"})

    def calls_to(self, method, fragment):
        return [c for c in self.calls if c[0] == method and fragment in c[1]]


@pytest.fixture
def mp_api():
    fake = FakeMercadoPago()
    with patch("app.services.mercadopago_client.requests.request", side_effect=fake):
        yield fake


@pytest.fixture
def payment_factory():
    """Build a Mercado Pago payment body."""

    def _payment(payment_id="987654321", status="approved", collector_id=777,
                 external_reference="42", amount="150.00", **extra):
        payment = {
            "id": int(payment_id),
            "status": status,
            "status_detail": "accredited" if status == "approved" else status,
            "collector_id": collector_id,
            "external_reference": external_reference,
            "transaction_amount": amount,
            "currency_id": "BRL",
            "date_created": "2026-10-01T12:00:00.000-03:00",
            "date_last_updated": "2026-10-01T12:05:00.000-03:00",
            "order": {"id": "5550001", "type": "mercadopago"},
        }
        payment.update(extra)
        return payment

    return _payment


def sign_mp(canonical_id, request_id="req-0001", ts="1760000000", secret=WEBHOOK_SECRET):
    manifest = f"id:{canonical_id};request-id:{request_id};ts:{ts};"
    digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return {"x-signature": f"ts={ts},v1={digest}", "x-request-id": request_id}


@pytest.fixture
def mp_headers():
    """Return a helper producing valid x-signature / x-request-id headers."""
    return sign_mp
