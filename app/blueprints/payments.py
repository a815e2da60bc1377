"""Payments blueprint — /api/payments/*

Tenant-facing JSON API. The logged-in TenantAccount (Flask-Login) is the
principal; a payment that belongs to another tenant is reported as 404.

Routes:
- GET  /api/payments                          — recent payments
- GET  /api/payments/settings                 — payment settings + connection state
- PUT  /api/payments/settings                 — toggle payments_enabled
- GET  /api/payments/<payment_id>             — payment status
- POST /api/payments/<payment_id>/refunds     — full or partial refund
- GET  /api/payments/<payment_id>/refunds     — provider + local refund history
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from app.errors import CredentialExpiredUnrecoverable, PaymentEngineError, RefundRejected
from app.extensions import db, limiter
from app.models.transaction import PAYMENT_STATUSES, Transaction
from app.services.payment_resolver import find_transaction_for_tenant
from app.services.refund_service import list_refunds, refund, refundable_balance
from app.services.status_reconciler import to_amount

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")

MAX_PAGE_SIZE = 100


@payments_bp.errorhandler(PaymentEngineError)
def handle_engine_error(error):
    body = error.to_dict()
    if isinstance(error, CredentialExpiredUnrecoverable):
        body["action"] = "reconnect"
        body["message"] = (
            "Your Mercado Pago connection has expired. "
            "Reconnect your account to keep receiving and refunding payments."
        )
    logger.info(f"Payments API error {error.http_status} {error.code}: {error}")
    return jsonify(body), error.http_status


@payments_bp.errorhandler(500)
def handle_internal_error(error):
    logger.error(f"Payments API failure: {getattr(error, 'original_exception', error)}")
    return jsonify({"error": "internal_error", "message": "Something went wrong."}), 500


# ──────────────────────────────────────────────
# GET /api/payments
# ──────────────────────────────────────────────

@payments_bp.route("", methods=["GET"])
@login_required
def list_payments():
    """Most recent payments of the current tenant, optionally by status."""
    try:
        limit = min(int(request.args.get("limit", 50)), MAX_PAGE_SIZE)
    except ValueError:
        limit = 50

    query = Transaction.query.filter_by(tenant_id=current_user.id)
    status = request.args.get("status")
    if status:
        if status not in PAYMENT_STATUSES:
            return jsonify({"error": "invalid_status", "message": f"Unknown status {status}"}), 400
        query = query.filter_by(payment_status=status)

    transactions = query.order_by(Transaction.created_at.desc()).limit(limit).all()
    return jsonify({"payments": [t.to_dict() for t in transactions]})


# ──────────────────────────────────────────────
# GET|PUT /api/payments/settings
# ──────────────────────────────────────────────

def _settings_payload(tenant):
    return {
        "payments_enabled": tenant.payments_enabled,
        "mercadopago": {
            "connected": tenant.mp_connected,
            "status": tenant.mp_connection_status,
            "user_id": tenant.mp_user_id,
            "disconnected_reason": tenant.mp_disconnected_reason,
            "token_expires_at": (
                tenant.mp_token_expires_at.isoformat() if tenant.mp_token_expires_at else None
            ),
        },
        "stripe": {
            "account_id": tenant.stripe_account_id,
            "charges_enabled": tenant.stripe_charges_enabled,
        },
    }


@payments_bp.route("/settings", methods=["GET"])
@login_required
def get_settings():
    return jsonify(_settings_payload(current_user))


@payments_bp.route("/settings", methods=["PUT"])
@login_required
def update_settings():
    """Enable/disable online payments.

    Enabling requires at least one connected provider.
    """
    data = request.get_json(silent=True) or {}
    if "payments_enabled" not in data or not isinstance(data["payments_enabled"], bool):
        return jsonify({
            "error": "invalid_settings",
            "message": "payments_enabled (boolean) is required.",
        }), 400

    tenant = current_user
    enabled = data["payments_enabled"]
    if enabled and not (tenant.mp_connected or tenant.stripe_charges_enabled):
        return jsonify({
            "error": "not_connected",
            "message": "Connect Mercado Pago or Stripe before enabling payments.",
        }), 422

    tenant.payments_enabled = enabled
    db.session.commit()
    logger.info(f"Tenant {tenant.id} payments_enabled={enabled}")
    return jsonify(_settings_payload(tenant))


# ──────────────────────────────────────────────
# GET /api/payments/<payment_id>
# ──────────────────────────────────────────────

@payments_bp.route("/<payment_id>", methods=["GET"])
@login_required
def get_payment(payment_id):
    transaction = find_transaction_for_tenant(current_user, payment_id)
    body = transaction.to_dict()
    balance = refundable_balance(transaction)
    body["refundable_amount"] = str(balance) if balance is not None else None
    return jsonify(body)


# ──────────────────────────────────────────────
# /api/payments/<payment_id>/refunds
# ──────────────────────────────────────────────

@payments_bp.route("/<payment_id>/refunds", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def create_refund(payment_id):
    """Refund a payment. Body: {"amount": "30.00"} (omit for full refund)."""
    data = request.get_json(silent=True) or {}

    amount = None
    if data.get("amount") is not None:
        amount = to_amount(data["amount"])
        if amount is None:
            raise RefundRejected("Refund amount is not a number", code="invalid_amount")

    transaction = find_transaction_for_tenant(current_user, payment_id)
    record = refund(
        transaction,
        amount=amount,
        initiator=f"tenant:{current_user.id}",
        idempotency_key=data.get("idempotency_key"),
    )
    db.session.refresh(transaction)
    return jsonify({
        "refund": record.to_dict(),
        "payment": transaction.to_dict(),
    }), 201


@payments_bp.route("/<payment_id>/refunds", methods=["GET"])
@login_required
def get_refunds(payment_id):
    transaction = find_transaction_for_tenant(current_user, payment_id)
    return jsonify(list_refunds(transaction))
