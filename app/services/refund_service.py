"""Refund orchestrator (Mercado Pago and Stripe).

Responsible for:
- Rejecting refunds that can never succeed before calling the provider
- One idempotency key per logical refund, reused across transient retries
- Moving the transaction to refunded / partially_refunded on success
- Appending a RefundRecord for every attempt, successful or not

On failure the transaction is never touched: the error is propagated with
the provider's body so the caller can tell "already refunded" from
"insufficient funds" from a network failure (only the last is retried).
"""

import logging
import time
import uuid
from decimal import Decimal

import stripe
from flask import current_app

from app.errors import (
    PaymentEngineError,
    ProviderRequestError,
    ProviderTransientError,
    RefundRejected,
    TenantUnresolved,
)
from app.extensions import db
from app.models.audit import log_audit
from app.models.refund import RefundRecord
from app.models.tenant import TenantAccount
from app.services.credential_service import ensure_valid_token
from app.services.mercadopago_client import MercadoPagoClient
from app.services.status_reconciler import apply_transition, to_amount

logger = logging.getLogger(__name__)

REFUNDABLE_STATUSES = ("paid", "partially_refunded")


def refunded_total(transaction):
    """Sum of successfully refunded amounts recorded for a transaction."""
    total = (
        db.session.query(db.func.sum(RefundRecord.refunded_amount))
        .filter(
            RefundRecord.transaction_id == transaction.id,
            RefundRecord.status != "failed",
        )
        .scalar()
    )
    return to_amount(total) or Decimal("0.00")


def refundable_balance(transaction):
    """Amount still refundable, or None when the charged amount is unknown."""
    charged = to_amount(transaction.amount)
    if charged is None:
        charged = to_amount(transaction.amount_paid)
    if charged is None:
        return None
    return max(charged - refunded_total(transaction), Decimal("0.00"))


def _recorded_refund(transaction, **criteria):
    """Earliest non-failed refund record of a transaction matching criteria."""
    return (
        transaction.refunds
        .filter_by(**criteria)
        .filter(RefundRecord.status != "failed")
        .order_by(RefundRecord.created_at.asc())
        .first()
    )


def _validate(transaction, amount):
    if transaction.payment_status == "refunded":
        raise RefundRejected(
            "Payment is already fully refunded", code="already_refunded"
        )
    if transaction.payment_status not in REFUNDABLE_STATUSES:
        raise RefundRejected(
            f"Payment in status {transaction.payment_status} cannot be refunded",
            code="not_refundable",
        )
    if not transaction.provider_payment_id:
        raise RefundRejected(
            "Payment has no provider payment id yet", code="not_refundable"
        )

    balance = refundable_balance(transaction)
    if balance is not None and balance <= 0:
        raise RefundRejected(
            "Payment is already fully refunded", code="already_refunded"
        )

    if amount is not None:
        if amount <= 0:
            raise RefundRejected("Refund amount must be positive", code="invalid_amount")
        if balance is not None and amount > balance:
            raise RefundRejected(
                f"Refund amount {amount} exceeds refundable balance {balance}",
                code="amount_exceeds_balance",
                detail={"refundable": str(balance)},
            )
    return balance


def _with_retries(call, what):
    """Run a provider call, retrying transient failures with the same key."""
    retries = current_app.config.get("REFUND_TRANSIENT_RETRIES", 1)
    backoff = current_app.config.get("REFUND_RETRY_BACKOFF_SECONDS", 1)
    attempt = 0
    while True:
        try:
            return call()
        except ProviderTransientError as e:
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning(f"{what} failed transiently (attempt {attempt}), retrying: {e}")
            if backoff:
                time.sleep(backoff * attempt)


# ──────────────────────────────────────────────
# Provider calls
# ──────────────────────────────────────────────

def _refund_mercadopago(tenant, transaction, amount, idempotency_key):
    ensure_valid_token(tenant)
    client = MercadoPagoClient.for_tenant(tenant)
    payment_id = transaction.provider_payment_id

    try:
        response = _with_retries(
            lambda: client.create_refund(payment_id, amount=amount, idempotency_key=idempotency_key),
            f"Mercado Pago refund of payment {payment_id}",
        )
    except ProviderRequestError as e:
        raise RefundRejected(
            f"Mercado Pago rejected the refund of payment {payment_id}",
            detail=e.detail,
        ) from e

    return {
        "refund_id": str(response["id"]) if response.get("id") is not None else None,
        "refunded_amount": to_amount(response.get("amount")),
        "status": response.get("status") or "approved",
        "raw": response,
    }


def _stripe_call(call):
    """Map stripe SDK errors onto the engine's error types."""
    try:
        return call()
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
        raise ProviderTransientError(f"Stripe unavailable: {e}") from e
    except (stripe.InvalidRequestError, stripe.CardError) as e:
        raise RefundRejected(
            f"Stripe rejected the refund: {e.user_message or e}",
            detail={"code": e.code, "message": str(e)},
        ) from e
    except stripe.StripeError as e:
        raise ProviderRequestError(
            f"Stripe refund failed: {e}", status_code=e.http_status
        ) from e


def _to_cents(amount):
    return int((amount * 100).to_integral_value())


def _refund_stripe(tenant, transaction, amount, idempotency_key):
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    intent_id = transaction.provider_payment_id

    params = {
        "payment_intent": intent_id,
        "reverse_transfer": True,
        "refund_application_fee": True,
        "metadata": {
            "transaction_id": transaction.id,
            "tenant_id": tenant.id,
        },
        "idempotency_key": idempotency_key,
    }
    if amount is not None:
        params["amount"] = _to_cents(amount)

    refund = _with_retries(
        lambda: _stripe_call(lambda: stripe.Refund.create(**params)),
        f"Stripe refund of {intent_id}",
    )
    raw = refund.to_dict() if hasattr(refund, "to_dict") else dict(refund)
    refunded_cents = refund.get("amount")
    return {
        "refund_id": refund.get("id"),
        "refunded_amount": (
            (Decimal(refunded_cents) / 100).quantize(Decimal("0.01"))
            if refunded_cents is not None else None
        ),
        "status": refund.get("status") or "succeeded",
        "raw": raw,
    }


def _json_safe(value):
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_json_safe(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    return value


# ──────────────────────────────────────────────
# Public API
# ──────────────────────────────────────────────

def refund(transaction, amount=None, initiator="system", idempotency_key=None):
    """Refund a paid transaction in full (amount=None) or in part.

    Returns the RefundRecord of the successful attempt. Repeating a call
    with an idempotency key that already succeeded returns that record
    without calling the provider again, and a provider answer for a refund
    already on record is not counted twice. Raises
    RefundRejected, ProviderTransientError or CredentialExpiredUnrecoverable;
    in every failure case a "failed" RefundRecord is appended and the
    transaction status is left as it was.
    """
    tenant = db.session.get(TenantAccount, transaction.tenant_id)
    if tenant is None:
        raise TenantUnresolved(f"No tenant owns transaction {transaction.id}")

    if idempotency_key:
        existing = _recorded_refund(transaction, idempotency_key=idempotency_key)
        if existing is not None:
            logger.info(
                f"Refund key {idempotency_key} already succeeded for transaction "
                f"{transaction.id} (refund {existing.refund_id}), returning it"
            )
            return existing

    amount = to_amount(amount) if amount is not None else None
    balance = _validate(transaction, amount)
    idempotency_key = idempotency_key or str(uuid.uuid4())
    provider = transaction.provider or "mercadopago"

    logger.info(
        f"Refund requested for transaction {transaction.id} "
        f"({amount or 'full'}, key={idempotency_key}, by {initiator})"
    )

    try:
        if provider == "stripe":
            result = _refund_stripe(tenant, transaction, amount, idempotency_key)
        else:
            result = _refund_mercadopago(tenant, transaction, amount, idempotency_key)
    except PaymentEngineError as e:
        db.session.rollback()
        _record_failure(tenant, transaction, provider, amount, idempotency_key, initiator, e)
        raise

    if result["refund_id"]:
        existing = _recorded_refund(transaction, refund_id=result["refund_id"])
        if existing is not None:
            logger.warning(
                f"Provider returned refund {result['refund_id']} already recorded for "
                f"transaction {transaction.id}; not counting it again"
            )
            return existing

    refunded_amount = result["refunded_amount"]
    if refunded_amount is None:
        refunded_amount = amount if amount is not None else balance

    remaining = None
    if balance is not None and refunded_amount is not None:
        remaining = max(balance - refunded_amount, Decimal("0.00"))

    is_full = amount is None or (remaining is not None and remaining <= 0)
    new_status = "refunded" if is_full else "partially_refunded"

    record = RefundRecord(
        transaction_id=transaction.id,
        tenant_id=tenant.id,
        provider=provider,
        payment_id=transaction.provider_payment_id,
        refund_id=result["refund_id"],
        requested_amount=amount,
        refunded_amount=refunded_amount,
        currency=transaction.currency or "BRL",
        status=result["status"],
        idempotency_key=idempotency_key,
        initiator=initiator,
        raw_response=_json_safe(result["raw"]),
    )
    db.session.add(record)
    db.session.flush()

    apply_transition(
        transaction,
        new_status,
        amount_paid=remaining if remaining is not None else Decimal("0.00"),
        source=f"refund:{initiator}",
    )
    log_audit(tenant.id, "refund.succeeded", {
        "transaction_id": transaction.id,
        "payment_id": record.payment_id,
        "refund_id": record.refund_id,
        "requested_amount": str(amount) if amount is not None else None,
        "refunded_amount": str(refunded_amount) if refunded_amount is not None else None,
        "status": new_status,
        "idempotency_key": idempotency_key,
    }, actor=initiator)
    db.session.commit()

    logger.info(
        f"Refund {record.refund_id} for transaction {transaction.id} succeeded "
        f"({refunded_amount}), status now {new_status}"
    )
    return record


def _record_failure(tenant, transaction, provider, amount, idempotency_key, initiator, error):
    record = RefundRecord(
        transaction_id=transaction.id,
        tenant_id=tenant.id,
        provider=provider,
        payment_id=transaction.provider_payment_id,
        requested_amount=amount,
        currency=transaction.currency or "BRL",
        status="failed",
        idempotency_key=idempotency_key,
        initiator=initiator,
        error_message=str(error),
        raw_response=_json_safe(error.detail) if isinstance(error.detail, (dict, list)) else None,
    )
    db.session.add(record)
    log_audit(tenant.id, "refund.failed", {
        "transaction_id": transaction.id,
        "payment_id": transaction.provider_payment_id,
        "requested_amount": str(amount) if amount is not None else None,
        "error": error.code,
        "idempotency_key": idempotency_key,
    }, actor=initiator)
    db.session.commit()
    logger.error(f"Refund for transaction {transaction.id} failed: {error}")
    return record


def list_refunds(transaction):
    """Provider refund list (Mercado Pago) plus local refund records."""
    records = (
        transaction.refunds
        .order_by(RefundRecord.created_at.asc())
        .all()
    )
    provider_refunds = []

    if transaction.provider != "stripe" and transaction.provider_payment_id:
        tenant = db.session.get(TenantAccount, transaction.tenant_id)
        ensure_valid_token(tenant)
        provider_refunds = MercadoPagoClient.for_tenant(tenant).list_refunds(
            transaction.provider_payment_id
        )

    return {
        "provider_refunds": _json_safe(provider_refunds),
        "records": [r.to_dict() for r in records],
    }
