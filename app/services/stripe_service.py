"""Stripe service — Connect payment webhooks.

Responsible for:
- Dispatching verified, recorded events to event-specific handlers
- Mapping PaymentIntent / Checkout / Charge state onto transactions
- Keeping tenant Connect account capabilities in sync (account.updated)

Idempotency is provided by the inbound_events ledger; the canonical event
time for every Stripe transition is event.created.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

import stripe
from flask import current_app

from app.errors import PaymentEngineError
from app.extensions import db
from app.models.audit import log_audit
from app.models.tenant import TenantAccount
from app.services.event_ledger import mark_terminal
from app.services.payment_resolver import resolve_stripe_event
from app.services.status_reconciler import apply_transition, normalize_stripe_status

logger = logging.getLogger(__name__)

SOURCE = "webhook:stripe"


def _event_time(event):
    """Canonical event time: event.created (unix seconds) as aware UTC."""
    ts = event.get("created")
    if ts:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    return None


def _from_cents(cents):
    if cents is None:
        return None
    return (Decimal(int(cents)) / 100).quantize(Decimal("0.01"))


# ──────────────────────────────────────────────
# Event processing
# ──────────────────────────────────────────────

def process_event(inbound_event):
    """Process a recorded Stripe InboundEvent.

    Returns True when processed, False when it ended up failed.
    """
    event = inbound_event.payload
    event_type = event.get("type")

    handlers = {
        "checkout.session.completed": _handle_checkout_completed,
        "payment_intent.succeeded": _handle_payment_intent,
        "payment_intent.payment_failed": _handle_payment_intent,
        "payment_intent.processing": _handle_payment_intent,
        "payment_intent.canceled": _handle_payment_intent,
        "charge.refunded": _handle_charge_refunded,
        "charge.refund.updated": _handle_refund_updated,
        "account.updated": _handle_account_updated,
    }

    handler = handlers.get(event_type)
    if handler is None:
        logger.info(f"Ignoring Stripe event type {event_type} ({event.get('id')})")
        mark_terminal(inbound_event)
        return True

    try:
        tenant_id = handler(event)
        db.session.commit()
    except PaymentEngineError as e:
        db.session.rollback()
        logger.warning(f"Stripe event {event.get('id')} ({event_type}) failed: {e.code}: {e}")
        mark_terminal(inbound_event, error=f"{e.code}: {e}")
        return False
    except Exception as e:
        logger.error(f"Error handling {event_type}: {e}", exc_info=True)
        db.session.rollback()
        mark_terminal(inbound_event, error=e)
        return False

    mark_terminal(inbound_event, tenant_id=tenant_id)
    return True


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _handle_checkout_completed(event):
    """Handle checkout.session.completed.

    The session's payment_status tells whether money has moved yet
    (async payment methods complete later via payment_intent.*).
    """
    session = event["data"]["object"]
    resolution = resolve_stripe_event(event)

    payment_status = session.get("payment_status")
    if payment_status == "paid":
        status = "paid"
    elif payment_status == "no_payment_required":
        status = "not_required"
    else:
        status = "pending"

    apply_transition(
        resolution.transaction,
        status,
        event_time=_event_time(event),
        amount_paid=_from_cents(session.get("amount_total")) if status == "paid" else None,
        provider_payment_id=session.get("payment_intent"),
        provider_order_id=session.get("id"),
        source=SOURCE,
    )
    return resolution.tenant.id


def _handle_payment_intent(event):
    """Handle payment_intent.succeeded / processing / payment_failed / canceled."""
    intent = event["data"]["object"]
    resolution = resolve_stripe_event(event)

    if event["type"] == "payment_intent.payment_failed":
        # the intent itself goes back to requires_payment_method
        status = "failed"
    else:
        status = normalize_stripe_status(intent.get("status"))

    apply_transition(
        resolution.transaction,
        status,
        event_time=_event_time(event),
        amount_paid=_from_cents(intent.get("amount_received")) if status == "paid" else None,
        provider_payment_id=intent.get("id"),
        source=SOURCE,
    )

    if status == "failed":
        error = intent.get("last_payment_error") or {}
        log_audit(resolution.tenant.id, "payment.failed", {
            "transaction_id": resolution.transaction.id,
            "payment_intent": intent.get("id"),
            "reason": error.get("message"),
        }, actor=SOURCE)
    return resolution.tenant.id


def _apply_charge(event, charge, resolution):
    amount = charge.get("amount") or 0
    refunded = charge.get("amount_refunded") or 0
    captured = charge.get("amount_captured")
    if captured is None:
        captured = amount

    if refunded <= 0:
        status = "paid" if charge.get("paid", True) else "failed"
    elif refunded >= amount:
        status = "refunded"
    else:
        status = "partially_refunded"

    return apply_transition(
        resolution.transaction,
        status,
        event_time=_event_time(event),
        amount_paid=_from_cents(max(captured - refunded, 0)),
        provider_payment_id=charge.get("payment_intent"),
        source=SOURCE,
    )


def _handle_charge_refunded(event):
    """Handle charge.refunded: full vs partial from amount_refunded."""
    charge = event["data"]["object"]
    resolution = resolve_stripe_event(event)
    _apply_charge(event, charge, resolution)
    return resolution.tenant.id


def _handle_refund_updated(event):
    """Handle charge.refund.updated.

    A refund can fail or be canceled after creation; the charge is
    re-read so the transaction reflects what was actually refunded.
    """
    refund = event["data"]["object"]
    resolution = resolve_stripe_event(event)

    charge_id = refund.get("charge")
    if not charge_id:
        logger.warning(f"charge.refund.updated {refund.get('id')} has no charge")
        return resolution.tenant.id

    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]
    charge = stripe.Charge.retrieve(charge_id)
    _apply_charge(event, charge, resolution)

    if refund.get("status") in ("failed", "canceled"):
        log_audit(resolution.tenant.id, "refund.reversed_by_provider", {
            "transaction_id": resolution.transaction.id,
            "refund_id": refund.get("id"),
            "status": refund.get("status"),
            "failure_reason": refund.get("failure_reason"),
        }, actor=SOURCE)
    return resolution.tenant.id


def _handle_account_updated(event):
    """Handle account.updated: sync the Connect account's charge capability."""
    account = event["data"]["object"]
    account_id = account.get("id") or event.get("account")

    tenant = TenantAccount.query.filter_by(stripe_account_id=account_id).first()
    if not tenant:
        logger.warning(f"account.updated: no tenant for Stripe account {account_id}")
        return None

    charges_enabled = bool(account.get("charges_enabled"))
    if tenant.stripe_charges_enabled != charges_enabled:
        tenant.stripe_charges_enabled = charges_enabled
        log_audit(tenant.id, "stripe.account_updated", {
            "stripe_account_id": account_id,
            "charges_enabled": charges_enabled,
        }, actor=SOURCE)
        db.session.flush()
    return tenant.id
