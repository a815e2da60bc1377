"""Mercado Pago notification processing.

Runs after the webhook has been acknowledged (see blueprints/webhooks.py).
Topics handled:
  - payment         -> resolve tenant + transaction, reconcile the payment
  - merchant_order  -> reconcile every payment of the order
Other topics are recorded and marked processed without side effects.

Processing always ends in mark_terminal, so the ledger row never stays at
"received" after an attempt.
"""

import logging

from app.errors import PaymentEngineError
from app.extensions import db
from app.services.event_ledger import mark_terminal
from app.services.payment_resolver import (
    resolve_merchant_order,
    resolve_tenant_and_transaction,
)
from app.services.status_reconciler import apply_payment

logger = logging.getLogger(__name__)

SOURCE = "webhook:mercadopago"


def _handle_payment(payload):
    resolution = resolve_tenant_and_transaction(payload)
    apply_payment(resolution.transaction, resolution.payment, source=SOURCE)
    logger.info(
        f"Payment {resolution.payment.get('id')} reconciled for transaction "
        f"{resolution.transaction.id} (tenant {resolution.tenant.id})"
    )
    return resolution.tenant.id


def _handle_merchant_order(payload):
    resolution = resolve_merchant_order(payload)
    order_id = resolution.order.get("id")

    if not resolution.payments:
        logger.info(f"Merchant order {order_id} has no payments yet")

    synced = 0
    for item in resolution.payments:
        if item.transaction is None:
            continue
        apply_payment(item.transaction, item.payment, source=SOURCE)
        synced += 1

    logger.info(
        f"Merchant order {order_id}: {synced}/{len(resolution.payments)} "
        f"payments reconciled (tenant {resolution.tenant.id})"
    )
    return resolution.tenant.id


TOPIC_HANDLERS = {
    "payment": _handle_payment,
    "merchant_order": _handle_merchant_order,
}


def process_event(event):
    """Process a recorded Mercado Pago InboundEvent.

    Returns True when processed, False when it ended up failed.
    """
    handler = TOPIC_HANDLERS.get(event.topic)
    if handler is None:
        logger.info(f"Ignoring Mercado Pago topic {event.topic!r} ({event.notification_id})")
        mark_terminal(event)
        return True

    try:
        tenant_id = handler(event.payload)
        db.session.commit()
    except PaymentEngineError as e:
        db.session.rollback()
        logger.warning(
            f"Mercado Pago event {event.notification_id} ({event.topic}) failed: "
            f"{e.code}: {e}"
        )
        mark_terminal(event, error=f"{e.code}: {e}")
        return False
    except Exception as e:
        db.session.rollback()
        logger.error(
            f"Unexpected error processing Mercado Pago event {event.notification_id}: {e}",
            exc_info=True,
        )
        mark_terminal(event, error=e)
        return False

    mark_terminal(event, tenant_id=tenant_id)
    return True
