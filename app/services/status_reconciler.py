"""Status reconciler: provider statuses -> normalized transaction status.

Providers deliver events out of order and more than once, and several
notifications can describe the same transaction at the same time. All
writes therefore go through one conditional UPDATE (no read-then-write):

    UPDATE transactions SET payment_status, legacy_status, amount_paid,
                            provider_updated_at
     WHERE id = :id
       AND (payment_status != :status OR amount_paid IS DISTINCT FROM :amount)
       AND (provider_updated_at IS NULL OR provider_updated_at <= :event_time)
       AND NOT (pre-refund status over a refund status, unless strictly newer)
       AND (provider_payment_id IS NULL OR provider_payment_id = :payment_id)

Canonical event time per provider:
  - Mercado Pago: date_last_updated of the fetched payment
  - Stripe:       event.created
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import and_, not_, or_, select, update

from app.extensions import db
from app.models.audit import log_audit
from app.models.transaction import Transaction

logger = logging.getLogger(__name__)

MP_STATUS_MAP = {
    "approved": "paid",
    "authorized": "paid",
    "refunded": "refunded",
    "partially_refunded": "partially_refunded",
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "charged_back": "cancelled",
    "reversed": "cancelled",
    "in_process": "in_process",
    "in_mediation": "in_process",
    "pending": "pending",
}

REFUND_STATUSES = ("refunded", "partially_refunded")

# Statuses a delayed event must not use to overwrite a refund.
PRE_REFUND_STATUSES = ("paid", "pending", "in_process")

# Only a payment that actually captured money claims the write-once id.
CAPTURED_STATUSES = ("paid",) + REFUND_STATUSES


# ──────────────────────────────────────────────
# Normalization
# ──────────────────────────────────────────────

def normalize_status(provider_status):
    """Map a Mercado Pago payment status. Unknown statuses become failed."""
    if not provider_status:
        return "failed"
    return MP_STATUS_MAP.get(str(provider_status).strip().lower(), "failed")


def normalize_payment_status(payment):
    """Normalized status for a full MP payment object.

    An approved payment with status_detail=partially_refunded is reported
    as partially_refunded.
    """
    status = normalize_status(payment.get("status"))
    if status == "paid" and payment.get("status_detail") == "partially_refunded":
        return "partially_refunded"
    return status


def normalize_stripe_status(stripe_status):
    """Map a Stripe PaymentIntent status."""
    value = str(stripe_status or "").strip().lower()
    if value == "succeeded":
        return "paid"
    if value == "processing":
        return "in_process"
    if value.startswith("requires_"):
        return "pending"
    if value == "canceled":
        return "cancelled"
    return "failed"


def legacy_status(status):
    """Derived pending/paid/refunded label."""
    if status == "paid":
        return "paid"
    if status in REFUND_STATUSES:
        return "refunded"
    return "pending"


def parse_event_time(value):
    """Parse a provider timestamp (ISO-8601 string or unix seconds) to aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float, Decimal)):
        parsed = datetime.fromtimestamp(int(value), tz=timezone.utc)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable provider timestamp: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_amount(value):
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        logger.warning(f"Unparseable amount: {value!r}")
        return None


# ──────────────────────────────────────────────
# Transitions
# ──────────────────────────────────────────────

def _fill_once(transaction_id, column, value):
    """Set a write-once column only while it is still NULL."""
    if value is None:
        return False
    result = db.session.execute(
        update(Transaction)
        .where(Transaction.id == transaction_id, column.is_(None))
        .values({column.key: str(value)})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _is_foreign_payment(transaction_id, payment_id):
    bound = db.session.execute(
        select(Transaction.provider_payment_id).where(Transaction.id == transaction_id)
    ).scalar()
    return bound is not None and bound != payment_id


def apply_transition(transaction, status, event_time=None, amount_paid=None,
                     provider_payment_id=None, provider_order_id=None,
                     source="system"):
    """Apply a normalized status to a transaction atomically.

    event_time=None is a local transition (e.g. a refund we issued): no
    staleness guard, and a refund status still cannot be regressed. A local
    refund stamps provider_updated_at with the current time so provider
    events from before the refund stay stale.

    provider_payment_id is write-once and only claimed by a captured
    payment. Once set, events for any other payment id (a retried attempt
    on the same external reference) leave the transaction alone. The
    captured payment that claims the id overrides whatever unbound attempt
    set the status before it, however recent.

    Returns True when the status/amount row changed. Flushes only; the
    caller owns the commit.
    """
    transaction_id = transaction.id
    previous_status = transaction.payment_status
    amount_paid = to_amount(amount_paid)
    payment_id = str(provider_payment_id) if provider_payment_id is not None else None

    claimed = False
    if status in CAPTURED_STATUSES:
        claimed = _fill_once(transaction_id, Transaction.provider_payment_id, payment_id)
    identifiers_changed = claimed
    identifiers_changed |= _fill_once(
        transaction_id, Transaction.provider_order_id, provider_order_id
    )

    values = {
        "payment_status": status,
        "legacy_status": legacy_status(status),
    }
    differs = Transaction.payment_status != status
    if amount_paid is not None:
        values["amount_paid"] = amount_paid
        differs = or_(differs, Transaction.amount_paid.is_distinct_from(amount_paid))

    conditions = [Transaction.id == transaction_id, differs]
    if payment_id is not None:
        conditions.append(or_(
            Transaction.provider_payment_id.is_(None),
            Transaction.provider_payment_id == payment_id,
        ))

    if event_time is not None:
        values["provider_updated_at"] = event_time
    if event_time is not None and not claimed:
        conditions.append(or_(
            Transaction.provider_updated_at.is_(None),
            Transaction.provider_updated_at <= event_time,
        ))
    elif status in REFUND_STATUSES:
        values["provider_updated_at"] = datetime.now(timezone.utc)

    if status in PRE_REFUND_STATUSES:
        refunded = Transaction.payment_status.in_(REFUND_STATUSES)
        if event_time is None:
            conditions.append(not_(refunded))
        else:
            conditions.append(or_(
                not_(refunded),
                and_(
                    Transaction.provider_updated_at.isnot(None),
                    Transaction.provider_updated_at < event_time,
                ),
            ))

    result = db.session.execute(
        update(Transaction)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    changed = result.rowcount == 1

    if changed or identifiers_changed:
        db.session.expire(transaction)

    if changed:
        logger.info(
            f"Transaction {transaction_id} {previous_status} -> {status} ({source})"
        )
        log_audit(transaction.tenant_id, "payment.status_updated", {
            "transaction_id": transaction_id,
            "external_reference": transaction.external_reference,
            "from": previous_status,
            "to": status,
            "amount_paid": str(amount_paid) if amount_paid is not None else None,
            "event_time": event_time.isoformat() if event_time else None,
            "source": source,
        }, actor=source)
    elif payment_id is not None and _is_foreign_payment(transaction_id, payment_id):
        logger.warning(
            f"Transaction {transaction_id} ignored {status} from payment {payment_id}: "
            f"bound to another payment ({source})"
        )
        log_audit(transaction.tenant_id, "payment.foreign_payment_ignored", {
            "transaction_id": transaction_id,
            "external_reference": transaction.external_reference,
            "payment_id": payment_id,
            "status": status,
            "source": source,
        }, actor=source)
    else:
        logger.info(
            f"Transaction {transaction_id} transition to {status} skipped "
            f"(unchanged, stale or regressive; source={source})"
        )

    return changed


def realized_amount(payment, status):
    """Amount actually realized for an MP payment in the given status."""
    if status == "paid":
        return to_amount(payment.get("transaction_amount"))
    if status in REFUND_STATUSES:
        released = payment.get("money_release_amount")
        if released is None:
            released = payment.get("transaction_amount")
        return to_amount(released)
    return None


def apply_payment(transaction, payment, source="webhook:mercadopago"):
    """Reconcile a transaction against a fetched Mercado Pago payment."""
    status = normalize_payment_status(payment)
    event_time = parse_event_time(
        payment.get("date_last_updated") or payment.get("date_created")
    )

    if transaction.amount is None and payment.get("transaction_amount") is not None:
        transaction.amount = to_amount(payment["transaction_amount"])
    if payment.get("currency_id") and not transaction.currency:
        transaction.currency = payment["currency_id"]
    db.session.flush()

    order = payment.get("order") or {}
    return apply_transition(
        transaction,
        status,
        event_time=event_time,
        amount_paid=realized_amount(payment, status),
        provider_payment_id=payment.get("id"),
        provider_order_id=order.get("id"),
        source=source,
    )
