"""Event ledger: exactly-once acknowledgement of webhook deliveries.

A delivery is recorded (status "received") before any business
processing, and always ends in mark_terminal ("processed" or "failed").
The (provider, notification_id) unique constraint is what makes
concurrent redeliveries safe: the loser of an insert race re-reads the
winner's row.
"""

import json
import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from app.errors import InvalidEventPayload
from app.extensions import db
from app.models.inbound_event import InboundEvent
from app.services.signature_service import extract_canonical_id

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


def describe_event(provider, payload):
    """Pull the ledger columns out of a provider payload.

    Returns a dict with notification_id, topic, event_type, data_id.
    """
    payload = payload or {}

    if provider == "stripe":
        data_object = (payload.get("data") or {}).get("object") or {}
        return {
            "notification_id": _as_str(payload.get("id")),
            "topic": data_object.get("object"),
            "event_type": payload.get("type"),
            "data_id": _as_str(data_object.get("id")),
        }

    return {
        "notification_id": _as_str(payload.get("id")),
        "topic": payload.get("type") or payload.get("topic"),
        "event_type": payload.get("action"),
        "data_id": extract_canonical_id(payload),
    }


def _as_str(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _raw_text(raw_body, payload):
    if raw_body is None:
        return json.dumps(payload, default=str)
    if isinstance(raw_body, bytes):
        return raw_body.decode("utf-8", errors="replace")
    return raw_body


def record_incoming(provider, payload, raw_body=None):
    """Find-or-create the ledger row for a delivery.

    Returns (event, duplicate). duplicate is True only when the row was
    already processed; the caller must then skip business processing and
    still acknowledge the delivery.

    Raises InvalidEventPayload when the payload has no notification id.
    """
    fields = describe_event(provider, payload)
    notification_id = fields["notification_id"]
    if not notification_id:
        raise InvalidEventPayload("Notification id missing from webhook payload")

    raw_text = _raw_text(raw_body, payload)

    existing = InboundEvent.query.filter_by(
        provider=provider, notification_id=notification_id
    ).first()

    if existing is None:
        event = InboundEvent(provider=provider, raw_payload=raw_text, status="received", **fields)
        db.session.add(event)
        try:
            db.session.commit()
            logger.info(f"Recorded {provider} event {notification_id} ({fields['topic']})")
            return event, False
        except IntegrityError:
            # A concurrent delivery inserted the same notification first
            db.session.rollback()
            existing = InboundEvent.query.filter_by(
                provider=provider, notification_id=notification_id
            ).first()
            if existing is None:
                raise

    if existing.status == "processed":
        logger.info(f"Duplicate {provider} event {notification_id}, skipping")
        return existing, True

    existing.raw_payload = raw_text
    existing.status = "received"
    existing.error_message = None
    existing.attempts = (existing.attempts or 0) + 1
    for key in ("topic", "event_type", "data_id"):
        if fields[key]:
            setattr(existing, key, fields[key])
    db.session.commit()
    logger.info(
        f"Re-processing {provider} event {notification_id} (attempt {existing.attempts})"
    )
    return existing, False


def mark_terminal(event, error=None, tenant_id=None):
    """Move an event to "processed", or to "failed" when error is given."""
    event.status = "failed" if error is not None else "processed"
    event.error_message = str(error)[:MAX_ERROR_LENGTH] if error is not None else None
    event.processed_at = datetime.now(timezone.utc)
    if tenant_id:
        event.tenant_id = tenant_id
    db.session.commit()

    if error is not None:
        logger.warning(
            f"{event.provider} event {event.notification_id} failed: {event.error_message}"
        )
    else:
        logger.info(f"{event.provider} event {event.notification_id} processed")
    return event


def pending_events(provider=None, older_than=None):
    """Events stuck at "received" or "failed".

    older_than is a timedelta; only events received at least that long ago
    are returned, so in-flight background work is not picked up twice.
    """
    query = InboundEvent.query.filter(InboundEvent.status.in_(["received", "failed"]))
    if provider:
        query = query.filter(InboundEvent.provider == provider)
    if older_than is not None:
        cutoff = datetime.now(timezone.utc) - older_than
        query = query.filter(InboundEvent.received_at <= cutoff)
    return query.order_by(InboundEvent.received_at.asc()).all()
