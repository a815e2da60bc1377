"""Background processing of recorded webhook events.

The webhook endpoints acknowledge first and hand the ledger row id to
run_in_background. Work runs in a daemon thread with its own app context
(and so its own database session). With WEBHOOK_PROCESS_INLINE set (tests,
one-off scripts) the work runs synchronously in the caller instead.
"""

import logging
import threading

from flask import current_app

from app.extensions import db
from app.models.inbound_event import InboundEvent

logger = logging.getLogger(__name__)


def _run_with_context(app, func, args):
    with app.app_context():
        try:
            func(*args)
        except Exception as e:
            # Processors mark the ledger themselves; this only catches crashes
            # before the event could be loaded.
            logger.error(f"Background task {func.__name__} crashed: {e}", exc_info=True)
            db.session.rollback()


def run_in_background(func, *args):
    """Run func(*args) after the current request, in a separate thread."""
    app = current_app._get_current_object()

    if app.config.get("WEBHOOK_PROCESS_INLINE"):
        func(*args)
        return None

    thread = threading.Thread(target=_run_with_context, args=(app, func, args))
    thread.daemon = True
    thread.start()
    return thread


def process_inbound_event(event_id):
    """Dispatch a recorded event to its provider's processor."""
    event = db.session.get(InboundEvent, event_id)
    if event is None:
        logger.warning(f"Inbound event {event_id} vanished before processing")
        return False
    if event.status == "processed":
        return True

    if event.provider == "stripe":
        from app.services.stripe_service import process_event
    else:
        from app.services.mercadopago_webhook_service import process_event

    return process_event(event)


def reprocess_pending(provider=None, older_than=None):
    """Synchronously re-run every event stuck at received/failed.

    Safe after a cold restart: reconciliation writes are conditional, so
    replaying an event that already took effect changes nothing.
    Returns (processed, failed) counts.
    """
    from app.services.event_ledger import pending_events

    processed = failed = 0
    for event in pending_events(provider=provider, older_than=older_than):
        event.attempts = (event.attempts or 0) + 1
        db.session.commit()
        if process_inbound_event(event.id):
            processed += 1
        else:
            failed += 1
    return processed, failed
