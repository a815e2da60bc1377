"""Webhooks blueprint — /webhooks/mercadopago and /stripe/webhooks

Receives provider notifications. CSRF-exempt.
Raw bodies are required for signature verification.

Both endpoints answer as soon as the signature is verified and the
delivery is recorded in the event ledger; business processing continues
in the background so slow provider calls never cause retry storms.
"""

import json
import logging

from flask import Blueprint, current_app, jsonify, request

from app.errors import InvalidEventPayload, SignatureInvalid
from app.services.event_ledger import record_incoming
from app.services.signature_service import parse_body, verify_signature, verify_stripe_event
from app.services.task_runner import process_inbound_event, run_in_background

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.route("/webhooks/mercadopago", methods=["POST"])
def mercadopago_webhook():
    """Receive a Mercado Pago notification.

    1. Get raw body (byte-for-byte, required for signature verification)
    2. Verify x-signature / x-request-id with MP_WEBHOOK_SECRET
    3. Record in the event ledger (duplicates short-circuit)
    4. Return 200, then process in the background
    """
    raw_body = request.get_data()
    signature = request.headers.get("x-signature")
    request_id = request.headers.get("x-request-id")

    logger.info(
        f"Mercado Pago webhook received ({len(raw_body)} bytes, "
        f"signature={'yes' if signature else 'no'}, request_id={request_id})"
    )

    valid = verify_signature(
        raw_body,
        signature,
        request_id,
        current_app.config.get("MP_WEBHOOK_SECRET"),
        query_params=request.args,
        skip_verification=current_app.config.get("MP_WEBHOOK_DISABLE_SIGNATURE_VALIDATION", False),
    )
    if not valid:
        error = SignatureInvalid("Invalid Mercado Pago signature")
        return jsonify({"error": "unauthorized", "code": error.code}), error.http_status

    payload = parse_body(raw_body)
    if payload is None:
        return jsonify({"error": "invalid_payload", "code": InvalidEventPayload.code}), 400

    # --- Ledger ---
    try:
        event, duplicate = record_incoming("mercadopago", payload, raw_body)
    except InvalidEventPayload as e:
        logger.warning(f"Mercado Pago webhook rejected: {e}")
        return jsonify({"error": "invalid_payload", "code": e.code}), e.http_status

    if not duplicate:
        run_in_background(process_inbound_event, event.id)

    return jsonify({"ok": True, "duplicate": duplicate}), 200


@webhooks_bp.route("/stripe/webhooks", methods=["POST"])
def stripe_webhook():
    """Receive a Stripe webhook event.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET
    3. Record in the event ledger (duplicates short-circuit)
    4. Return 200, then process in the background
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    # --- Verify signature ---
    try:
        event = verify_stripe_event(payload, sig_header)
    except SignatureInvalid as e:
        return jsonify({"error": "unauthorized", "code": e.code}), e.http_status

    event_data = event.to_dict() if hasattr(event, "to_dict") else dict(event)

    # --- Ledger ---
    try:
        inbound, duplicate = record_incoming(
            "stripe", event_data, payload or json.dumps(event_data)
        )
    except InvalidEventPayload as e:
        logger.warning(f"Stripe webhook rejected: {e}")
        return jsonify({"error": "invalid_payload", "code": e.code}), e.http_status

    if not duplicate:
        run_in_background(process_inbound_event, inbound.id)

    return jsonify({"status": "duplicate" if duplicate else "received", "duplicate": duplicate}), 200
