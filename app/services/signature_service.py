"""Webhook signature verification.

Mercado Pago signs notifications with an ``x-signature`` header of the form
``ts=<unix seconds>,v1=<hex hmac>``. The HMAC-SHA256 is computed over the
manifest ``id:<canonical id>;request-id:<x-request-id>;ts:<ts>;`` using the
webhook secret configured in the Mercado Pago dashboard.

The canonical id is not always in the same place: payment notifications
carry ``data.id``, merchant-order notifications may carry it under several
keys, legacy IPN deliveries only have a ``resource`` URL, and some
deliveries only put it in the query string. Every check fails closed.

Stripe signatures are verified by the stripe SDK (verify_stripe_event).
"""

import hashlib
import hmac
import json
import logging
import re
from decimal import Decimal

import stripe
from flask import current_app

from app.errors import SignatureInvalid

logger = logging.getLogger(__name__)

_RESOURCE_ID_RE = re.compile(r"/(\d+)(?:\?.*)?$")

# Body paths tried in order; the first non-empty value wins.
_BODY_ID_PATHS = [
    ("data", "id"),
    ("data", "payment_id"),
    ("data", "payment", "id"),
    ("data", "merchant_order_id"),
    ("merchant_order_id",),
    ("merchant_order", "id"),
    ("order", "id"),
]

_QUERY_ID_KEYS = ["data.id", "data.id_url"]


# ──────────────────────────────────────────────
# Header / body parsing
# ──────────────────────────────────────────────

def parse_signature_header(signature_header):
    """Parse ``ts=...,v1=...`` into (ts, v1). Missing parts come back as None."""
    if not signature_header:
        return None, None

    parts = {}
    for chunk in signature_header.split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip().lower()] = value.strip()

    return parts.get("ts") or None, parts.get("v1") or None


def parse_body(raw_body):
    """Decode a webhook body without losing numeric precision.

    Integers stay Python ints (arbitrary precision) and fractional numbers
    become Decimal, so an id like 12345678901234567890 survives intact.
    Returns None when the body is not a JSON object.
    """
    if raw_body is None:
        return None
    if isinstance(raw_body, bytes):
        raw_body = raw_body.decode("utf-8", errors="replace")
    if not raw_body.strip():
        return {}
    try:
        body = json.loads(raw_body, parse_float=Decimal)
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _as_id(value):
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def _dig(body, path):
    node = body
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _query_value(query_params, key):
    if not query_params:
        return None

    if hasattr(query_params, "getlist"):
        values = query_params.getlist(key)
        value = values[0] if values else None
    else:
        value = query_params.get(key)
        if value is None and "." in key:
            value = _dig(query_params, key.split("."))

    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    return value


def resource_id(resource):
    """Numeric id at the end of a REST resource URL, e.g. .../v1/payments/123."""
    if not isinstance(resource, str):
        return None
    match = _RESOURCE_ID_RE.search(resource.strip())
    return match.group(1) if match else None


def extract_canonical_id(body, query_params=None):
    """Return the identifier the provider computed the signature over."""
    body = body or {}

    for path in _BODY_ID_PATHS:
        candidate = _as_id(_dig(body, path))
        if candidate:
            return candidate

    candidate = resource_id(body.get("resource"))
    if candidate:
        return candidate

    for key in _QUERY_ID_KEYS:
        candidate = _as_id(_query_value(query_params, key))
        if candidate:
            return candidate

    return None


def build_manifest(canonical_id, request_id, ts):
    return f"id:{canonical_id};request-id:{request_id};ts:{ts};"


def compute_signature(secret, canonical_id, request_id, ts):
    manifest = build_manifest(canonical_id, request_id, ts)
    return hmac.new(
        secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256
    ).hexdigest()


# ──────────────────────────────────────────────
# Verification
# ──────────────────────────────────────────────

def verify_signature(raw_body, signature_header, request_id, secret,
                     query_params=None, skip_verification=False):
    """Verify a Mercado Pago webhook signature.

    Returns True only when the received v1 digest matches the HMAC of the
    manifest. Returns False (never raises) on any missing or malformed input.
    """
    if skip_verification:
        logger.warning(
            "Mercado Pago signature validation is DISABLED "
            "(MP_WEBHOOK_DISABLE_SIGNATURE_VALIDATION); accepting webhook unverified"
        )
        return True

    if not secret:
        logger.error("MP_WEBHOOK_SECRET is not configured, rejecting webhook")
        return False

    ts, received = parse_signature_header(signature_header)
    if not ts or not received:
        logger.warning("x-signature header missing ts or v1")
        return False

    if not request_id:
        logger.warning("x-request-id header missing")
        return False

    body = parse_body(raw_body)
    if body is None:
        logger.warning("Webhook body is not a JSON object")
        return False

    canonical_id = extract_canonical_id(body, query_params)
    if not canonical_id:
        logger.warning("No canonical id found in webhook body or query string")
        return False

    expected = compute_signature(secret, canonical_id, request_id, ts)
    received = received.lower()

    if len(received) != len(expected):
        logger.warning(f"Signature length mismatch for id={canonical_id}")
        return False
    try:
        bytes.fromhex(received)
    except ValueError:
        logger.warning(f"Signature is not valid hex for id={canonical_id}")
        return False

    if not hmac.compare_digest(received, expected):
        logger.warning(f"Signature mismatch for id={canonical_id} request_id={request_id}")
        return False

    return True


def verify_stripe_event(payload, sig_header):
    """Verify a Stripe webhook signature and construct the event.

    Raises SignatureInvalid on a bad signature, bad payload, or missing
    secret.
    """
    webhook_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured, rejecting webhook")
        raise SignatureInvalid("Stripe webhook secret is not configured")

    try:
        return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning(f"Stripe webhook signature verification failed: {e}")
        raise SignatureInvalid("Invalid Stripe signature") from e
