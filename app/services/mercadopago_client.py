"""Mercado Pago REST client.

Thin wrapper over ``requests`` for the calls the engine needs: payment
and merchant-order detail, refunds, and the OAuth token endpoint.

Every call has a bounded timeout (PROVIDER_HTTP_TIMEOUT). Failures are
mapped onto the engine's error types:
  - timeouts, connection errors, 5xx, 429 -> ProviderTransientError
  - any other non-2xx                     -> ProviderRequestError (status + body)

Response bodies are decoded with Decimal for fractional numbers so money
amounts never pass through float.
"""

import json
import logging
from decimal import Decimal

import requests
from flask import current_app

from app.errors import (
    CredentialExpiredUnrecoverable,
    ProviderRequestError,
    ProviderTransientError,
)

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.mercadopago.com"
DEFAULT_TOKEN_URL = "https://api.mercadopago.com/oauth/token"


def _decode(response):
    if not response.content:
        return {}
    try:
        return json.loads(response.text, parse_float=Decimal)
    except ValueError:
        return {"raw": response.text}


def _is_transient_status(status_code):
    return status_code >= 500 or status_code == 429


def _send(method, url, what, **kwargs):
    """Perform one HTTP call and map failures. Returns the decoded body."""
    kwargs.setdefault("timeout", current_app.config.get("PROVIDER_HTTP_TIMEOUT", 15))
    try:
        response = requests.request(method, url, **kwargs)
    except (requests.Timeout, requests.ConnectionError) as e:
        logger.warning(f"Mercado Pago {what} failed (network): {e}")
        raise ProviderTransientError(f"Mercado Pago {what} failed: {e}") from e
    except requests.RequestException as e:
        logger.error(f"Mercado Pago {what} failed: {e}")
        raise ProviderTransientError(f"Mercado Pago {what} failed: {e}") from e

    body = _decode(response)

    if _is_transient_status(response.status_code):
        logger.warning(f"Mercado Pago {what} returned {response.status_code}")
        raise ProviderTransientError(
            f"Mercado Pago {what} returned {response.status_code}",
            detail=body,
        )

    if response.status_code >= 400:
        logger.warning(f"Mercado Pago {what} rejected ({response.status_code}): {body}")
        raise ProviderRequestError(
            f"Mercado Pago {what} rejected with {response.status_code}",
            status_code=response.status_code,
            detail=body,
        )

    return body


class MercadoPagoClient:
    """API client bound to one access token (platform or seller scope)."""

    def __init__(self, access_token, base_url=None, timeout=None):
        if not access_token:
            raise CredentialExpiredUnrecoverable(
                "Mercado Pago access token is required", code="not_connected"
            )
        self.access_token = access_token
        self.base_url = (
            base_url
            or current_app.config.get("MP_API_BASE_URL")
            or DEFAULT_API_BASE_URL
        ).rstrip("/")
        self.timeout = timeout or current_app.config.get("PROVIDER_HTTP_TIMEOUT", 15)

    @classmethod
    def for_platform(cls):
        """Client using the marketplace's own credential (discovery only)."""
        return cls(current_app.config.get("MP_PLATFORM_ACCESS_TOKEN"))

    @classmethod
    def for_tenant(cls, tenant):
        """Client using the seller's OAuth access token.

        Callers must run credential_service.ensure_valid_token first.
        """
        return cls(tenant.mp_access_token)

    def _headers(self, extra=None):
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def _call(self, method, path, what, headers=None, **kwargs):
        return _send(
            method,
            f"{self.base_url}{path}",
            what,
            headers=self._headers(headers),
            timeout=self.timeout,
            **kwargs,
        )

    # ──────────────────────────────────────────────
    # Payments & orders
    # ──────────────────────────────────────────────

    def get_payment(self, payment_id):
        return self._call("GET", f"/v1/payments/{payment_id}", f"payment fetch {payment_id}")

    def get_merchant_order(self, order_id):
        return self._call("GET", f"/merchant_orders/{order_id}", f"merchant order fetch {order_id}")

    # ──────────────────────────────────────────────
    # Refunds
    # ──────────────────────────────────────────────

    def create_refund(self, payment_id, amount=None, idempotency_key=None):
        """Create a full (amount=None) or partial refund.

        The idempotency key goes in X-Idempotency-Key so a retried call
        with the same key is deduplicated by Mercado Pago.
        """
        body = {}
        if amount is not None:
            body["amount"] = float(Decimal(amount).quantize(Decimal("0.01")))
        headers = {"X-Idempotency-Key": idempotency_key} if idempotency_key else None
        return self._call(
            "POST",
            f"/v1/payments/{payment_id}/refunds",
            f"refund for payment {payment_id}",
            headers=headers,
            data=json.dumps(body),
        )

    def list_refunds(self, payment_id):
        result = self._call(
            "GET", f"/v1/payments/{payment_id}/refunds", f"refund list {payment_id}"
        )
        if isinstance(result, list):
            return result
        return result.get("results", []) if isinstance(result, dict) else []


# ──────────────────────────────────────────────
# OAuth token endpoint
# ──────────────────────────────────────────────

def request_token(grant_params):
    """POST a grant to the OAuth token endpoint (form-encoded).

    grant_params holds grant_type plus refresh_token, or code and
    redirect_uri; client id/secret are added from config.
    Returns the token payload (access_token, refresh_token, expires_in,
    user_id, ...).
    """
    client_id = current_app.config.get("MP_CLIENT_ID")
    client_secret = current_app.config.get("MP_CLIENT_SECRET")
    if not client_id or not client_secret:
        raise RuntimeError("MP_CLIENT_ID / MP_CLIENT_SECRET are not configured")

    form = {
        "client_id": client_id,
        "client_secret": client_secret,
    }
    form.update({k: v for k, v in grant_params.items() if v is not None})

    token_url = current_app.config.get("MP_TOKEN_URL") or DEFAULT_TOKEN_URL
    return _send(
        "POST",
        token_url,
        f"token grant ({grant_params.get('grant_type')})",
        data=form,
        headers={
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        },
    )
