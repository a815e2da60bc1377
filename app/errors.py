"""Error taxonomy for the payment reconciliation engine.

Every error carries a machine-readable `code` and the HTTP status the
payments API answers with. `detail` holds the provider error body when
there is one, so callers can tell "already refunded" from "insufficient
funds" from a network failure.

A duplicate webhook delivery is not an error: record_incoming() reports it
through its `duplicate` flag and the caller short-circuits.
"""


class PaymentEngineError(Exception):
    """Base error for reconciliation, credential and refund operations."""

    code = "payment_error"
    http_status = 500

    def __init__(self, message, code=None, detail=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.detail = detail

    def to_dict(self):
        body = {"error": self.code, "message": self.message}
        if self.detail is not None:
            body["detail"] = self.detail
        return body


class SignatureInvalid(PaymentEngineError):
    """Webhook signature missing or wrong. Fail closed."""

    code = "SIG_MISMATCH"
    http_status = 401


class InvalidEventPayload(PaymentEngineError):
    """Webhook body cannot be recorded (no notification id, bad JSON)."""

    code = "EVENT_ID_MISSING"
    http_status = 400


class TenantUnresolved(PaymentEngineError):
    """No connected tenant owns the payment."""

    code = "tenant_not_found"
    http_status = 404


class TransactionUnresolved(PaymentEngineError):
    """No internal transaction matches the payment for this tenant."""

    code = "payment_not_found"
    http_status = 404


class CredentialExpiredUnrecoverable(PaymentEngineError):
    """Tenant credentials are gone or the refresh token was rejected.

    The tenant has to reconnect its account; retrying will not help.
    """

    code = "credential_expired"
    http_status = 401


class ProviderTransientError(PaymentEngineError):
    """Network error, timeout, 429 or 5xx from a provider. Safe to retry."""

    code = "provider_unavailable"
    http_status = 502


class ProviderRequestError(PaymentEngineError):
    """Provider answered with a 4xx that is not a credential problem."""

    code = "provider_request_failed"
    http_status = 502

    def __init__(self, message, status_code=None, detail=None, code=None):
        super().__init__(message, code=code, detail=detail)
        self.status_code = status_code


class RefundRejected(PaymentEngineError):
    """Business-level refund rejection. Surfaced to the initiator, never retried."""

    code = "refund_rejected"
    http_status = 422
