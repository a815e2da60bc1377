"""Inbound event model (webhook ledger / idempotency table).

Every webhook delivery is recorded by its provider notification id before
any business processing. A row already at status "processed" turns a
redelivery into a no-op; "received" and "failed" rows are safe to process
again (crash recovery, provider retries).
"""

import json
import uuid
from decimal import Decimal

from app.extensions import db


class InboundEvent(db.Model):
    __tablename__ = "inbound_events"

    STATUSES = ["received", "processed", "failed"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    provider = db.Column(db.String(20), nullable=False)  # mercadopago | stripe
    notification_id = db.Column(
        db.String(255), nullable=False
    )  # e.g. "123456789" or "evt_1Abc..."
    topic = db.Column(db.String(100), nullable=True)  # payment | merchant_order
    event_type = db.Column(
        db.String(255), nullable=True
    )  # e.g. "payment.updated" or "charge.refunded"
    data_id = db.Column(db.String(255), nullable=True, index=True)
    status = db.Column(
        db.String(20), nullable=False, default="received", index=True
    )
    tenant_id = db.Column(
        db.String(36), db.ForeignKey("tenant_accounts.id"), nullable=True
    )
    raw_payload = db.Column(db.Text, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=1)
    received_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint(
            "provider", "notification_id", name="uq_inbound_event_notification"
        ),
    )

    @property
    def payload(self):
        """Parsed payload. Decimals instead of floats, ints stay exact."""
        if not self.raw_payload:
            return {}
        return json.loads(self.raw_payload, parse_float=Decimal)

    def __repr__(self):
        return f"<InboundEvent {self.provider}:{self.notification_id} ({self.status})>"
