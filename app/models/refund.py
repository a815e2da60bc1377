"""Refund record model.

Append-only audit trail of refund attempts. A row is inserted once per
attempt (successful or failed) and never updated afterwards.
"""

import uuid

from app.extensions import db


class RefundRecord(db.Model):
    __tablename__ = "refund_records"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    transaction_id = db.Column(
        db.String(36), db.ForeignKey("transactions.id"), nullable=False, index=True
    )
    tenant_id = db.Column(
        db.String(36), db.ForeignKey("tenant_accounts.id"), nullable=False, index=True
    )
    provider = db.Column(db.String(20), nullable=False)
    payment_id = db.Column(db.String(255), nullable=False, index=True)
    refund_id = db.Column(db.String(255), nullable=True)  # provider refund id
    requested_amount = db.Column(
        db.Numeric(10, 2), nullable=True
    )  # null = full refund
    refunded_amount = db.Column(db.Numeric(10, 2), nullable=True)
    currency = db.Column(db.String(5), nullable=False, default="BRL")
    status = db.Column(
        db.String(30), nullable=False
    )  # provider refund status, or "failed"
    idempotency_key = db.Column(db.String(64), nullable=False)
    initiator = db.Column(db.String(255), nullable=True)  # e.g. "tenant:<id>"
    error_message = db.Column(db.Text, nullable=True)
    raw_response = db.Column(db.JSON, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    transaction = db.relationship("Transaction", back_populates="refunds")

    def to_dict(self):
        return {
            "id": self.id,
            "refund_id": self.refund_id,
            "requested_amount": _money(self.requested_amount),
            "refunded_amount": _money(self.refunded_amount),
            "currency": self.currency,
            "status": self.status,
            "initiator": self.initiator,
            "idempotency_key": self.idempotency_key,
            "error": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<RefundRecord {self.payment_id} {self.status}>"


def _money(value):
    return str(value) if value is not None else None
