"""Transaction model.

The payment-bearing record (an appointment with a price) created by the
checkout collaborator. external_reference is embedded in every outbound
checkout request so inbound webhooks can find their way back.

payment_status is the normalized status driven by the status reconciler;
legacy_status is the derived pending/paid/refunded label kept for display
and reporting. Transactions are never deleted.
"""

import uuid

from app.extensions import db

PAYMENT_STATUSES = [
    "not_required",
    "pending",
    "in_process",
    "paid",
    "partially_refunded",
    "refunded",
    "cancelled",
    "failed",
]

LEGACY_STATUSES = ["pending", "paid", "refunded"]

PROVIDERS = ["mercadopago", "stripe"]


class Transaction(db.Model):
    __tablename__ = "transactions"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id = db.Column(
        db.String(36), db.ForeignKey("tenant_accounts.id"), nullable=False
    )
    provider = db.Column(
        db.String(20), nullable=False, default="mercadopago"
    )  # mercadopago | stripe
    provider_payment_id = db.Column(
        db.String(255), nullable=True, index=True
    )  # MP payment id or Stripe payment_intent id; write-once
    provider_order_id = db.Column(
        db.String(255), nullable=True
    )  # MP merchant order / Stripe checkout session; write-once
    external_reference = db.Column(
        db.String(255), unique=True, nullable=False
    )
    amount = db.Column(db.Numeric(10, 2), nullable=True)
    currency = db.Column(db.String(5), nullable=False, default="BRL")
    payment_status = db.Column(
        db.String(30), nullable=False, default="pending"
    )
    legacy_status = db.Column(
        db.String(20), nullable=False, default="pending"
    )
    amount_paid = db.Column(db.Numeric(10, 2), nullable=True)  # realized amount
    provider_updated_at = db.Column(
        db.DateTime(timezone=True), nullable=True
    )  # event time of the last applied provider event
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __table_args__ = (
        db.Index("ix_transactions_tenant_created", "tenant_id", "created_at"),
    )

    # --- Relationships ---
    tenant = db.relationship("TenantAccount", back_populates="transactions")
    refunds = db.relationship(
        "RefundRecord", back_populates="transaction", lazy="dynamic"
    )

    def to_dict(self):
        return {
            "id": self.id,
            "provider": self.provider,
            "payment_id": self.provider_payment_id,
            "order_id": self.provider_order_id,
            "external_reference": self.external_reference,
            "amount": str(self.amount) if self.amount is not None else None,
            "amount_paid": str(self.amount_paid) if self.amount_paid is not None else None,
            "currency": self.currency,
            "payment_status": self.payment_status,
            "legacy_status": self.legacy_status,
            "provider_updated_at": (
                self.provider_updated_at.isoformat() if self.provider_updated_at else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Transaction {self.external_reference} ({self.payment_status})>"
