"""Audit event model.

Logs money-relevant actions (status transitions, token refreshes,
disconnections, refund outcomes) for reconciliation and debugging.
"""

import uuid

from app.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id = db.Column(
        db.String(36), db.ForeignKey("tenant_accounts.id"), nullable=True
    )
    actor = db.Column(
        db.String(255), nullable=True
    )  # "system", "webhook:mercadopago", "tenant:<id>"
    action = db.Column(db.String(255), nullable=False)  # e.g. "payment.status_updated"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid Python builtin clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.Index("ix_audit_events_tenant_created", "tenant_id", "created_at"),
    )

    # --- Relationships ---
    tenant = db.relationship("TenantAccount", back_populates="audit_events")

    def __repr__(self):
        return f"<AuditEvent {self.action}>"


def log_audit(tenant_id, action, metadata=None, actor="system"):
    """Add an audit event to the current session.

    Flushes only; the caller owns the commit boundary.
    """
    event = AuditEvent(
        tenant_id=tenant_id,
        actor=actor,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()
    return event
