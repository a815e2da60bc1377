"""Tenant account model.

One row per business. Holds the Mercado Pago seller credentials (OAuth
access/refresh pair, encrypted at rest) and the Stripe Connect account id.

token_version is bumped on every refresh claim and checked on every
credential write, so two workers never both persist a refresh result.
Flask-Login integration via UserMixin: the tenant is the principal of the
payments API.
"""

import uuid

from flask_login import UserMixin

from app.extensions import db


class TenantAccount(UserMixin, db.Model):
    __tablename__ = "tenant_accounts"

    CONNECTION_STATUSES = ["connected", "disconnected"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    payments_enabled = db.Column(db.Boolean, nullable=False, default=False)

    # --- Mercado Pago ---
    mp_user_id = db.Column(
        db.String(64), unique=True, nullable=True
    )  # collector id reported on payments
    mp_access_token_encrypted = db.Column(db.Text, nullable=True)
    mp_refresh_token_encrypted = db.Column(db.Text, nullable=True)
    mp_token_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    token_version = db.Column(db.Integer, nullable=False, default=0)
    mp_connection_status = db.Column(
        db.String(20), nullable=True
    )  # connected | disconnected
    mp_disconnected_reason = db.Column(db.Text, nullable=True)

    # --- Stripe Connect ---
    stripe_account_id = db.Column(db.String(255), unique=True, nullable=True)
    stripe_charges_enabled = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    transactions = db.relationship(
        "Transaction", back_populates="tenant", lazy="dynamic"
    )
    audit_events = db.relationship(
        "AuditEvent", back_populates="tenant", lazy="dynamic"
    )

    # --- Decrypted token accessors ---

    @property
    def mp_access_token(self):
        from app.services.token_crypto import decrypt_token

        return decrypt_token(self.mp_access_token_encrypted)

    @mp_access_token.setter
    def mp_access_token(self, value):
        from app.services.token_crypto import encrypt_token

        self.mp_access_token_encrypted = encrypt_token(value)

    @property
    def mp_refresh_token(self):
        from app.services.token_crypto import decrypt_token

        return decrypt_token(self.mp_refresh_token_encrypted)

    @mp_refresh_token.setter
    def mp_refresh_token(self, value):
        from app.services.token_crypto import encrypt_token

        self.mp_refresh_token_encrypted = encrypt_token(value)

    @property
    def mp_connected(self):
        return bool(self.mp_access_token_encrypted) and self.mp_connection_status != "disconnected"

    def __repr__(self):
        return f"<TenantAccount {self.name}>"
