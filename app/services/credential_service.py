"""Credential manager for tenant Mercado Pago OAuth tokens.

Every code path that is about to call Mercado Pago with a seller's token
goes through ensure_valid_token first.

Refresh is serialized per tenant with a compare-and-swap on
TenantAccount.token_version:

    1. claim:   UPDATE ... SET token_version = v + 1 WHERE token_version = v
    2. winner calls the OAuth token endpoint (no lock held while in flight)
    3. persist: UPDATE ... SET tokens, expiry, token_version = v + 2
                WHERE token_version = v + 1

A caller that loses the claim polls the row until the winner's tokens
land (bounded by TOKEN_REFRESH_WAIT_SECONDS) and never calls the provider
itself, so a rotated refresh token is only ever spent once.
"""

import logging
import time
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import update

from app.errors import (
    CredentialExpiredUnrecoverable,
    PaymentEngineError,
    ProviderRequestError,
    ProviderTransientError,
)
from app.extensions import db
from app.models.audit import log_audit
from app.models.tenant import TenantAccount
from app.services import mercadopago_client
from app.services.token_crypto import encrypt_token

logger = logging.getLogger(__name__)

WAIT_POLL_SECONDS = 0.05


def _as_utc(value):
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compute_expiry(expires_in, now=None):
    """Expiry = now + max(expires_in - buffer, floor), deliberately conservative."""
    now = now or datetime.now(timezone.utc)
    buffer_seconds = current_app.config.get("TOKEN_EXPIRY_BUFFER_SECONDS", 300)
    floor_seconds = current_app.config.get("TOKEN_MIN_LIFETIME_SECONDS", 60)
    try:
        expires_in = int(expires_in or 0)
    except (TypeError, ValueError):
        expires_in = 0
    return now + timedelta(seconds=max(expires_in - buffer_seconds, floor_seconds))


def is_token_expired(tenant, threshold=None):
    """True when now + threshold is at or past the stored expiry.

    A token without an expiry is treated as expired.
    """
    if threshold is None:
        threshold = current_app.config.get("TOKEN_REFRESH_THRESHOLD_SECONDS", 120)
    expires_at = _as_utc(tenant.mp_token_expires_at)
    if expires_at is None:
        return True
    return datetime.now(timezone.utc) + timedelta(seconds=threshold) >= expires_at


def ensure_valid_token(tenant):
    """Make sure the tenant holds a usable access token. Returns the tenant.

    Raises CredentialExpiredUnrecoverable when the tenant never connected,
    was disconnected, or its refresh token was rejected.
    """
    if not tenant.mp_access_token_encrypted:
        raise CredentialExpiredUnrecoverable(
            f"Tenant {tenant.id} has not connected Mercado Pago",
            code="not_connected",
        )
    if tenant.mp_connection_status == "disconnected":
        raise CredentialExpiredUnrecoverable(
            f"Tenant {tenant.id} Mercado Pago connection needs to be re-authorized",
            detail={"reason": tenant.mp_disconnected_reason},
        )

    if not is_token_expired(tenant):
        return tenant

    return refresh(tenant)


# ──────────────────────────────────────────────
# Refresh
# ──────────────────────────────────────────────

def _claim_refresh(tenant_id, version):
    result = db.session.execute(
        update(TenantAccount)
        .where(TenantAccount.id == tenant_id, TenantAccount.token_version == version)
        .values(token_version=version + 1)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def _wait_for_refresh(tenant):
    """Poll until another worker's refresh lands. Returns the tenant."""
    deadline = time.monotonic() + current_app.config.get("TOKEN_REFRESH_WAIT_SECONDS", 10)
    while True:
        db.session.refresh(tenant)
        if tenant.mp_connection_status == "disconnected":
            raise CredentialExpiredUnrecoverable(
                f"Tenant {tenant.id} was disconnected during a concurrent refresh",
                detail={"reason": tenant.mp_disconnected_reason},
            )
        if not is_token_expired(tenant):
            logger.info(f"Tenant {tenant.id} token refreshed by a concurrent worker")
            return tenant
        if time.monotonic() >= deadline:
            raise ProviderTransientError(
                f"Timed out waiting for concurrent token refresh of tenant {tenant.id}"
            )
        time.sleep(WAIT_POLL_SECONDS)


def _request_with_retry(grant_params):
    """Call the token endpoint; transient failures are retried once."""
    try:
        return mercadopago_client.request_token(grant_params)
    except ProviderTransientError as e:
        logger.warning(f"Token grant failed transiently, retrying once: {e}")
        return mercadopago_client.request_token(grant_params)


def _rejection_reason(error):
    detail = error.detail if isinstance(error.detail, dict) else {}
    return detail.get("error") or detail.get("message") or str(error)


def refresh(tenant, force=False):
    """Exchange the stored refresh token for a new token pair.

    Idempotent under concurrency: if another worker refreshed first, the
    tenant is reloaded and returned without calling the provider. force
    skips the freshness check (proactive refresh), not the claim.
    """
    db.session.refresh(tenant)
    if not force and tenant.mp_access_token_encrypted and not is_token_expired(tenant):
        return tenant

    refresh_token = tenant.mp_refresh_token
    if not refresh_token:
        mark_disconnected(tenant, "missing_refresh_token")
        raise CredentialExpiredUnrecoverable(
            f"Tenant {tenant.id} has no refresh token", code="not_connected"
        )

    version = tenant.token_version or 0
    if not _claim_refresh(tenant.id, version):
        return _wait_for_refresh(tenant)

    logger.info(f"Refreshing Mercado Pago token for tenant {tenant.id}")
    try:
        payload = _request_with_retry({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
    except ProviderRequestError as e:
        reason = _rejection_reason(e)
        mark_disconnected(tenant, reason)
        raise CredentialExpiredUnrecoverable(
            f"Mercado Pago rejected the refresh token for tenant {tenant.id}",
            detail={"reason": reason, "provider_status": e.status_code},
        ) from e

    _persist_tokens(tenant, payload, expected_version=version + 1)
    log_audit(tenant.id, "mercadopago.token_refreshed", {
        "mp_user_id": tenant.mp_user_id,
        "expires_at": tenant.mp_token_expires_at.isoformat() if tenant.mp_token_expires_at else None,
    })
    db.session.commit()
    return tenant


def _persist_tokens(tenant, payload, expected_version=None):
    """Write access token, rotated refresh token, user id and expiry in one UPDATE.

    With expected_version, the write only lands if the row is still at
    that version (the claim we hold); otherwise ProviderTransientError is
    raised and the tokens in the row are left as they are.
    """
    access_token = payload.get("access_token")
    if not access_token:
        raise ProviderRequestError(
            "Mercado Pago token response has no access_token", detail=payload
        )

    current_version = tenant.token_version or 0
    values = {
        "mp_access_token_encrypted": encrypt_token(access_token),
        "mp_token_expires_at": compute_expiry(payload.get("expires_in")),
        "mp_connection_status": "connected",
        "mp_disconnected_reason": None,
        "token_version": (expected_version if expected_version is not None else current_version) + 1,
    }
    if payload.get("refresh_token"):
        values["mp_refresh_token_encrypted"] = encrypt_token(payload["refresh_token"])
    if payload.get("user_id"):
        values["mp_user_id"] = str(payload["user_id"])

    stmt = update(TenantAccount).where(TenantAccount.id == tenant.id)
    if expected_version is not None:
        stmt = stmt.where(TenantAccount.token_version == expected_version)

    result = db.session.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    db.session.commit()

    db.session.refresh(tenant)
    if result.rowcount != 1:
        logger.warning(
            f"Token write for tenant {tenant.id} lost its claim (version {expected_version})"
        )
        raise ProviderTransientError(
            f"Token refresh for tenant {tenant.id} was superseded by another worker"
        )
    return tenant


def exchange_authorization_code(tenant, code, redirect_uri):
    """Authorization-code grant: store the seller's first token pair."""
    if not code:
        raise ProviderRequestError("Authorization code is missing", status_code=400)

    payload = _request_with_retry({
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
    })
    _persist_tokens(tenant, payload)
    log_audit(tenant.id, "mercadopago.connected", {"mp_user_id": tenant.mp_user_id})
    db.session.commit()
    logger.info(f"Tenant {tenant.id} connected Mercado Pago user {tenant.mp_user_id}")
    return tenant


def mark_disconnected(tenant, reason):
    """Flag the tenant as needing to re-authorize Mercado Pago."""
    tenant.mp_connection_status = "disconnected"
    tenant.mp_disconnected_reason = reason
    log_audit(tenant.id, "mercadopago.disconnected", {"reason": reason})
    db.session.commit()
    logger.warning(f"Tenant {tenant.id} Mercado Pago disconnected: {reason}")
    return tenant


def refresh_expiring_tokens(within_seconds=3600):
    """Proactively refresh every connected tenant whose token expires soon.

    Returns (refreshed, failed) counts. One tenant's failure does not stop
    the sweep.
    """
    cutoff = datetime.now(timezone.utc) + timedelta(seconds=within_seconds)
    tenants = (
        TenantAccount.query
        .filter(TenantAccount.mp_refresh_token_encrypted.isnot(None))
        .filter(db.or_(
            TenantAccount.mp_connection_status.is_(None),
            TenantAccount.mp_connection_status != "disconnected",
        ))
        .filter(db.or_(
            TenantAccount.mp_token_expires_at.is_(None),
            TenantAccount.mp_token_expires_at <= cutoff,
        ))
        .all()
    )

    refreshed = failed = 0
    for tenant in tenants:
        try:
            refresh(tenant, force=True)
            refreshed += 1
        except PaymentEngineError as e:
            db.session.rollback()
            failed += 1
            logger.error(f"Proactive refresh failed for tenant {tenant.id}: {e}")
    return refreshed, failed
