"""Payment resolver: which tenant and which transaction an event is about.

Mercado Pago notifications only carry a payment (or merchant order) id.
Resolution order for a payment:

    1. fetch the payment with the platform credential (discovery only)
    2. tenant whose mp_user_id matches the payment's collector_id
    3. otherwise, the owner of the transaction matching external_reference
    4. ensure the tenant's token is valid, re-fetch with seller credentials
       (the billable detail must come from the seller-scoped call)
    5. transaction by seller external_reference, platform external_reference,
       then payment id, always scoped to the resolved tenant

Stripe events carry the Connect account and our metadata directly.
"""

import logging
from dataclasses import dataclass, field

from app.errors import (
    PaymentEngineError,
    ProviderRequestError,
    TenantUnresolved,
    TransactionUnresolved,
)
from app.extensions import db
from app.models.tenant import TenantAccount
from app.models.transaction import Transaction
from app.services.credential_service import ensure_valid_token
from app.services.mercadopago_client import MercadoPagoClient
from app.services.signature_service import resource_id

logger = logging.getLogger(__name__)


@dataclass
class PaymentResolution:
    tenant: TenantAccount
    transaction: Transaction
    payment: dict


@dataclass
class OrderPayment:
    payment: dict
    transaction: Transaction = None


@dataclass
class OrderResolution:
    tenant: TenantAccount
    order: dict
    payments: list = field(default_factory=list)  # list[OrderPayment]


@dataclass
class StripeResolution:
    tenant: TenantAccount
    transaction: Transaction


# ──────────────────────────────────────────────
# Lookups
# ──────────────────────────────────────────────

def find_tenant_by_collector(collector_id):
    if collector_id is None or str(collector_id).strip() == "":
        return None
    return TenantAccount.query.filter_by(mp_user_id=str(collector_id)).first()


def find_transaction_by_reference(reference, tenant_id=None):
    if reference is None or str(reference).strip() == "":
        return None
    query = Transaction.query.filter_by(external_reference=str(reference))
    if tenant_id:
        query = query.filter_by(tenant_id=tenant_id)
    return query.first()


def find_transaction_by_payment_id(payment_id, tenant_id=None, provider=None):
    if payment_id is None or str(payment_id).strip() == "":
        return None
    query = Transaction.query.filter_by(provider_payment_id=str(payment_id))
    if tenant_id:
        query = query.filter_by(tenant_id=tenant_id)
    if provider:
        query = query.filter_by(provider=provider)
    return query.first()


def _tenant_from_reference(reference):
    transaction = find_transaction_by_reference(reference)
    if transaction:
        return db.session.get(TenantAccount, transaction.tenant_id)
    return None


def _payment_id_from_notification(payload):
    payment_id = (payload.get("data") or {}).get("id")
    if payment_id is not None and str(payment_id).strip():
        return str(payment_id).strip()
    return resource_id(payload.get("resource"))


# ──────────────────────────────────────────────
# Mercado Pago: payment topic
# ──────────────────────────────────────────────

def resolve_tenant_and_transaction(payload):
    """Resolve a ``payment`` notification to (tenant, transaction, payment).

    Raises TenantUnresolved / TransactionUnresolved when resolution fails
    after every step; provider and credential errors propagate.
    """
    payment_id = _payment_id_from_notification(payload)
    if not payment_id:
        raise TransactionUnresolved("Payment id missing from notification")

    preliminary = MercadoPagoClient.for_platform().get_payment(payment_id)
    collector_id = preliminary.get("collector_id")
    platform_reference = preliminary.get("external_reference")

    tenant = find_tenant_by_collector(collector_id)
    if tenant is None and platform_reference:
        tenant = _tenant_from_reference(platform_reference)
        if tenant:
            logger.info(
                f"Payment {payment_id}: tenant {tenant.id} resolved via "
                f"external_reference {platform_reference}"
            )

    if tenant is None:
        raise TenantUnresolved(
            f"No tenant for payment {payment_id} (collector {collector_id})",
            detail={"payment_id": payment_id, "collector_id": str(collector_id)},
        )

    ensure_valid_token(tenant)
    payment = MercadoPagoClient.for_tenant(tenant).get_payment(payment_id)

    transaction = (
        find_transaction_by_reference(payment.get("external_reference"), tenant.id)
        or find_transaction_by_reference(platform_reference, tenant.id)
        or find_transaction_by_payment_id(payment_id, tenant.id)
    )
    if transaction is None:
        raise TransactionUnresolved(
            f"No transaction for payment {payment_id} in tenant {tenant.id}",
            detail={
                "payment_id": payment_id,
                "external_reference": payment.get("external_reference") or platform_reference,
            },
        )

    return PaymentResolution(tenant=tenant, transaction=transaction, payment=payment)


# ──────────────────────────────────────────────
# Mercado Pago: merchant_order topic
# ──────────────────────────────────────────────

def _merchant_order_id(payload):
    data = payload.get("data") or {}
    for candidate in (
        payload.get("merchant_order_id"),
        data.get("merchant_order_id"),
        data.get("id"),
    ):
        if candidate is not None and str(candidate).strip():
            return str(candidate).strip()
    return resource_id(payload.get("resource"))


def _collector_from_order(order):
    collector = (order.get("collector") or {}).get("id")
    if collector:
        return collector
    seller = (order.get("seller") or {}).get("id")
    if seller:
        return seller
    payments = order.get("payments") or []
    if payments:
        return (payments[0].get("collector") or {}).get("id")
    return None


def resolve_merchant_order(payload):
    """Resolve a ``merchant_order`` notification.

    Returns OrderResolution with every payment of the order re-fetched with
    seller credentials and matched to a transaction where possible.
    Payments that cannot be fetched or matched are logged and skipped.
    """
    order_id = _merchant_order_id(payload)
    if not order_id:
        raise TransactionUnresolved("Merchant order id missing from notification")

    preliminary = MercadoPagoClient.for_platform().get_merchant_order(order_id)
    collector_id = _collector_from_order(preliminary)

    tenant = find_tenant_by_collector(collector_id)
    if tenant is None and preliminary.get("external_reference"):
        tenant = _tenant_from_reference(preliminary["external_reference"])
    if tenant is None:
        raise TenantUnresolved(
            f"No tenant for merchant order {order_id} (collector {collector_id})",
            detail={"merchant_order_id": order_id},
        )

    ensure_valid_token(tenant)
    client = MercadoPagoClient.for_tenant(tenant)

    order = preliminary
    try:
        order = client.get_merchant_order(order_id)
    except PaymentEngineError as e:
        logger.warning(
            f"Seller-scoped fetch of merchant order {order_id} failed, "
            f"using platform copy: {e}"
        )

    summaries = order.get("payments") or preliminary.get("payments") or []
    resolution = OrderResolution(tenant=tenant, order=order)

    for summary in summaries:
        payment_id = summary.get("id") or summary.get("payment_id")
        if not payment_id:
            continue
        try:
            payment = client.get_payment(payment_id)
        except PaymentEngineError as e:
            logger.warning(f"Merchant order {order_id}: payment {payment_id} fetch failed: {e}")
            continue

        transaction = (
            find_transaction_by_payment_id(payment_id, tenant.id)
            or find_transaction_by_reference(payment.get("external_reference"), tenant.id)
            or find_transaction_by_reference(order.get("external_reference"), tenant.id)
        )
        if transaction is None:
            logger.warning(
                f"Merchant order {order_id}: no transaction for payment {payment_id}"
            )
        resolution.payments.append(OrderPayment(payment=payment, transaction=transaction))

    return resolution


# ──────────────────────────────────────────────
# Stripe
# ──────────────────────────────────────────────

def resolve_stripe_event(event):
    """Resolve a Stripe event to (tenant, transaction).

    Transaction by metadata.external_reference, client_reference_id, then
    payment_intent id; tenant from the Connect account or the transaction.
    """
    obj = event["data"]["object"]
    metadata = obj.get("metadata") or {}

    intent_id = obj.get("payment_intent")
    if obj.get("object") == "payment_intent":
        intent_id = obj.get("id")

    account_id = event.get("account")
    tenant = None
    if account_id:
        tenant = TenantAccount.query.filter_by(stripe_account_id=account_id).first()

    tenant_id = tenant.id if tenant else None
    transaction = (
        find_transaction_by_reference(metadata.get("external_reference"), tenant_id)
        or find_transaction_by_reference(obj.get("client_reference_id"), tenant_id)
        or find_transaction_by_payment_id(intent_id, tenant_id, provider="stripe")
    )

    if transaction is None:
        raise TransactionUnresolved(
            f"No transaction for Stripe event {event.get('id')}",
            detail={"payment_intent": intent_id, "account": account_id},
        )

    if tenant is None:
        tenant = db.session.get(TenantAccount, transaction.tenant_id)
    if tenant is None:
        raise TenantUnresolved(f"No tenant for Stripe event {event.get('id')}")

    return StripeResolution(tenant=tenant, transaction=transaction)


# ──────────────────────────────────────────────
# Payments API
# ──────────────────────────────────────────────

def find_transaction_for_tenant(tenant, payment_id):
    """Transaction for a payment id as seen by one tenant.

    Matches provider payment id or transaction id. Unknown Mercado Pago
    ids are looked up remotely with the tenant's own credentials. A
    payment owned by another tenant is reported as not found.
    """
    payment_id = str(payment_id)

    transaction = find_transaction_by_payment_id(payment_id)
    if transaction is None:
        transaction = db.session.get(Transaction, payment_id)

    if transaction is not None:
        if transaction.tenant_id != tenant.id:
            logger.warning(
                f"Tenant {tenant.id} asked for payment {payment_id} owned by another tenant"
            )
            raise TransactionUnresolved(f"Payment {payment_id} not found")
        return transaction

    if not tenant.mp_access_token_encrypted or not payment_id.isdigit():
        raise TransactionUnresolved(f"Payment {payment_id} not found")

    ensure_valid_token(tenant)
    try:
        payment = MercadoPagoClient.for_tenant(tenant).get_payment(payment_id)
    except ProviderRequestError as e:
        if e.status_code == 404:
            raise TransactionUnresolved(f"Payment {payment_id} not found") from e
        raise

    collector_id = payment.get("collector_id")
    if collector_id and str(collector_id) != str(tenant.mp_user_id or ""):
        raise TransactionUnresolved(f"Payment {payment_id} not found")

    transaction = find_transaction_by_reference(payment.get("external_reference"), tenant.id)
    if transaction is None:
        raise TransactionUnresolved(f"Payment {payment_id} not found")
    return transaction
