"""Tests for tenant / transaction resolution.

Covers:
- Payment notification resolved by collector id
- Fallback to the owner of external_reference when the collector is unknown
- Seller-scoped re-fetch is what gets reconciled
- Unresolvable tenant / transaction
- Merchant order resolution
- Stripe event resolution
- Tenant-scoped lookup for the payments API
"""

from decimal import Decimal

import pytest

from app.errors import CredentialExpiredUnrecoverable, TenantUnresolved, TransactionUnresolved
from app.extensions import db
from app.models.transaction import Transaction
from app.services.payment_resolver import (
    find_transaction_for_tenant,
    resolve_merchant_order,
    resolve_stripe_event,
    resolve_tenant_and_transaction,
)

NOTIFICATION = {"id": 1, "type": "payment", "data": {"id": "987654321"}}


class TestResolvePayment:

    def test_resolves_by_collector(self, db_session, tenant, transaction, mp_api,
                                   payment_factory):
        mp_api.payments["987654321"] = payment_factory()

        resolution = resolve_tenant_and_transaction(NOTIFICATION)

        assert resolution.tenant.id == tenant.id
        assert resolution.transaction.id == transaction.id
        assert resolution.payment["status"] == "approved"

    def test_falls_back_to_external_reference(self, db_session, tenant, transaction,
                                              mp_api, payment_factory):
        """Collector id unknown (e.g. a changed MP user id), reference still ours."""
        mp_api.platform_payments["987654321"] = payment_factory(collector_id=999)
        mp_api.payments["987654321"] = payment_factory(collector_id=999)

        resolution = resolve_tenant_and_transaction(NOTIFICATION)

        assert resolution.tenant.id == tenant.id
        assert resolution.transaction.id == transaction.id

    def test_billable_detail_comes_from_seller_call(self, db_session, tenant, transaction,
                                                    mp_api, payment_factory):
        mp_api.platform_payments["987654321"] = payment_factory(status="pending")
        mp_api.payments["987654321"] = payment_factory(status="approved")

        resolution = resolve_tenant_and_transaction(NOTIFICATION)

        assert resolution.payment["status"] == "approved"
        seller_calls = [
            c for c in mp_api.calls_to("GET", "/v1/payments/987654321")
            if c[2]["headers"]["Authorization"] == "Bearer APP_USR-seller-777"
        ]
        assert len(seller_calls) == 1

    def test_resource_url_notification(self, db_session, tenant, transaction, mp_api,
                                       payment_factory):
        mp_api.payments["987654321"] = payment_factory()
        payload = {
            "id": 2,
            "topic": "payment",
            "resource": "https://api.mercadolibre.com/collections/notifications/987654321",
        }

        resolution = resolve_tenant_and_transaction(payload)

        assert resolution.transaction.id == transaction.id

    def test_unknown_tenant(self, db_session, tenant, transaction, mp_api, payment_factory):
        mp_api.payments["987654321"] = payment_factory(collector_id=999,
                                                       external_reference="unknown")

        with pytest.raises(TenantUnresolved):
            resolve_tenant_and_transaction(NOTIFICATION)

    def test_unknown_transaction(self, db_session, tenant, mp_api, payment_factory):
        mp_api.payments["987654321"] = payment_factory(external_reference="nope")

        with pytest.raises(TransactionUnresolved):
            resolve_tenant_and_transaction(NOTIFICATION)

    def test_reference_of_another_tenant_not_matched(self, db_session, tenant,
                                                     other_tenant, mp_api, payment_factory):
        """Collector says `tenant`; the reference belongs to someone else."""
        db_session.add(Transaction(
            tenant_id=other_tenant.id, external_reference="42", amount=Decimal("10.00"),
        ))
        db_session.commit()
        mp_api.payments["987654321"] = payment_factory()

        with pytest.raises(TransactionUnresolved):
            resolve_tenant_and_transaction(NOTIFICATION)

    def test_matches_by_payment_id_without_reference(self, db_session, tenant, transaction,
                                                     mp_api, payment_factory):
        transaction.provider_payment_id = "987654321"
        db_session.commit()
        mp_api.payments["987654321"] = payment_factory(external_reference=None)

        resolution = resolve_tenant_and_transaction(NOTIFICATION)

        assert resolution.transaction.id == transaction.id

    def test_disconnected_tenant_propagates(self, db_session, tenant, transaction, mp_api,
                                            payment_factory):
        tenant.mp_connection_status = "disconnected"
        db_session.commit()
        mp_api.payments["987654321"] = payment_factory()

        with pytest.raises(CredentialExpiredUnrecoverable):
            resolve_tenant_and_transaction(NOTIFICATION)

    def test_missing_payment_id(self, db_session):
        with pytest.raises(TransactionUnresolved):
            resolve_tenant_and_transaction({"id": 3, "type": "payment"})


class TestResolveMerchantOrder:

    def _order(self, **extra):
        order = {
            "id": 5550001,
            "status": "closed",
            "external_reference": "42",
            "collector": {"id": 777},
            "payments": [{"id": 987654321, "status": "approved"}],
        }
        order.update(extra)
        return order

    def test_resolves_order_payments(self, db_session, tenant, transaction, mp_api,
                                     payment_factory):
        mp_api.orders["5550001"] = self._order()
        mp_api.payments["987654321"] = payment_factory()

        resolution = resolve_merchant_order({
            "id": 10, "topic": "merchant_order",
            "resource": "https://api.mercadolibre.com/merchant_orders/5550001",
        })

        assert resolution.tenant.id == tenant.id
        assert len(resolution.payments) == 1
        assert resolution.payments[0].transaction.id == transaction.id

    def test_order_reference_used_when_payment_has_none(self, db_session, tenant,
                                                        transaction, mp_api, payment_factory):
        mp_api.orders["5550001"] = self._order(collector=None, seller={"id": 777})
        mp_api.payments["987654321"] = payment_factory(external_reference=None)

        resolution = resolve_merchant_order({"id": 11, "type": "merchant_order",
                                             "data": {"id": "5550001"}})

        assert resolution.payments[0].transaction.id == transaction.id

    def test_unfetchable_payment_skipped(self, db_session, tenant, transaction, mp_api):
        mp_api.orders["5550001"] = self._order()

        resolution = resolve_merchant_order({"id": 12, "merchant_order_id": "5550001"})

        assert resolution.payments == []

    def test_unknown_collector(self, db_session, mp_api):
        mp_api.orders["5550001"] = self._order(collector={"id": 1}, external_reference="x")

        with pytest.raises(TenantUnresolved):
            resolve_merchant_order({"id": 13, "merchant_order_id": "5550001"})


class TestResolveStripe:

    def _event(self, obj, account="acct_test"):
        return {"id": "evt_1", "type": "x", "account": account, "data": {"object": obj}}

    def test_by_metadata_reference(self, db_session, tenant, stripe_transaction):
        event = self._event({
            "object": "checkout.session", "id": "cs_1",
            "metadata": {"external_reference": "stripe-ref-1"},
        })
        resolution = resolve_stripe_event(event)
        assert resolution.transaction.id == stripe_transaction.id
        assert resolution.tenant.id == tenant.id

    def test_by_payment_intent(self, db_session, tenant, stripe_transaction):
        event = self._event({"object": "payment_intent", "id": "pi_123"})
        assert resolve_stripe_event(event).transaction.id == stripe_transaction.id

    def test_by_charge_payment_intent_without_account(self, db_session, tenant,
                                                      stripe_transaction):
        event = self._event({"object": "charge", "id": "ch_1", "payment_intent": "pi_123"},
                            account=None)
        resolution = resolve_stripe_event(event)
        assert resolution.tenant.id == tenant.id

    def test_other_account_does_not_match(self, db_session, tenant, other_tenant,
                                          stripe_transaction):
        other_tenant.stripe_account_id = "acct_other"
        db.session.commit()
        event = self._event({"object": "payment_intent", "id": "pi_123"}, account="acct_other")

        with pytest.raises(TransactionUnresolved):
            resolve_stripe_event(event)


class TestFindForTenant:

    def test_by_provider_payment_id(self, db_session, tenant, stripe_transaction):
        assert find_transaction_for_tenant(tenant, "pi_123").id == stripe_transaction.id

    def test_by_transaction_id(self, db_session, tenant, transaction):
        assert find_transaction_for_tenant(tenant, transaction.id).id == transaction.id

    def test_other_tenant_gets_not_found(self, db_session, other_tenant, stripe_transaction):
        with pytest.raises(TransactionUnresolved):
            find_transaction_for_tenant(other_tenant, "pi_123")

    def test_remote_lookup_by_reference(self, db_session, tenant, transaction, mp_api,
                                        payment_factory):
        mp_api.payments["987654321"] = payment_factory()
        assert find_transaction_for_tenant(tenant, "987654321").id == transaction.id

    def test_remote_payment_of_other_collector(self, db_session, tenant, transaction,
                                               mp_api, payment_factory):
        mp_api.payments["987654321"] = payment_factory(collector_id=123)
        with pytest.raises(TransactionUnresolved):
            find_transaction_for_tenant(tenant, "987654321")

    def test_remote_404(self, db_session, tenant, mp_api):
        with pytest.raises(TransactionUnresolved):
            find_transaction_for_tenant(tenant, "111")
