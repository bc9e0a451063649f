from __future__ import annotations

from datetime import datetime

from clinicdesk.models import AuditLog, Clinic, PaymentHistory, Subscription
from clinicdesk.services.subscriptions import SubscriptionReconciler, invoice_subscription_id

from conftest import PERIOD_END


def _invoice(invoice_id: str = "in_1", *, customer: str = "cus_1", subscription: str | None = "sub_1") -> dict:
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "subscription": subscription,
        "amount_paid": 14900,
        "currency": "BRL",
        "status_transitions": {"paid_at": PERIOD_END - 30 * 86400},
    }


def test_invoice_paid_records_payment_once(db_session, billing, fake_stripe, clinic_admin):
    clinic = clinic_admin("user_admin", customer_id="cus_1")
    fake_stripe.add_subscription("sub_1", customer="cus_1")
    reconciler = SubscriptionReconciler(db_session, billing)

    assert reconciler.handle_invoice_paid(_invoice()) == clinic.id
    assert reconciler.handle_invoice_paid(_invoice()) == clinic.id

    payment = db_session.query(PaymentHistory).one()
    assert payment.clinic_id == clinic.id
    assert payment.amount_cents == 14900
    assert payment.currency == "brl"

    subscription = db_session.query(Subscription).one()
    assert subscription.status == "active"
    assert subscription.stripe_customer_id == "cus_1"

    actions = [row.action for row in db_session.query(AuditLog).all()]
    assert actions.count("billing.invoice.paid") == 2
    audit = db_session.query(AuditLog).first()
    assert audit.user_id == "user_admin"
    assert audit.data["invoiceId"] == "in_1"


def test_payment_failure_cancels_active_subscription(db_session, billing, fake_stripe, clinic_admin):
    clinic = clinic_admin("user_admin", customer_id="cus_1")
    fake_stripe.add_subscription("sub_1", customer="cus_1", status="past_due")

    result = SubscriptionReconciler(db_session, billing).handle_invoice_payment_failed(_invoice())

    assert result == clinic.id
    assert fake_stripe.canceled == ["sub_1"]
    assert db_session.query(Subscription).one().status == "canceled"
    assert db_session.get(Clinic, clinic.id).subscription_status == "canceled"
    assert db_session.query(AuditLog).one().action == "billing.invoice.payment_failed"


def test_payment_failure_on_canceled_subscription_does_not_cancel_again(db_session, billing, fake_stripe, clinic_admin):
    clinic_admin("user_admin", customer_id="cus_1")
    fake_stripe.add_subscription("sub_1", customer="cus_1", status="canceled")

    SubscriptionReconciler(db_session, billing).handle_invoice_payment_failed(_invoice())

    assert fake_stripe.canceled == []
    assert db_session.query(Subscription).one().status == "canceled"


def test_subscription_update_uses_current_provider_state(db_session, billing, fake_stripe, clinic_admin):
    clinic = clinic_admin("user_admin", customer_id="cus_1")
    fake_stripe.add_subscription("sub_1", customer="cus_1", status="active", metadata={"plan": "annual"})
    stale_snapshot = {"id": "sub_1", "customer": "cus_1", "status": "past_due"}

    result = SubscriptionReconciler(db_session, billing).handle_subscription_changed(stale_snapshot)

    assert result == clinic.id
    subscription = db_session.query(Subscription).one()
    assert subscription.status == "active"
    assert subscription.plan == "annual"
    assert subscription.current_period_end.replace(tzinfo=None) == datetime(2030, 1, 1)
    assert db_session.query(AuditLog).one().action == "billing.subscription.updated"


def test_subscription_metadata_clinic_wins_over_customer_lookup(db_session, billing, fake_stripe, clinic_admin):
    clinic_admin("user_a", customer_id="cus_1")
    other = clinic_admin("user_b")
    fake_stripe.add_subscription("sub_1", customer="cus_1", metadata={"clinic_id": other.id})

    result = SubscriptionReconciler(db_session, billing).handle_subscription_changed({"id": "sub_1"}, deleted=True)

    assert result == other.id
    assert db_session.query(AuditLog).one().action == "billing.subscription.deleted"


def test_unmapped_customer_is_skipped(db_session, billing, fake_stripe):
    fake_stripe.add_subscription("sub_1", customer="cus_unknown")
    reconciler = SubscriptionReconciler(db_session, billing)

    assert reconciler.handle_subscription_changed({"id": "sub_1"}) is None
    assert reconciler.handle_invoice_paid(_invoice(customer="cus_unknown")) is None
    assert db_session.query(Subscription).count() == 0
    assert db_session.query(PaymentHistory).count() == 0


def test_invoice_subscription_id_reads_nested_parent():
    invoice = {
        "id": "in_1",
        "subscription": None,
        "parent": {"subscription_details": {"subscription": "sub_nested"}},
    }
    assert invoice_subscription_id(invoice) == "sub_nested"
    assert invoice_subscription_id({"subscription": {"id": "sub_expanded"}}) == "sub_expanded"
    assert invoice_subscription_id({"id": "in_2"}) is None


def test_invoice_without_subscription_reconciles_latest_customer_subscription(
    db_session, billing, fake_stripe, clinic_admin
):
    clinic = clinic_admin("user_admin", customer_id="cus_1")
    fake_stripe.add_subscription("sub_latest", customer="cus_1", status="trialing")

    result = SubscriptionReconciler(db_session, billing).handle_invoice_paid(_invoice(subscription=None))

    assert result == clinic.id
    subscription = db_session.query(Subscription).one()
    assert subscription.stripe_subscription_id == "sub_latest"
    assert subscription.status == "trialing"
    assert fake_stripe.retrieved == []
