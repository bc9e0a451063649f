from __future__ import annotations

from clinicdesk.models import AuditLog, Clinic, ProvisioningJob
from clinicdesk.services import webhook_events

from conftest import checkout_session, sign_payload, stripe_event, to_json_bytes


def _post(client, event: dict, *, signature: str | None = None):
    payload = to_json_bytes(event)
    return client.post(
        "/billing/stripe/webhook",
        content=payload,
        headers={"stripe-signature": signature or sign_payload(payload)},
    )


def _assert_error_shape(res, error: str):
    data = res.json()
    assert data["error"] == error
    assert isinstance(data.get("message"), str) and data["message"]


def test_signed_checkout_event_provisions_tenant(client, db_session, fake_stripe, signup_intent):
    intent = signup_intent()
    fake_stripe.add_subscription("sub_1", customer="cus_1")
    event = stripe_event("evt_1", "checkout.session.completed", checkout_session(intent_id=intent.id))

    res = _post(client, event)

    assert res.status_code == 200
    assert res.json() == {"received": True, "skipped": False, "duplicate": False}
    assert webhook_events.get_event(db_session, "evt_1").status == "processed"
    assert db_session.query(ProvisioningJob).one().status == "done"
    assert db_session.query(Clinic).count() == 1

    job = db_session.query(ProvisioningJob).one()
    audit = db_session.query(AuditLog).one()
    assert audit.action == "billing.checkout.completed"
    assert audit.clinic_id == job.clinic_id
    assert audit.user_id == "user_owner"
    assert audit.data == {"eventId": "evt_1", "sessionId": "cs_test_1", "provisioningJobId": job.job_id}


def test_duplicate_delivery_is_acknowledged_and_skipped(client, db_session, fake_stripe, signup_intent):
    intent = signup_intent()
    fake_stripe.add_subscription("sub_1", customer="cus_1")
    event = stripe_event("evt_1", "checkout.session.completed", checkout_session(intent_id=intent.id))

    assert _post(client, event).status_code == 200
    res = _post(client, event)

    assert res.status_code == 200
    assert res.json() == {"received": True, "skipped": True, "duplicate": True}
    assert webhook_events.get_event(db_session, "evt_1").attempt_count == 2
    assert fake_stripe.retrieved == ["sub_1"]


def test_invalid_signature_is_rejected(client, db_session):
    event = stripe_event("evt_1", "checkout.session.completed", checkout_session(user_id="user_1"))

    res = _post(client, event, signature=sign_payload(to_json_bytes(event), secret="whsec_wrong"))

    assert res.status_code == 400
    _assert_error_shape(res, "VALIDATION_ERROR")
    assert webhook_events.get_event(db_session, "evt_1") is None


def test_missing_signature_header_is_rejected(client):
    res = client.post("/billing/stripe/webhook", content=b"{}")
    assert res.status_code == 400
    _assert_error_shape(res, "VALIDATION_ERROR")


def test_event_without_type_is_rejected(client):
    res = _post(client, {"id": "evt_1", "data": {"object": {}}})
    assert res.status_code == 400


def test_processing_failure_returns_500_and_redelivery_recovers(client, db_session, fake_stripe, signup_intent):
    intent = signup_intent()
    fake_stripe.add_subscription("sub_1", customer="cus_1")
    fake_stripe.fail_with = RuntimeError("stripe unavailable")
    event = stripe_event("evt_1", "checkout.session.completed", checkout_session(intent_id=intent.id))

    res = _post(client, event)
    assert res.status_code == 500
    _assert_error_shape(res, "INTERNAL_ERROR")

    failed = webhook_events.get_event(db_session, "evt_1")
    assert failed.status == "failed"
    assert "stripe unavailable" in failed.error_message
    assert db_session.query(ProvisioningJob).one().status == "failed"

    fake_stripe.fail_with = None
    retry = _post(client, event)

    assert retry.status_code == 200
    assert retry.json() == {"received": True, "skipped": False, "duplicate": True}
    assert webhook_events.get_event(db_session, "evt_1").status == "processed"
    assert db_session.query(ProvisioningJob).one().status == "done"
    assert db_session.query(Clinic).count() == 1


def test_unhandled_event_type_is_acknowledged(client, db_session):
    event = stripe_event("evt_9", "customer.created", {"id": "cus_9"})

    res = _post(client, event)

    assert res.status_code == 200
    assert res.json()["skipped"] is False
    assert webhook_events.get_event(db_session, "evt_9").status == "processed"


def test_invoice_paid_event_reconciles_subscription(client, db_session, fake_stripe, clinic_admin):
    clinic = clinic_admin("user_admin", customer_id="cus_1")
    fake_stripe.add_subscription("sub_1", customer="cus_1")
    invoice = {"id": "in_1", "customer": "cus_1", "subscription": "sub_1", "amount_paid": 9900, "currency": "brl"}

    res = _post(client, stripe_event("evt_inv", "invoice.paid", invoice))

    assert res.status_code == 200
    db_session.expire_all()
    assert db_session.get(Clinic, clinic.id).subscription_status == "active"
