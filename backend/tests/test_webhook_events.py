from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from clinicdesk.models.webhook_event import WebhookEvent
from clinicdesk.services import webhook_events
from clinicdesk.services.webhook_events import WebhookEventError, reserve_event

from conftest import checkout_session, stripe_event


def _event(event_id: str = "evt_1") -> dict:
    return stripe_event(event_id, "checkout.session.completed", checkout_session())


def test_first_delivery_is_reserved_as_processing(db_session):
    reservation = reserve_event(db_session, _event())

    assert reservation.should_process is True
    assert reservation.is_duplicate is False

    row = webhook_events.get_event(db_session, "evt_1")
    assert row.status == "processing"
    assert row.attempt_count == 1
    assert row.event_type == "checkout.session.completed"
    assert row.payload["data"]["object"]["id"] == "cs_test_1"


def test_processed_event_is_not_processed_again(db_session):
    reserve_event(db_session, _event())
    webhook_events.mark_event_processed(db_session, "evt_1")

    again = reserve_event(db_session, _event())
    assert again.should_process is False
    assert again.is_duplicate is True
    assert again.status == "processed"

    row = webhook_events.get_event(db_session, "evt_1")
    assert row.status == "processed"
    assert row.attempt_count == 2
    assert row.processed_at is not None


def test_in_flight_event_is_skipped_without_lease(db_session):
    reserve_event(db_session, _event())

    again = reserve_event(db_session, _event(), lease_seconds=0)
    assert again.should_process is False
    assert again.status == "processing"
    assert webhook_events.get_event(db_session, "evt_1").attempt_count == 2


def test_failed_event_is_reclaimed_on_redelivery(db_session):
    reserve_event(db_session, _event())
    webhook_events.mark_event_failed(db_session, "evt_1", "db timeout")

    failed = webhook_events.get_event(db_session, "evt_1")
    assert failed.status == "failed"
    assert failed.error_message == "db timeout"

    retry = reserve_event(db_session, _event())
    assert retry.should_process is True
    assert retry.is_duplicate is True

    row = webhook_events.get_event(db_session, "evt_1")
    assert row.status == "processing"
    assert row.error_message is None
    assert row.attempt_count == 2


def test_losing_the_claim_race_skips_processing(db_session, monkeypatch):
    reserve_event(db_session, _event())
    webhook_events.mark_event_failed(db_session, "evt_1", "boom")

    real_claim = webhook_events._claim

    def _claim_after_competitor(db, event, now, bookkeeping, condition):
        # Another worker claims the row between our status read and our update.
        db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event["id"])
            .values(status="processing")
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return real_claim(db, event, now, bookkeeping, condition)

    monkeypatch.setattr(webhook_events, "_claim", _claim_after_competitor)

    reservation = reserve_event(db_session, _event())
    assert reservation.should_process is False
    assert reservation.is_duplicate is True


def test_stale_processing_event_is_reclaimed_when_lease_enabled(db_session):
    reserve_event(db_session, _event())
    db_session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.event_id == "evt_1")
        .values(processing_started_at=datetime.now(timezone.utc) - timedelta(minutes=10))
        .execution_options(synchronize_session=False)
    )
    db_session.commit()

    assert reserve_event(db_session, _event(), lease_seconds=0).should_process is False

    reclaimed = reserve_event(db_session, _event(), lease_seconds=60)
    assert reclaimed.should_process is True
    assert reclaimed.is_duplicate is True

    # A freshly reclaimed event is within its lease again.
    assert reserve_event(db_session, _event(), lease_seconds=60).should_process is False


def test_failure_message_is_truncated(db_session):
    reserve_event(db_session, _event())
    webhook_events.mark_event_failed(db_session, "evt_1", "x" * 2000)

    row = webhook_events.get_event(db_session, "evt_1")
    assert len(row.error_message) == webhook_events.MAX_ERROR_MESSAGE_LENGTH


def test_event_without_id_is_rejected(db_session):
    with pytest.raises(WebhookEventError):
        reserve_event(db_session, {"type": "invoice.paid", "data": {"object": {}}})


def test_outcome_is_only_recorded_while_in_flight(db_session):
    reserve_event(db_session, _event())
    assert webhook_events.mark_event_processed(db_session, "evt_1") is True

    # A worker that lost its lease finishes late with an error.
    assert webhook_events.mark_event_failed(db_session, "evt_1", "late failure") is False
    assert webhook_events.mark_event_processed(db_session, "evt_1") is False

    row = webhook_events.get_event(db_session, "evt_1")
    assert row.status == "processed"
    assert row.error_message is None
    assert reserve_event(db_session, _event()).should_process is False
