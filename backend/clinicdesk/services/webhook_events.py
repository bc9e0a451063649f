from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from clinicdesk.core.config import settings
from clinicdesk.core.upsert import upsert
from clinicdesk.models.webhook_event import CLAIMABLE_STATUSES, WebhookEvent, WebhookEventStatus

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500


class WebhookEventError(Exception):
    """Raised when an inbound event cannot be reserved."""


@dataclass(frozen=True)
class EventReservation:
    should_process: bool
    is_duplicate: bool
    status: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _clip(message: str | None) -> str | None:
    if not message:
        return None
    return message[:MAX_ERROR_MESSAGE_LENGTH]


def reserve_event(
    db: Session,
    event: Mapping[str, Any],
    *,
    lease_seconds: int | None = None,
) -> EventReservation:
    """
    Claim an inbound provider event for processing, at most once at a time.

    - First delivery inserts the row directly as "processing".
    - A redelivery of a processed/in-flight event only refreshes bookkeeping.
    - A redelivery of a failed/received event is claimed through a single
      conditional UPDATE; losing that race means someone else owns it.
    """
    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type:
        raise WebhookEventError("Event missing id/type")

    now = _now()
    created = upsert(
        db,
        WebhookEvent,
        {
            "event_id": event_id,
            "event_type": event_type,
            "status": WebhookEventStatus.PROCESSING.value,
            "payload": dict(event),
            "attempt_count": 1,
            "received_at": now,
            "processing_started_at": now,
            "last_seen_at": now,
            "updated_at": now,
        },
        conflict_columns=["event_id"],
        update_columns=[],
        returning=[WebhookEvent.event_id],
    ).first()
    db.commit()

    if created is not None:
        logger.info("Webhook event reserved: event_id=%s type=%s", event_id, event_type)
        return EventReservation(should_process=True, is_duplicate=False, status=WebhookEventStatus.PROCESSING.value)

    existing_status = db.execute(
        select(WebhookEvent.status).where(WebhookEvent.event_id == event_id)
    ).scalar_one_or_none()
    if existing_status is None:
        raise WebhookEventError(f"Webhook event {event_id} not found after conflict")

    bookkeeping = {
        "attempt_count": WebhookEvent.attempt_count + 1,
        "last_seen_at": now,
        "updated_at": now,
    }

    if existing_status in (WebhookEventStatus.PROCESSED.value, WebhookEventStatus.PROCESSING.value):
        if existing_status == WebhookEventStatus.PROCESSING.value and _reclaim_stale(
            db, event, now, bookkeeping, lease_seconds
        ):
            return EventReservation(should_process=True, is_duplicate=True, status=WebhookEventStatus.PROCESSING.value)

        _touch(db, event_id, bookkeeping)
        logger.info("Webhook event duplicate: event_id=%s status=%s", event_id, existing_status)
        return EventReservation(should_process=False, is_duplicate=True, status=existing_status)

    claimed = _claim(
        db,
        event,
        now,
        bookkeeping,
        WebhookEvent.status.in_(CLAIMABLE_STATUSES),
    )
    if not claimed:
        _touch(db, event_id, bookkeeping)
        logger.info("Webhook event claim lost: event_id=%s previous_status=%s", event_id, existing_status)
        return EventReservation(should_process=False, is_duplicate=True, status=existing_status)

    logger.info("Webhook event re-claimed for retry: event_id=%s previous_status=%s", event_id, existing_status)
    return EventReservation(should_process=True, is_duplicate=True, status=WebhookEventStatus.PROCESSING.value)


def _touch(db: Session, event_id: str, bookkeeping: dict) -> None:
    db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id)
        .values(**bookkeeping)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def _claim(db: Session, event: Mapping[str, Any], now: datetime, bookkeeping: dict, condition) -> bool:
    result = db.execute(
        update(WebhookEvent)
        .where(and_(WebhookEvent.event_id == event.get("id"), condition))
        .values(
            **bookkeeping,
            event_type=event.get("type"),
            status=WebhookEventStatus.PROCESSING.value,
            payload=dict(event),
            error_message=None,
            processing_started_at=now,
            processed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _reclaim_stale(
    db: Session,
    event: Mapping[str, Any],
    now: datetime,
    bookkeeping: dict,
    lease_seconds: int | None,
) -> bool:
    lease = settings.WEBHOOK_PROCESSING_LEASE_SECONDS if lease_seconds is None else lease_seconds
    if not lease or lease <= 0:
        return False

    cutoff = now - timedelta(seconds=lease)
    claimed = _claim(
        db,
        event,
        now,
        bookkeeping,
        and_(
            WebhookEvent.status == WebhookEventStatus.PROCESSING.value,
            WebhookEvent.processing_started_at <= cutoff,
        ),
    )
    if claimed:
        logger.warning(
            "Webhook event lease expired; reclaimed: event_id=%s lease_seconds=%s",
            event.get("id"),
            lease,
        )
    return claimed


def _in_flight(event_id: str):
    # Only the worker holding the "processing" claim records an outcome.
    return and_(
        WebhookEvent.event_id == event_id,
        WebhookEvent.status == WebhookEventStatus.PROCESSING.value,
    )


def mark_event_processed(db: Session, event_id: str) -> bool:
    now = _now()
    result = db.execute(
        update(WebhookEvent)
        .where(_in_flight(event_id))
        .values(
            status=WebhookEventStatus.PROCESSED.value,
            processed_at=now,
            error_message=None,
            updated_at=now,
            last_seen_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        logger.warning("Webhook event no longer in flight; processed mark skipped: event_id=%s", event_id)
        return False
    return True


def mark_event_failed(db: Session, event_id: str, message: str) -> bool:
    now = _now()
    result = db.execute(
        update(WebhookEvent)
        .where(_in_flight(event_id))
        .values(
            status=WebhookEventStatus.FAILED.value,
            error_message=_clip(message) or "Unhandled webhook error",
            updated_at=now,
            last_seen_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        logger.warning("Webhook event no longer in flight; failure mark skipped: event_id=%s", event_id)
        return False
    return True


def get_event(db: Session, event_id: str) -> WebhookEvent | None:
    return db.execute(
        select(WebhookEvent).where(WebhookEvent.event_id == event_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()
