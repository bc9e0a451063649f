from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, Integer, JSON, String, Text, func

from clinicdesk.core.base import Base


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


# Statuses a redelivery is allowed to claim for a fresh processing attempt.
CLAIMABLE_STATUSES = (WebhookEventStatus.FAILED.value, WebhookEventStatus.RECEIVED.value)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, server_default=WebhookEventStatus.RECEIVED.value)
    attempt_count = Column(Integer, nullable=False, server_default="1", default=1)
    payload = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=True)

    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    last_seen_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
