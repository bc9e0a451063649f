from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, String, func

from clinicdesk.core.base import Base


class SignupIntentStatus(str, Enum):
    PENDING = "PENDING"
    PENDING_VERIFICATIONS = "PENDING_VERIFICATIONS"
    VERIFIED = "VERIFIED"
    CHECKOUT_STARTED = "CHECKOUT_STARTED"
    CONVERTED = "CONVERTED"
    BLOCKED = "BLOCKED"
    EXPIRED = "EXPIRED"


def _new_intent_id() -> str:
    return str(uuid.uuid4())


class SignupIntent(Base):
    """Pre-checkout draft of a prospective clinic."""

    __tablename__ = "signup_intents"

    id = Column(String(36), primary_key=True, default=_new_intent_id)
    email = Column(String(255), nullable=False, index=True)
    user_id = Column(String(64), nullable=True)
    clinic_name = Column(String(255), nullable=True)
    admin_name = Column(String(255), nullable=True)
    whatsapp_number = Column(String(32), nullable=True)
    phone_e164 = Column(String(32), nullable=True)
    phone_verified_at = Column(DateTime(timezone=True), nullable=True)
    cpf_hash = Column(String(128), nullable=True)
    plan = Column(String(30), nullable=True)
    status = Column(String(30), nullable=False, server_default=SignupIntentStatus.PENDING.value)
    clinic_id = Column(String(36), nullable=True)
    checkout_session_id = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
