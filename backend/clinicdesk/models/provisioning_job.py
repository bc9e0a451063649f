from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, JSON, String, Text, func

from clinicdesk.core.base import Base


class ProvisioningJobStatus(str, Enum):
    RECEIVED = "received"
    USER_OK = "user_ok"
    PROFILE_OK = "profile_ok"
    CLINIC_OK = "clinic_ok"
    MEMBERSHIP_OK = "membership_ok"
    SUBSCRIPTION_OK = "subscription_ok"
    DONE = "done"
    FAILED = "failed"


STEP_ORDER: tuple[ProvisioningJobStatus, ...] = (
    ProvisioningJobStatus.RECEIVED,
    ProvisioningJobStatus.USER_OK,
    ProvisioningJobStatus.PROFILE_OK,
    ProvisioningJobStatus.CLINIC_OK,
    ProvisioningJobStatus.MEMBERSHIP_OK,
    ProvisioningJobStatus.SUBSCRIPTION_OK,
    ProvisioningJobStatus.DONE,
)


def step_index(status: str | ProvisioningJobStatus | None) -> int:
    """Position of a step in STEP_ORDER; -1 for no step (or "failed")."""
    if status is None:
        return -1
    value = status.value if isinstance(status, ProvisioningJobStatus) else str(status)
    for idx, step in enumerate(STEP_ORDER):
        if step.value == value:
            return idx
    return -1


def _new_job_id() -> str:
    return str(uuid.uuid4())


class ProvisioningJob(Base):
    __tablename__ = "provisioning_jobs"

    job_id = Column(String(36), primary_key=True, default=_new_job_id)
    stripe_event_id = Column(String(255), unique=True, nullable=True, index=True)
    checkout_session_id = Column(String(255), nullable=True, index=True)
    customer_id = Column(String(255), nullable=True)
    subscription_id = Column(String(255), nullable=True)
    intent_id = Column(String(36), nullable=True, index=True)
    user_id = Column(String(64), nullable=True)
    clinic_id = Column(String(36), nullable=True, index=True)

    status = Column(String(30), nullable=False, server_default=ProvisioningJobStatus.RECEIVED.value)
    # Last step that completed successfully; survives a transition to "failed".
    checkpoint = Column(String(30), nullable=True)
    error_message = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def is_done(self) -> bool:
        return self.status == ProvisioningJobStatus.DONE.value
