from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from clinicdesk.models.provisioning_job import ProvisioningJob, ProvisioningJobStatus
from clinicdesk.services import tenants
from clinicdesk.services.plans import ACTIVE_ACCESS_STATUSES
from clinicdesk.services.provisioning_jobs import find_job_by_session_or_intent

_LABELS: dict[str, str] = {
    ProvisioningJobStatus.RECEIVED.value: "payment received",
    ProvisioningJobStatus.USER_OK.value: "account confirmed",
    ProvisioningJobStatus.PROFILE_OK.value: "profile ready",
    ProvisioningJobStatus.CLINIC_OK.value: "clinic created",
    ProvisioningJobStatus.MEMBERSHIP_OK.value: "access granted",
    ProvisioningJobStatus.SUBSCRIPTION_OK.value: "subscription active",
    ProvisioningJobStatus.DONE.value: "ready",
    ProvisioningJobStatus.FAILED.value: "activating",
}


@dataclass
class SubscriptionState:
    status: str
    current_period_end: datetime | None


@dataclass
class ProvisioningStatus:
    ready: bool
    job: ProvisioningJob | None
    subscription: SubscriptionState | None
    clinic_id: str | None

    @property
    def label(self) -> str:
        if self.ready:
            return "ready"
        if self.job is None:
            return "activating"
        # Failures are retried behind the scenes; end users just see "activating".
        return _LABELS.get(self.job.status, "activating")


def get_provisioning_status(
    db: Session,
    *,
    checkout_session_id: str | None = None,
    intent_id: str | None = None,
) -> ProvisioningStatus:
    job = find_job_by_session_or_intent(db, checkout_session_id=checkout_session_id, intent_id=intent_id)

    clinic_id = job.clinic_id if job else None
    if not clinic_id and intent_id:
        intent = tenants.get_signup_intent(db, intent_id)
        clinic_id = intent.clinic_id if intent else None

    subscription: SubscriptionState | None = None
    if clinic_id:
        record = tenants.get_subscription_for_clinic(db, clinic_id)
        if record is not None:
            subscription = SubscriptionState(status=record.status, current_period_end=record.current_period_end)

    ready = bool(job and job.is_done) or bool(subscription and subscription.status in ACTIVE_ACCESS_STATUSES)
    return ProvisioningStatus(ready=ready, job=job, subscription=subscription, clinic_id=clinic_id)
