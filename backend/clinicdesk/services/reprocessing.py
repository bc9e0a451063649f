from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from sqlalchemy.orm import Session

from clinicdesk.models.provisioning_job import ProvisioningJob
from clinicdesk.schemas.payloads import parse_job_payload
from clinicdesk.services.provisioning import ProvisioningService
from clinicdesk.services.provisioning_jobs import require_job

logger = logging.getLogger(__name__)


class ReprocessForbiddenError(Exception):
    pass


@dataclass(frozen=True)
class InternalCaller:
    """Operator tooling; never restricted."""


@dataclass(frozen=True)
class AdminCaller:
    actor_clinic_id: str | None
    actor_role: str | None


ReprocessCaller = Union[InternalCaller, AdminCaller]


def assert_reprocess_permission(job: ProvisioningJob, caller: ReprocessCaller) -> None:
    if isinstance(caller, InternalCaller):
        return

    if caller.actor_role != "admin":
        raise ReprocessForbiddenError("Only admin can reprocess provisioning jobs")
    if not job.clinic_id:
        raise ReprocessForbiddenError("Job without clinic binding can only be reprocessed internally")
    if caller.actor_clinic_id != job.clinic_id:
        raise ReprocessForbiddenError("Admin can only reprocess jobs from own clinic")


class ReprocessingService:
    """Re-runs a recorded job from its stored checkout payload, reusing the job row."""

    def __init__(self, db: Session, provisioning: ProvisioningService):
        self.db = db
        self.provisioning = provisioning

    def reprocess(self, job_id: str, caller: ReprocessCaller) -> ProvisioningJob:
        job = require_job(self.db, job_id)
        assert_reprocess_permission(job, caller)
        stored = parse_job_payload(job.payload)

        logger.info(
            "Reprocessing provisioning job: job_id=%s status=%s caller=%s",
            job.job_id,
            job.status,
            type(caller).__name__,
        )
        return self.provisioning.provision(
            stored.session,
            stripe_event_id=job.stripe_event_id,
            forced_job_id=job.job_id,
            source=stored.source,
        )
