from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from clinicdesk.core.database import get_db
from clinicdesk.dependencies.actor import Actor, get_current_actor
from clinicdesk.dependencies.billing import get_billing_client
from clinicdesk.models.provisioning_job import ProvisioningJob
from clinicdesk.schemas.payloads import InvalidJobPayloadError
from clinicdesk.schemas.provisioning import ProvisioningJobOut, ProvisioningStatusOut, SubscriptionStateOut
from clinicdesk.services.billing import BillingClient
from clinicdesk.services.provisioning import ProvisioningService
from clinicdesk.services.provisioning_jobs import ProvisioningJobNotFoundError
from clinicdesk.services.provisioning_status import get_provisioning_status
from clinicdesk.services.reprocessing import (
    AdminCaller,
    ReprocessCaller,
    ReprocessForbiddenError,
    ReprocessingService,
)

router = APIRouter(tags=["provisioning"])

logger = logging.getLogger(__name__)


def job_out(job: ProvisioningJob) -> ProvisioningJobOut:
    return ProvisioningJobOut(
        job_id=job.job_id,
        status=job.status,
        checkpoint=job.checkpoint,
        clinic_id=job.clinic_id,
        error_message=job.error_message,
        updated_at=job.updated_at,
    )


def run_reprocess(
    db: Session,
    billing: BillingClient,
    job_id: str,
    caller: ReprocessCaller,
) -> ProvisioningJobOut:
    service = ReprocessingService(db, ProvisioningService(db, billing))
    try:
        job = service.reprocess(job_id, caller)
    except ProvisioningJobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ReprocessForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except InvalidJobPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Reprocessing job %s failed", job_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Provisioning failed",
        ) from exc
    return job_out(job)


@router.get("/signup/provisioning-status", response_model=ProvisioningStatusOut)
def provisioning_status(
    session_id: str | None = Query(None),
    intent_id: str | None = Query(None),
    db: Session = Depends(get_db),
) -> ProvisioningStatusOut:
    if not session_id and not intent_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="session_id or intent_id is required")

    result = get_provisioning_status(db, checkout_session_id=session_id, intent_id=intent_id)
    return ProvisioningStatusOut(
        ready=result.ready,
        label=result.label,
        clinic_id=result.clinic_id,
        job=job_out(result.job) if result.job else None,
        subscription=(
            SubscriptionStateOut(
                status=result.subscription.status,
                current_period_end=result.subscription.current_period_end,
            )
            if result.subscription
            else None
        ),
    )


@router.post("/provisioning/jobs/{job_id}/reprocess", response_model=ProvisioningJobOut)
def reprocess_job_as_admin(
    job_id: str,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    billing: BillingClient = Depends(get_billing_client),
) -> ProvisioningJobOut:
    caller = AdminCaller(actor_clinic_id=actor.clinic_id, actor_role=actor.role)
    return run_reprocess(db, billing, job_id, caller)
