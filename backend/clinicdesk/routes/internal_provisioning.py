from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from clinicdesk.core.database import get_db
from clinicdesk.dependencies.actor import require_internal_token
from clinicdesk.dependencies.billing import get_billing_client
from clinicdesk.routes.provisioning import run_reprocess
from clinicdesk.schemas.provisioning import ProvisioningJobOut
from clinicdesk.services.billing import BillingClient
from clinicdesk.services.reprocessing import InternalCaller

router = APIRouter(
    prefix="/internal/provisioning",
    tags=["internal"],
    include_in_schema=False,
    dependencies=[Depends(require_internal_token)],
)


@router.post("/jobs/{job_id}/reprocess", response_model=ProvisioningJobOut)
def reprocess_job_internal(
    job_id: str,
    db: Session = Depends(get_db),
    billing: BillingClient = Depends(get_billing_client),
) -> ProvisioningJobOut:
    return run_reprocess(db, billing, job_id, InternalCaller())
