from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from clinicdesk.core.upsert import upsert
from clinicdesk.models.provisioning_job import STEP_ORDER, ProvisioningJob, ProvisioningJobStatus, step_index

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500

# Correlation columns a checkpoint may fill in.
_ID_FIELDS = ("customer_id", "subscription_id", "intent_id", "user_id", "clinic_id")


class ProvisioningJobNotFoundError(Exception):
    pass


class JobStateError(Exception):
    """Raised when a checkpoint would move a job backwards or reopen a finished one."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_job(db: Session, job_id: str) -> ProvisioningJob | None:
    return db.execute(
        select(ProvisioningJob)
        .where(ProvisioningJob.job_id == job_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def require_job(db: Session, job_id: str) -> ProvisioningJob:
    job = get_job(db, job_id)
    if job is None:
        raise ProvisioningJobNotFoundError("Provisioning job not found")
    return job


def _find_by_event(db: Session, stripe_event_id: str) -> ProvisioningJob | None:
    return db.execute(
        select(ProvisioningJob)
        .where(ProvisioningJob.stripe_event_id == stripe_event_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _find_by_session(db: Session, checkout_session_id: str) -> ProvisioningJob | None:
    return db.execute(
        select(ProvisioningJob)
        .where(ProvisioningJob.checkout_session_id == checkout_session_id)
        .order_by(ProvisioningJob.updated_at.desc(), ProvisioningJob.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _fill_missing(job: ProvisioningJob, ids: dict[str, Any]) -> bool:
    changed = False
    for field, value in ids.items():
        if value and not getattr(job, field):
            setattr(job, field, value)
            changed = True
    return changed


def ensure_job(
    db: Session,
    *,
    stripe_event_id: str | None = None,
    checkout_session_id: str | None = None,
    customer_id: str | None = None,
    subscription_id: str | None = None,
    intent_id: str | None = None,
    payload: dict[str, Any] | None = None,
) -> ProvisioningJob:
    """
    Find-or-create the job for a checkout event.

    Keyed by ``stripe_event_id`` when present (atomic insert-if-absent), else by
    ``checkout_session_id``. Existing rows only get missing ids filled in; a
    ``done`` job is returned untouched.
    """
    ids = {
        "customer_id": customer_id,
        "subscription_id": subscription_id,
        "intent_id": intent_id,
    }
    now = _now()

    job: ProvisioningJob | None = None
    if stripe_event_id:
        upsert(
            db,
            ProvisioningJob,
            {
                "stripe_event_id": stripe_event_id,
                "checkout_session_id": checkout_session_id,
                **ids,
                "status": ProvisioningJobStatus.RECEIVED.value,
                "payload": payload,
                "created_at": now,
                "updated_at": now,
            },
            conflict_columns=["stripe_event_id"],
            update_columns=[],
        )
        db.commit()
        job = _find_by_event(db, stripe_event_id)
        if job is None:
            raise ProvisioningJobNotFoundError(f"Provisioning job missing for event {stripe_event_id}")
    elif checkout_session_id:
        job = _find_by_session(db, checkout_session_id)

    if job is None:
        job = ProvisioningJob(
            checkout_session_id=checkout_session_id,
            status=ProvisioningJobStatus.RECEIVED.value,
            payload=payload,
            created_at=now,
            updated_at=now,
            **ids,
        )
        db.add(job)
        db.commit()
        db.refresh(job)
        logger.info("Provisioning job created: job_id=%s session=%s", job.job_id, checkout_session_id)
        return job

    if job.is_done:
        return job

    changed = _fill_missing(job, {**ids, "checkout_session_id": checkout_session_id})
    if payload and not job.payload:
        job.payload = payload
        changed = True
    if changed:
        job.updated_at = now
        db.commit()
        db.refresh(job)
    return job


def _steps_up_to(status: ProvisioningJobStatus) -> list[str]:
    return [step.value for step in STEP_ORDER[: step_index(status) + 1]]


def restart_job(db: Session, job: ProvisioningJob) -> ProvisioningJob:
    """Re-enter a failed job for a fresh attempt; the checkpoint is kept."""
    if job.status != ProvisioningJobStatus.FAILED.value:
        return job
    result = db.execute(
        update(ProvisioningJob)
        .where(
            ProvisioningJob.job_id == job.job_id,
            ProvisioningJob.status == ProvisioningJobStatus.FAILED.value,
        )
        .values(status=ProvisioningJobStatus.RECEIVED.value, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    job = require_job(db, job.job_id)
    if result.rowcount == 1:
        logger.info("Provisioning job restarted: job_id=%s checkpoint=%s", job.job_id, job.checkpoint)
    return job


def set_job_step(
    db: Session,
    job: ProvisioningJob,
    status: ProvisioningJobStatus,
    *,
    payload: dict[str, Any] | None = None,
    **ids: str | None,
) -> ProvisioningJob:
    """Persist a completed step together with every id resolved so far."""
    if status == ProvisioningJobStatus.FAILED:
        raise JobStateError("Use fail_job to record failures")
    unknown = set(ids) - set(_ID_FIELDS)
    if unknown:
        raise TypeError(f"Unknown job fields: {', '.join(sorted(unknown))}")

    values: dict[str, Any] = {field: value for field, value in ids.items() if value is not None}
    if payload is not None:
        values["payload"] = payload

    # The stored row decides: never past "done", never behind the checkpoint.
    result = db.execute(
        update(ProvisioningJob)
        .where(
            ProvisioningJob.job_id == job.job_id,
            ProvisioningJob.status != ProvisioningJobStatus.DONE.value,
            or_(
                ProvisioningJob.checkpoint.is_(None),
                ProvisioningJob.checkpoint.in_(_steps_up_to(status)),
            ),
        )
        .values(
            **values,
            status=status.value,
            checkpoint=status.value,
            error_message=None,
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    current = require_job(db, job.job_id)
    if result.rowcount != 1:
        raise JobStateError(
            f"Job {current.job_id} cannot move from {current.checkpoint or current.status} to {status.value}"
        )
    logger.info("Provisioning job step: job_id=%s status=%s", current.job_id, current.status)
    return current


def fail_job(db: Session, job: ProvisioningJob, message: str, **ids: str | None) -> ProvisioningJob:
    """Record a failed attempt; a job that already reached "done" stays done."""
    job_id = job.job_id
    # The session may hold a half-applied write from the failing step.
    db.rollback()
    values: dict[str, Any] = {
        field: value for field, value in ids.items() if field in _ID_FIELDS and value is not None
    }
    result = db.execute(
        update(ProvisioningJob)
        .where(
            ProvisioningJob.job_id == job_id,
            ProvisioningJob.status != ProvisioningJobStatus.DONE.value,
        )
        .values(
            **values,
            status=ProvisioningJobStatus.FAILED.value,
            error_message=(message or "Unknown provisioning error")[:MAX_ERROR_MESSAGE_LENGTH],
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    current = require_job(db, job_id)
    if result.rowcount != 1:
        logger.warning(
            "Provisioning failure not recorded; job already done: job_id=%s error=%s",
            current.job_id,
            message,
        )
    return current


def find_job_by_session_or_intent(
    db: Session,
    *,
    checkout_session_id: str | None = None,
    intent_id: str | None = None,
) -> ProvisioningJob | None:
    if checkout_session_id:
        job = _find_by_session(db, checkout_session_id)
        if job is not None:
            return job

    if intent_id:
        return db.execute(
            select(ProvisioningJob)
            .where(ProvisioningJob.intent_id == intent_id)
            .order_by(ProvisioningJob.updated_at.desc(), ProvisioningJob.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    return None
