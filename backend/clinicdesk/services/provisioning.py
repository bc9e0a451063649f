from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy.orm import Session

from clinicdesk.models.clinic import Profile
from clinicdesk.models.provisioning_job import ProvisioningJob, ProvisioningJobStatus, step_index
from clinicdesk.models.signup_intent import SignupIntent
from clinicdesk.schemas.payloads import CheckoutSession, build_job_payload
from clinicdesk.services import provisioning_jobs as jobs
from clinicdesk.services import tenants
from clinicdesk.services.billing import BillingClient, BillingSubscription
from clinicdesk.services.plans import fallback_period_end, normalize_plan

logger = logging.getLogger(__name__)

Step = ProvisioningJobStatus


class ProvisioningError(Exception):
    """A checkout cannot be provisioned with the data available (fatal for this attempt)."""


@dataclass
class _Resolved:
    customer_id: str | None
    subscription_id: str | None
    intent_id: str | None
    user_id: str | None = None
    clinic_id: str | None = None

    def ids(self) -> dict[str, str | None]:
        return {
            "customer_id": self.customer_id,
            "subscription_id": self.subscription_id,
            "intent_id": self.intent_id,
            "user_id": self.user_id,
            "clinic_id": self.clinic_id,
        }


class ProvisioningService:
    """
    Brings a tenant (user, clinic, membership, subscription) to "active" from a
    completed checkout.

    Each step is an upsert keyed by a natural identifier and is checkpointed on
    the job row with every id resolved so far. A retry (redelivery or manual
    reprocessing) skips steps the checkpoint already covers and picks their ids
    up from the job, so no completed work is redone and no clinic is created
    twice for one owner.
    """

    def __init__(self, db: Session, billing: BillingClient):
        self.db = db
        self.billing = billing

    def provision(
        self,
        session: CheckoutSession | Mapping[str, Any],
        *,
        stripe_event_id: str | None = None,
        forced_job_id: str | None = None,
        source: str | None = None,
    ) -> ProvisioningJob:
        if not isinstance(session, CheckoutSession):
            session = CheckoutSession.model_validate(session)
        payload = build_job_payload(session, source=source)

        if forced_job_id:
            job = jobs.require_job(self.db, forced_job_id)
        else:
            job = jobs.ensure_job(
                self.db,
                stripe_event_id=stripe_event_id,
                checkout_session_id=session.id,
                customer_id=session.customer_id,
                subscription_id=session.subscription_id,
                intent_id=session.meta("intent_id"),
                payload=payload,
            )

        if job.is_done:
            logger.info(
                "Provisioning already completed: job_id=%s event=%s session=%s",
                job.job_id,
                stripe_event_id,
                session.id,
            )
            return job

        job = jobs.restart_job(self.db, job)
        resolved = _Resolved(
            customer_id=session.customer_id or job.customer_id,
            subscription_id=session.subscription_id or job.subscription_id,
            intent_id=session.meta("intent_id") or job.intent_id,
        )

        try:
            return self._run_steps(job, session, resolved, payload)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            jobs.fail_job(self.db, job, message, **resolved.ids())
            logger.error(
                "Provisioning failed: job_id=%s event=%s session=%s error=%s",
                job.job_id,
                stripe_event_id,
                session.id,
                message,
            )
            raise

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def _run_steps(
        self,
        job: ProvisioningJob,
        session: CheckoutSession,
        resolved: _Resolved,
        payload: dict[str, Any],
    ) -> ProvisioningJob:
        resume = step_index(job.checkpoint)

        def done_already(step: Step) -> bool:
            return resume >= step_index(step)

        def checkpoint(step: Step) -> None:
            nonlocal job
            job = jobs.set_job_step(self.db, job, step, payload=payload, **resolved.ids())

        if not done_already(Step.RECEIVED):
            checkpoint(Step.RECEIVED)

        intent = self._load_intent(resolved.intent_id)

        if done_already(Step.USER_OK) and job.user_id:
            resolved.user_id = job.user_id
        else:
            resolved.user_id = session.meta("user_id") or (intent.user_id if intent else None)
            if not resolved.user_id:
                raise ProvisioningError("Provisioning aborted: missing user_id")
            checkpoint(Step.USER_OK)

        profile = tenants.get_profile(self.db, resolved.user_id)
        if not done_already(Step.PROFILE_OK):
            checkpoint(Step.PROFILE_OK)

        if done_already(Step.CLINIC_OK) and job.clinic_id:
            resolved.clinic_id = job.clinic_id
        else:
            resolved.clinic_id = self._resolve_clinic(session, resolved.user_id, profile, intent)
            checkpoint(Step.CLINIC_OK)

        role = (profile.role if profile else None) or "admin"

        if not done_already(Step.MEMBERSHIP_OK):
            tenants.upsert_profile(
                self.db,
                user_id=resolved.user_id,
                clinic_id=resolved.clinic_id,
                full_name=self._display_name(session, profile, intent),
                role=role,
                stripe_customer_id=resolved.customer_id,
                cpf_hash=intent.cpf_hash if intent else None,
                phone_e164=intent.phone_e164 if intent else None,
                phone_verified_at=intent.phone_verified_at if intent else None,
            )
            tenants.upsert_membership(
                self.db,
                clinic_id=resolved.clinic_id,
                user_id=resolved.user_id,
                role=role,
            )
            checkpoint(Step.MEMBERSHIP_OK)

        if not done_already(Step.SUBSCRIPTION_OK):
            self._sync_subscription(session, resolved, intent)
            checkpoint(Step.SUBSCRIPTION_OK)

        if intent is not None:
            tenants.mark_intent_converted(self.db, intent.id, resolved.clinic_id)

        checkpoint(Step.DONE)
        logger.info(
            "Provisioning completed: job_id=%s session=%s clinic_id=%s user_id=%s",
            job.job_id,
            session.id,
            resolved.clinic_id,
            resolved.user_id,
        )
        return job

    def _load_intent(self, intent_id: str | None) -> SignupIntent | None:
        if not intent_id:
            return None
        intent = tenants.get_signup_intent(self.db, intent_id)
        if intent is None:
            raise ProvisioningError(f"Signup intent not found for {intent_id}")
        return intent

    def _resolve_clinic(
        self,
        session: CheckoutSession,
        user_id: str,
        profile: Profile | None,
        intent: SignupIntent | None,
    ) -> str:
        # Precedence: metadata -> profile -> intent -> owned clinic -> create.
        clinic_id = None
        for candidate in (
            session.meta("clinic_id"),
            profile.clinic_id if profile else None,
            intent.clinic_id if intent else None,
        ):
            if not candidate:
                continue
            if tenants.find_clinic_by_id(self.db, candidate) is None:
                logger.warning("Ignoring unknown clinic %s for user %s", candidate, user_id)
                continue
            clinic_id = candidate
            break

        if not clinic_id:
            owned = tenants.find_clinic_by_owner(self.db, user_id)
            clinic_id = owned.id if owned else None

        if clinic_id:
            if tenants.claim_clinic_owner(self.db, clinic_id, user_id):
                logger.info("Clinic %s adopted by owner %s", clinic_id, user_id)
            return clinic_id

        plan = normalize_plan(session.meta("plan") or (intent.plan if intent else None))
        clinic_id = tenants.upsert_clinic_by_owner(
            self.db,
            owner_user_id=user_id,
            name=(intent.clinic_name if intent else None) or "Clinic",
            whatsapp_number=(intent.whatsapp_number or intent.phone_e164) if intent else None,
            current_period_end=fallback_period_end(plan),
        )
        logger.info("Clinic %s resolved by owner upsert for user %s", clinic_id, user_id)
        return clinic_id

    @staticmethod
    def _display_name(
        session: CheckoutSession,
        profile: Profile | None,
        intent: SignupIntent | None,
    ) -> str:
        details = session.customer_details
        candidates = (
            profile.full_name if profile else None,
            intent.admin_name if intent else None,
            details.name if details else None,
            session.customer_email,
            intent.email if intent else None,
        )
        for candidate in candidates:
            if candidate:
                return candidate
        return "Admin"

    def _sync_subscription(
        self,
        session: CheckoutSession,
        resolved: _Resolved,
        intent: SignupIntent | None,
    ) -> None:
        subscription: BillingSubscription | None = None
        if resolved.subscription_id:
            subscription = self.billing.retrieve_subscription(resolved.subscription_id)

        plan = normalize_plan(
            (subscription.plan if subscription else None)
            or session.meta("plan")
            or (intent.plan if intent else None)
        )
        status = subscription.status if subscription else session.provision_status()
        period_end = (
            subscription.current_period_end
            if subscription and subscription.current_period_end
            else fallback_period_end(plan)
        )

        tenants.upsert_subscription_record(
            self.db,
            clinic_id=resolved.clinic_id,
            stripe_customer_id=resolved.customer_id,
            stripe_subscription_id=resolved.subscription_id,
            plan=plan,
            status=status,
            current_period_end=period_end,
        )
