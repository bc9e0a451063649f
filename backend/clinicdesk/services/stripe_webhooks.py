from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from sqlalchemy.orm import Session

from clinicdesk.schemas.payloads import StripeEventIn
from clinicdesk.services import webhook_events
from clinicdesk.services.audit import log_billing_event
from clinicdesk.services.billing import BillingClient
from clinicdesk.services.provisioning import ProvisioningService
from clinicdesk.services.subscriptions import SubscriptionReconciler

logger = logging.getLogger(__name__)

CHECKOUT_EVENTS = frozenset({"checkout.session.completed", "checkout.session.async_payment_succeeded"})
SUBSCRIPTION_EVENTS = frozenset({"customer.subscription.updated", "customer.subscription.deleted"})


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    skipped: bool
    duplicate: bool


class StripeWebhookService:
    """
    Entry point for verified provider events.

    Reserve the event (at most one processor at a time), route it to
    provisioning or reconciliation, then mark it processed. Any failure marks
    the event failed, which lets a redelivery claim it again, and is re-raised
    so the HTTP layer answers with an error and the provider retries.
    """

    def __init__(self, db: Session, billing: BillingClient):
        self.db = db
        self.billing = billing
        self.provisioning = ProvisioningService(db, billing)
        self.reconciler = SubscriptionReconciler(db, billing)

    def process_event(self, raw_event: Mapping[str, Any]) -> WebhookResult:
        event = StripeEventIn.model_validate(raw_event)

        reservation = webhook_events.reserve_event(self.db, raw_event)
        if not reservation.should_process:
            logger.info(
                "Stripe webhook skipped (idempotent): event_id=%s type=%s status=%s",
                event.id,
                event.type,
                reservation.status,
            )
            return WebhookResult(event_id=event.id, skipped=True, duplicate=reservation.is_duplicate)

        try:
            self._dispatch(event)
        except Exception as exc:
            logger.exception("Stripe webhook %s (%s) failed", event.id, event.type)
            self.db.rollback()
            webhook_events.mark_event_failed(self.db, event.id, str(exc) or exc.__class__.__name__)
            raise

        webhook_events.mark_event_processed(self.db, event.id)
        return WebhookResult(event_id=event.id, skipped=False, duplicate=reservation.is_duplicate)

    def _dispatch(self, event: StripeEventIn) -> None:
        obj = event.data.object

        if event.type in CHECKOUT_EVENTS:
            job = self.provisioning.provision(obj, stripe_event_id=event.id, source=f"stripe.{event.type}")
            if job.clinic_id:
                log_billing_event(
                    self.db,
                    clinic_id=job.clinic_id,
                    action="billing.checkout.completed",
                    entity="subscription",
                    data={"eventId": event.id, "sessionId": obj.get("id"), "provisioningJobId": job.job_id},
                )
        elif event.type in SUBSCRIPTION_EVENTS:
            self.reconciler.handle_subscription_changed(
                obj, deleted=event.type == "customer.subscription.deleted"
            )
        elif event.type == "invoice.paid":
            self.reconciler.handle_invoice_paid(obj)
        elif event.type == "invoice.payment_failed":
            self.reconciler.handle_invoice_payment_failed(obj)
        else:
            logger.info("Stripe webhook event ignored: event_id=%s type=%s", event.id, event.type)
