from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy.orm import Session

from clinicdesk.core.config import settings
from clinicdesk.services import tenants
from clinicdesk.services.audit import log_billing_event
from clinicdesk.services.billing import BillingClient, BillingSubscription, as_id, from_unix
from clinicdesk.services.plans import fallback_period_end, normalize_plan

logger = logging.getLogger(__name__)


def invoice_subscription_id(invoice: Mapping[str, Any]) -> str | None:
    subscription_id = as_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest it under parent.subscription_details.
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return as_id(details.get("subscription"))


class SubscriptionReconciler:
    """
    Keeps local subscription/clinic billing state in line with the billing
    provider for lifecycle events that arrive after provisioning.

    Events for the same tenant may arrive in any order, so handlers re-read the
    provider's current state instead of trusting the event snapshot. Customers
    that cannot be mapped to a clinic are logged and skipped.
    """

    def __init__(self, db: Session, billing: BillingClient):
        self.db = db
        self.billing = billing

    def sync_subscription(self, subscription: BillingSubscription) -> str | None:
        """Upsert subscription + clinic state; returns the clinic id, or None if unmapped."""
        if not subscription.customer_id:
            logger.warning("Subscription %s has no customer; skipping", subscription.id)
            return None

        clinic_id = subscription.clinic_id or tenants.resolve_clinic_id_by_customer(
            self.db, subscription.customer_id
        )
        if not clinic_id:
            logger.warning(
                "Unable to match subscription customer to clinic: customer=%s subscription=%s",
                subscription.customer_id,
                subscription.id,
            )
            return None

        plan = normalize_plan(subscription.plan)
        tenants.upsert_subscription_record(
            self.db,
            clinic_id=clinic_id,
            stripe_customer_id=subscription.customer_id,
            stripe_subscription_id=subscription.id,
            plan=plan,
            status=subscription.status,
            current_period_end=subscription.current_period_end or fallback_period_end(plan),
        )
        logger.info(
            "Subscription reconciled: clinic_id=%s subscription=%s status=%s",
            clinic_id,
            subscription.id,
            subscription.status,
        )
        return clinic_id

    def sync_customer(self, customer_id: str) -> str | None:
        # The provider lists newest first.
        subscriptions = self.billing.list_subscriptions(customer_id)
        if not subscriptions:
            logger.info("No subscriptions found for customer %s", customer_id)
            return None
        return self.sync_subscription(subscriptions[0])

    def handle_subscription_changed(self, obj: Mapping[str, Any], *, deleted: bool = False) -> str | None:
        subscription_id = obj.get("id")
        if subscription_id:
            current = self.billing.retrieve_subscription(subscription_id)
        else:
            current = BillingSubscription.from_stripe(obj)

        clinic_id = self.sync_subscription(current)
        if clinic_id:
            log_billing_event(
                self.db,
                clinic_id=clinic_id,
                action="billing.subscription.deleted" if deleted else "billing.subscription.updated",
                entity="subscription",
                data={"subscriptionId": current.id, "status": current.status},
            )
        return clinic_id

    def handle_invoice_paid(self, invoice: Mapping[str, Any]) -> str | None:
        customer_id = as_id(invoice.get("customer"))
        subscription_id = invoice_subscription_id(invoice)

        if subscription_id:
            self.sync_subscription(self.billing.retrieve_subscription(subscription_id))
        elif customer_id:
            self.sync_customer(customer_id)

        if not customer_id:
            return None

        clinic_id = tenants.resolve_clinic_id_by_customer(self.db, customer_id)
        if not clinic_id:
            logger.warning(
                "invoice.paid without clinic mapping: invoice=%s customer=%s",
                invoice.get("id"),
                customer_id,
            )
            return None

        transitions = invoice.get("status_transitions") or {}
        paid_at = from_unix(transitions.get("paid_at")) or datetime.now(timezone.utc)
        amount_cents = int(invoice.get("amount_paid") or 0)

        tenants.record_payment(
            self.db,
            clinic_id=clinic_id,
            stripe_invoice_id=invoice["id"],
            amount_cents=amount_cents,
            currency=(invoice.get("currency") or settings.STRIPE_DEFAULT_CURRENCY).lower(),
            paid_at=paid_at,
        )
        log_billing_event(
            self.db,
            clinic_id=clinic_id,
            action="billing.invoice.paid",
            entity="payment",
            data={
                "invoiceId": invoice.get("id"),
                "subscriptionId": subscription_id,
                "amountPaidCents": amount_cents,
            },
        )
        return clinic_id

    def handle_invoice_payment_failed(self, invoice: Mapping[str, Any]) -> str | None:
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            return None

        current = self.billing.retrieve_subscription(subscription_id)
        if current.status == "canceled":
            final = current
        else:
            final = self.billing.cancel_subscription(subscription_id)

        clinic_id = self.sync_subscription(final)
        if clinic_id:
            log_billing_event(
                self.db,
                clinic_id=clinic_id,
                action="billing.invoice.payment_failed",
                entity="subscription",
                data={
                    "invoiceId": invoice.get("id"),
                    "subscriptionId": subscription_id,
                    "status": final.status,
                },
            )
        return clinic_id
