from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

import stripe

from clinicdesk.core.config import settings

logger = logging.getLogger(__name__)


class BillingClientError(Exception):
    """Base error for billing provider operations."""


class StripeWebhookError(BillingClientError):
    """Raised when a webhook payload cannot be verified."""


def as_id(value: Any) -> str | None:
    """Stripe fields may hold an id string or an expanded object."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, Mapping):
        inner = value.get("id")
        return inner if isinstance(inner, str) and inner else None
    return None


def from_unix(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass(frozen=True)
class BillingSubscription:
    id: str
    customer_id: str | None
    status: str
    current_period_end: datetime | None
    plan: str | None
    clinic_id: str | None

    @classmethod
    def from_stripe(cls, obj: Mapping[str, Any]) -> "BillingSubscription":
        metadata = obj.get("metadata") or {}
        period_end = obj.get("current_period_end")
        if period_end is None:
            # Newer API versions moved the period onto subscription items.
            items = (obj.get("items") or {}).get("data") or []
            if items:
                period_end = items[0].get("current_period_end")
        return cls(
            id=obj.get("id"),
            customer_id=as_id(obj.get("customer")),
            status=obj.get("status") or "incomplete",
            current_period_end=from_unix(period_end),
            plan=metadata.get("plan"),
            clinic_id=metadata.get("clinic_id") or None,
        )


class BillingClient:
    """
    Billing provider facade. All direct Stripe SDK calls live here.

    Only the pieces provisioning and reconciliation need are exposed:
    retrieve/cancel/list subscriptions and webhook verification.
    """

    def __init__(self, stripe_client: Any | None = None):
        self.stripe = stripe_client or stripe
        if stripe_client is None and settings.STRIPE_SECRET_KEY:
            self.stripe.api_key = settings.STRIPE_SECRET_KEY

    def retrieve_subscription(self, subscription_id: str) -> BillingSubscription:
        obj = self.stripe.Subscription.retrieve(subscription_id)
        return BillingSubscription.from_stripe(obj)

    def cancel_subscription(self, subscription_id: str) -> BillingSubscription:
        logger.info("Canceling subscription %s", subscription_id)
        obj = self.stripe.Subscription.cancel(subscription_id)
        return BillingSubscription.from_stripe(obj)

    def list_subscriptions(self, customer_id: str) -> list[BillingSubscription]:
        page = self.stripe.Subscription.list(customer=customer_id, status="all", limit=100)
        return [BillingSubscription.from_stripe(obj) for obj in (page.get("data") or [])]

    def parse_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Validate the webhook signature and return the event body as a plain dict."""
        if not settings.STRIPE_WEBHOOK_SECRET:
            raise StripeWebhookError("Stripe webhook secret is not configured")
        if not signature:
            raise StripeWebhookError("Missing Stripe-Signature header")
        try:
            self.stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=settings.STRIPE_WEBHOOK_SECRET,
            )
        except stripe.SignatureVerificationError as exc:
            raise StripeWebhookError(f"Invalid Stripe signature: {exc}") from exc
        except ValueError as exc:
            raise StripeWebhookError(f"Invalid Stripe payload: {exc}") from exc

        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StripeWebhookError("Stripe payload is not valid JSON") from exc
