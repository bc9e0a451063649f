from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from clinicdesk.core.database import get_db
from clinicdesk.dependencies.billing import get_billing_client
from clinicdesk.schemas.provisioning import WebhookReceiptOut
from clinicdesk.services.billing import BillingClient, StripeWebhookError
from clinicdesk.services.stripe_webhooks import StripeWebhookService
from clinicdesk.services.webhook_events import WebhookEventError

router = APIRouter(prefix="/billing/stripe", tags=["billing"])

logger = logging.getLogger(__name__)


@router.post("/webhook", response_model=WebhookReceiptOut, status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    billing: BillingClient = Depends(get_billing_client),
) -> WebhookReceiptOut:
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        event = billing.parse_event(payload, signature)
    except StripeWebhookError as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    service = StripeWebhookService(db, billing)
    try:
        result = service.process_event(event)
    except (ValidationError, WebhookEventError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed Stripe event") from exc
    except Exception as exc:
        # Recorded on the event/job already; a 5xx makes the provider redeliver.
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return WebhookReceiptOut(received=True, skipped=result.skipped, duplicate=result.duplicate)
