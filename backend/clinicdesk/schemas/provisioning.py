from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class ProvisioningJobOut(BaseModel):
    job_id: str
    status: str
    checkpoint: str | None = None
    clinic_id: str | None = None
    error_message: str | None = None
    updated_at: datetime | None = None


class SubscriptionStateOut(BaseModel):
    status: str
    current_period_end: datetime | None = None


class ProvisioningStatusOut(BaseModel):
    ready: bool
    label: str
    clinic_id: str | None = None
    job: ProvisioningJobOut | None = None
    subscription: SubscriptionStateOut | None = None


class WebhookReceiptOut(BaseModel):
    received: bool = True
    skipped: bool
    duplicate: bool
