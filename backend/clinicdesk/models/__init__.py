# Import every model so Base.metadata is complete for Alembic and tests.
from clinicdesk.models.audit_log import AuditLog
from clinicdesk.models.billing import PaymentHistory, Subscription
from clinicdesk.models.clinic import Clinic, Membership, Profile
from clinicdesk.models.provisioning_job import ProvisioningJob, ProvisioningJobStatus
from clinicdesk.models.signup_intent import SignupIntent, SignupIntentStatus
from clinicdesk.models.webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "AuditLog",
    "Clinic",
    "Membership",
    "PaymentHistory",
    "Profile",
    "ProvisioningJob",
    "ProvisioningJobStatus",
    "SignupIntent",
    "SignupIntentStatus",
    "Subscription",
    "WebhookEvent",
    "WebhookEventStatus",
]
