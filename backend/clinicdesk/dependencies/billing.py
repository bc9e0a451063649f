from __future__ import annotations

from clinicdesk.services.billing import BillingClient


def get_billing_client() -> BillingClient:
    return BillingClient()
