from __future__ import annotations

from datetime import datetime, timedelta, timezone

from clinicdesk.core.config import settings

PLAN_DAYS: dict[str, int] = {
    "trial": 30,
    "monthly": 30,
    "quarterly": 90,
    "semiannual": 180,
    "annual": 365,
}

# Subscription statuses that grant access to the clinic.
ACTIVE_ACCESS_STATUSES = frozenset({"active", "trialing"})


def default_plan() -> str:
    plan = settings.PROVISIONING_DEFAULT_PLAN
    return plan if plan in PLAN_DAYS else "monthly"


def normalize_plan(value: object, fallback: str | None = None) -> str:
    fallback = fallback or default_plan()
    if isinstance(value, str) and value.strip().lower() in PLAN_DAYS:
        return value.strip().lower()
    return fallback


def fallback_period_end(plan: str, *, now: datetime | None = None) -> datetime:
    """Period end used before the billing provider has a subscription for the clinic."""
    start = now or datetime.now(timezone.utc)
    return start + timedelta(days=PLAN_DAYS.get(plan, PLAN_DAYS["monthly"]))
