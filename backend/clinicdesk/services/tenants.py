"""
Account/tenant data access used by provisioning and reconciliation.

Every write is a single statement keyed by a natural identifier (owner, user,
clinic+user, clinic, invoice) so concurrent or repeated calls converge on the
same rows.
"""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from clinicdesk.core.upsert import upsert
from clinicdesk.models.billing import PaymentHistory, Subscription
from clinicdesk.models.clinic import Clinic, Membership, Profile
from clinicdesk.models.signup_intent import SignupIntent, SignupIntentStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Profiles
# ----------------------------------------------------------------------
def get_profile(db: Session, user_id: str) -> Profile | None:
    return db.execute(
        select(Profile).where(Profile.user_id == user_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def upsert_profile(
    db: Session,
    *,
    user_id: str,
    clinic_id: str,
    full_name: str,
    role: str,
    stripe_customer_id: str | None = None,
    cpf_hash: str | None = None,
    phone_e164: str | None = None,
    phone_verified_at: datetime | None = None,
) -> None:
    values = {
        "user_id": user_id,
        "clinic_id": clinic_id,
        "full_name": full_name,
        "role": role,
        "updated_at": _now(),
    }
    # Optional fields only overwrite when we actually know them.
    optional = {
        "stripe_customer_id": stripe_customer_id,
        "cpf_hash": cpf_hash,
        "phone_e164": phone_e164,
        "phone_verified_at": phone_verified_at,
    }
    values.update({k: v for k, v in optional.items() if v is not None})
    upsert(db, Profile, values, conflict_columns=["user_id"])
    db.commit()


# ----------------------------------------------------------------------
# Clinics
# ----------------------------------------------------------------------
def find_clinic_by_id(db: Session, clinic_id: str) -> Clinic | None:
    return db.get(Clinic, clinic_id, populate_existing=True)


def find_clinic_by_owner(db: Session, owner_user_id: str) -> Clinic | None:
    return db.execute(
        select(Clinic).where(Clinic.owner_user_id == owner_user_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def upsert_clinic_by_owner(
    db: Session,
    *,
    owner_user_id: str,
    name: str,
    whatsapp_number: str | None,
    current_period_end: datetime,
) -> str:
    """
    Create the owner's clinic, or return the existing one if a concurrent
    attempt created it first. Existing clinic fields are left alone.
    """
    row = upsert(
        db,
        Clinic,
        {
            "owner_user_id": owner_user_id,
            "name": name,
            "whatsapp_number": whatsapp_number,
            "subscription_status": "inactive",
            "current_period_end": current_period_end,
        },
        conflict_columns=["owner_user_id"],
        # No-op update so RETURNING yields the existing row on conflict.
        update_columns=["owner_user_id"],
        returning=[Clinic.id],
    ).first()
    db.commit()
    if row is None:
        raise RuntimeError("Failed to create clinic")
    return row[0]


def claim_clinic_owner(db: Session, clinic_id: str, user_id: str) -> bool:
    """Bind an ownerless clinic to ``user_id``; never steals an owned clinic."""
    result = db.execute(
        update(Clinic)
        .where(Clinic.id == clinic_id, Clinic.owner_user_id.is_(None))
        .values(owner_user_id=user_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def resolve_clinic_id_by_customer(db: Session, customer_id: str) -> str | None:
    clinic_id = db.execute(
        select(Subscription.clinic_id).where(Subscription.stripe_customer_id == customer_id).limit(1)
    ).scalar_one_or_none()
    if clinic_id:
        return clinic_id

    return db.execute(
        select(Profile.clinic_id)
        .where(
            Profile.stripe_customer_id == customer_id,
            Profile.role == "admin",
            Profile.clinic_id.is_not(None),
        )
        .order_by(Profile.created_at.asc())
        .limit(1)
    ).scalar_one_or_none()


def earliest_admin_user_id(db: Session, clinic_id: str) -> str | None:
    return db.execute(
        select(Profile.user_id)
        .where(Profile.clinic_id == clinic_id, Profile.role == "admin")
        .order_by(Profile.created_at.asc(), Profile.id.asc())
        .limit(1)
    ).scalar_one_or_none()


# ----------------------------------------------------------------------
# Memberships
# ----------------------------------------------------------------------
def upsert_membership(db: Session, *, clinic_id: str, user_id: str, role: str) -> None:
    upsert(
        db,
        Membership,
        {"clinic_id": clinic_id, "user_id": user_id, "role": role},
        conflict_columns=["clinic_id", "user_id"],
    )
    db.commit()


# ----------------------------------------------------------------------
# Subscriptions / payments
# ----------------------------------------------------------------------
def get_subscription_for_clinic(db: Session, clinic_id: str) -> Subscription | None:
    return db.execute(
        select(Subscription).where(Subscription.clinic_id == clinic_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def upsert_subscription_record(
    db: Session,
    *,
    clinic_id: str,
    stripe_customer_id: str | None,
    stripe_subscription_id: str | None,
    plan: str,
    status: str,
    current_period_end: datetime | None,
) -> None:
    """Write the clinic's subscription and mirror status/period onto the clinic."""
    now = _now()
    upsert(
        db,
        Subscription,
        {
            "clinic_id": clinic_id,
            "stripe_customer_id": stripe_customer_id,
            "stripe_subscription_id": stripe_subscription_id,
            "plan": plan,
            "status": status,
            "current_period_end": current_period_end,
            "updated_at": now,
        },
        conflict_columns=["clinic_id"],
    )
    db.execute(
        update(Clinic)
        .where(Clinic.id == clinic_id)
        .values(subscription_status=status, current_period_end=current_period_end)
        .execution_options(synchronize_session=False)
    )
    if stripe_customer_id:
        db.execute(
            update(Profile)
            .where(Profile.clinic_id == clinic_id, Profile.role == "admin")
            .values(stripe_customer_id=stripe_customer_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
    db.commit()


def record_payment(
    db: Session,
    *,
    clinic_id: str,
    stripe_invoice_id: str,
    amount_cents: int,
    currency: str,
    paid_at: datetime,
) -> None:
    upsert(
        db,
        PaymentHistory,
        {
            "clinic_id": clinic_id,
            "stripe_invoice_id": stripe_invoice_id,
            "amount_cents": int(amount_cents),
            "currency": currency,
            "paid_at": paid_at,
        },
        conflict_columns=["stripe_invoice_id"],
    )
    db.commit()


# ----------------------------------------------------------------------
# Signup intents
# ----------------------------------------------------------------------
def get_signup_intent(db: Session, intent_id: str) -> SignupIntent | None:
    return db.get(SignupIntent, intent_id, populate_existing=True)


def mark_intent_converted(db: Session, intent_id: str, clinic_id: str) -> None:
    db.execute(
        update(SignupIntent)
        .where(SignupIntent.id == intent_id)
        .values(status=SignupIntentStatus.CONVERTED.value, clinic_id=clinic_id, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    db.commit()
