from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func

from clinicdesk.core.base import Base


def _new_clinic_id() -> str:
    return str(uuid.uuid4())


class Clinic(Base):
    __tablename__ = "clinics"

    id = Column(String(36), primary_key=True, default=_new_clinic_id)
    name = Column(String(255), nullable=False)
    # One clinic per owner; upserts key on this column.
    owner_user_id = Column(String(64), unique=True, nullable=True, index=True)
    whatsapp_number = Column(String(32), nullable=True)
    subscription_status = Column(String(30), nullable=False, server_default="inactive")
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), unique=True, nullable=False, index=True)
    clinic_id = Column(String(36), ForeignKey("clinics.id", ondelete="SET NULL"), nullable=True, index=True)
    full_name = Column(String(255), nullable=True)
    role = Column(String(30), nullable=False, server_default="admin")
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    cpf_hash = Column(String(128), nullable=True)
    phone_e164 = Column(String(32), nullable=True)
    phone_verified_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Membership(Base):
    __tablename__ = "memberships"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(String(36), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    role = Column(String(30), nullable=False, server_default="admin")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("clinic_id", "user_id", name="uq_memberships_clinic_user"),
    )
