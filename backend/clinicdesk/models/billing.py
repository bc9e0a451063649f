from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, func

from clinicdesk.core.base import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(
        String(36),
        ForeignKey("clinics.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    plan = Column(String(30), nullable=False)
    status = Column(String(30), nullable=False)  # 'active', 'trialing', 'past_due', 'canceled', 'incomplete', ...
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PaymentHistory(Base):
    __tablename__ = "payments_history"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(String(36), ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False, index=True)
    stripe_invoice_id = Column(String(255), unique=True, nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(10), nullable=False, server_default="brl")
    paid_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
