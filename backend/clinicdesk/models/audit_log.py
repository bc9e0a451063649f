from __future__ import annotations

from sqlalchemy import Column, DateTime, Integer, JSON, String, func

from clinicdesk.core.base import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    action = Column(String(100), nullable=False)
    entity = Column(String(50), nullable=False)
    # "metadata" is reserved on declarative classes
    data = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
