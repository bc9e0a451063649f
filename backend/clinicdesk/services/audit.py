from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from clinicdesk.models.audit_log import AuditLog
from clinicdesk.services.tenants import earliest_admin_user_id

logger = logging.getLogger(__name__)


def log_billing_event(
    db: Session,
    *,
    clinic_id: str,
    action: str,
    entity: str,
    data: Optional[Dict[str, Any]] = None,
) -> AuditLog | None:
    # Audit rows need an actor; billing events are attributed to the clinic's first admin.
    actor_user_id = earliest_admin_user_id(db, clinic_id)
    if not actor_user_id:
        logger.info("Skipping audit %s for clinic %s: no admin profile", action, clinic_id)
        return None

    entry = AuditLog(
        clinic_id=clinic_id,
        user_id=actor_user_id,
        action=action,
        entity=entity,
        data=data or None,
    )
    db.add(entry)
    db.commit()
    return entry
