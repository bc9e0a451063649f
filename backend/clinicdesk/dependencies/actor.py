from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from clinicdesk.core.config import settings
from clinicdesk.core.database import get_db
from clinicdesk.core.security import internal_token_matches
from clinicdesk.dependencies.auth import get_current_user_id
from clinicdesk.services.tenants import get_profile


@dataclass(frozen=True)
class Actor:
    user_id: str
    clinic_id: str | None
    role: str | None


def get_current_actor(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> Actor:
    profile = get_profile(db, user_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Profile not found")
    return Actor(user_id=user_id, clinic_id=profile.clinic_id, role=profile.role)


def require_internal_token(
    x_internal_token: str | None = Header(default=None, alias="x-internal-token"),
) -> None:
    """Shared-secret auth for operator tooling hitting /internal/* endpoints."""
    if not settings.INTERNAL_API_TOKEN:
        raise HTTPException(status_code=500, detail="Server missing INTERNAL_API_TOKEN")
    if not internal_token_matches(x_internal_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
