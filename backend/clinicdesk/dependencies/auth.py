# clinicdesk/dependencies/auth.py
from __future__ import annotations

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from clinicdesk.core.security import verify_token_purpose

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user_id(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """
    Validates:
      - Authorization: Bearer <token>
      - token signature + exp + purpose
    Returns:
      - the auth provider's user id (token "sub")
    """
    if not creds or creds.scheme.lower() != "bearer":
        raise _unauthorized("Missing Authorization header")

    try:
        payload = verify_token_purpose(creds.credentials, expected_purpose="access")
    except (ValueError, JWTError):
        raise _unauthorized("Invalid or expired token")

    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise _unauthorized("Invalid or expired token")
    return user_id
