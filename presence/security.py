from __future__ import annotations

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from presence.db import get_db
from presence.errors import ApiError
from presence.models import User, UserRole

# Authentication happens upstream; the gateway forwards the resolved user id.
USER_ID_HEADER = "X-User-Id"


def get_current_user(
    request: Request,
    x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER),
    db: Session = Depends(get_db),
) -> User:
    raw = (x_user_id or "").strip()
    if not raw:
        raise ApiError(status_code=401, code="MISSING_IDENTITY", message=f"{USER_ID_HEADER} header is required.")
    try:
        user_id = int(raw)
    except ValueError as exc:
        raise ApiError(status_code=401, code="INVALID_IDENTITY", message=f"{USER_ID_HEADER} must be an integer.") from exc

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise ApiError(status_code=403, code="USER_INACTIVE", message="User not found or inactive.")

    request.state.actor = user.role.value
    request.state.actor_id = str(user.id)
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.ADMIN:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Admin role required.")
    return user
