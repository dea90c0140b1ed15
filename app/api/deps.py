"""Caller identity and role checks applied before any service runs."""
import logging
from typing import Iterable, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.domain import User
from app.models.enums import UserRole, STAFF_ROLES
from app.services.errors import PermissionDeniedError

logger = logging.getLogger(__name__)


def check_role(user: User, allowed_roles: Iterable[UserRole]) -> User:
    """Return the user when their role is allowed, else raise PermissionDeniedError."""
    allowed = tuple(allowed_roles)
    if user.role not in allowed:
        raise PermissionDeniedError(
            f"Insufficient permissions. Required roles: {[r.value for r in allowed]}"
        )
    return user


def get_current_user(
    x_user_id: Optional[int] = Header(None),
    db: Session = Depends(get_db)
) -> User:
    """
    Resolve the acting user from the X-User-Id header.

    Session handling lives in front of this service; by the time a request
    arrives here the header carries an already-authenticated user id.
    """
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail={"error": "Unauthorized"})
    user = db.get(User, x_user_id)
    if user is None or not user.is_active:
        logger.warning("Rejected request for unknown or inactive user %s", x_user_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail={"error": "Unauthorized"})
    return user


def requires_role(*allowed_roles: UserRole):
    """Factory for a dependency that admits only the given roles."""
    def role_checker(current_user: User = Depends(get_current_user)) -> User:
        try:
            return check_role(current_user, allowed_roles)
        except PermissionDeniedError as e:
            logger.warning(
                "Forbidden: user %s with role %s attempted a %s-only action",
                current_user.id, current_user.role.value, [r.value for r in allowed_roles]
            )
            raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    return role_checker


# Convenience dependency for mutating operations
require_staff = requires_role(*STAFF_ROLES)
