from __future__ import annotations

"""Role checks for operator-only gateway routes."""
from typing import Callable

from fastapi import Depends, HTTPException, status

from .auth import User, get_current_user

OPERATOR = "operator"
ADMIN = "admin"


def has_role(user: User, role: str) -> bool:
    return ADMIN in user.roles or role in user.roles


def require_role(role: str) -> Callable[[User], User]:
    """FastAPI dependency to enforce a role on a route; ``admin`` satisfies any role."""

    def dependency(user: User = Depends(get_current_user)) -> User:
        if not has_role(user, role):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return dependency
