import logging
from typing import Any, Dict

from fastapi import Depends, HTTPException, status

from .auth import caller_identity, require_user

logger = logging.getLogger(__name__)

ADMIN = "admin"
OPERATOR = "operator"


def has_role(user: Dict[str, Any], role: str) -> bool:
    return role in (user.get("roles") or [])


def require_roles(*roles: str):
    """Dependency that admits callers holding any of ``roles``."""

    def _check(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
        if not any(has_role(user, role) for role in roles):
            logger.warning("Denied caller=%s missing role=%s", caller_identity(user), "|".join(roles))
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required role: {', '.join(roles)}",
            )
        return user

    return _check
