from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from storefront.logging import get_logger
from storefront.service.errors import ForbiddenError
from storefront.storage.models import Role

logger = get_logger(__name__)

_STAFF = frozenset({Role.ADMIN, Role.EMPLOYEE})

# Operation -> roles allowed to call it; None admits any authenticated role.
OPERATION_ROLES: Dict[str, Optional[FrozenSet[Role]]] = {
    "auth.sign_out": None,
    "auth.revoke_tokens": None,
    "auth.update_password": None,
    "users.me": None,
    "users.list": _STAFF,
    "users.get": _STAFF,
}


def is_authorized(operation: str, role: Role) -> bool:
    """Check a role against the operation table; unknown operations are denied."""
    if operation not in OPERATION_ROLES:
        logger.error("authorization_unknown_operation", operation=operation)
        return False
    allowed = OPERATION_ROLES[operation]
    return allowed is None or role in allowed


def ensure_authorized(operation: str, role: Role) -> None:
    if not is_authorized(operation, role):
        logger.warning("authorization_denied", operation=operation, role=role.value)
        raise ForbiddenError(
            "insufficient role for this operation",
            detail={"operation": operation},
        )
