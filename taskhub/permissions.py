from enum import Enum
from typing import Optional

from . import models
from .errors import Forbidden


class Decision(str, Enum):
    ALLOW = "allow"
    FORBID_NOT_OWNER = "forbid_not_owner"
    FORBID_NOT_ADMIN = "forbid_not_admin"


def authorize(actor_role: str, actor_id: int, resource_owner_id: Optional[int] = None, admin_only: bool = False) -> Decision:
    """Owner-or-admin rule.

    With ``admin_only`` the actor must be an admin. Otherwise the actor must be
    an admin or own the resource.
    """
    if actor_role == models.ROLE_ADMIN:
        return Decision.ALLOW
    if admin_only:
        return Decision.FORBID_NOT_ADMIN
    if resource_owner_id is not None and actor_id == resource_owner_id:
        return Decision.ALLOW
    return Decision.FORBID_NOT_OWNER


def ensure_can_access(actor: models.User, resource_owner_id: int, message: str = "Unauthorized to access this task"):
    if authorize(actor.role, actor.id, resource_owner_id) is not Decision.ALLOW:
        raise Forbidden(message)


def ensure_admin(actor: models.User):
    if authorize(actor.role, actor.id, admin_only=True) is not Decision.ALLOW:
        raise Forbidden("Unauthorized. Admin access required.")
