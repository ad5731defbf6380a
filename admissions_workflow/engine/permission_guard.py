"""Permission Guard - Authorization enforcement for manual transitions"""
from typing import Iterable, List, Optional, TYPE_CHECKING

from ..domain.models import ActorContext
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..services.application_gateway import PermissionProvider

logger = get_logger(__name__)


class PermissionGuard:
    """
    Permission enforcement for transitions

    Rules:
    - An actor may execute a transition only when holding every required permission
    - An empty requirement list is satisfied by any actor
    - Permissions come from the PermissionProvider when one is configured,
      otherwise from the permissions carried on the actor context
    """

    def __init__(self, permission_provider: Optional["PermissionProvider"] = None):
        """Initialize with optional permission provider collaborator"""
        self._permission_provider = permission_provider

    def authorize(self, actor: ActorContext, required_permissions: Iterable[str]) -> bool:
        """
        Check if actor holds all required permissions

        Args:
            actor: Acting user
            required_permissions: Permissions the transition requires

        Returns:
            True if allowed
        """
        required = set(required_permissions)
        if not required:
            return True

        if self._permission_provider is not None:
            allowed = bool(self._permission_provider.has_permissions(actor, required))
        else:
            allowed = required.issubset(set(actor.permissions))

        if not allowed:
            logger.info(
                f"Actor {actor.email} lacks permissions {sorted(required)}",
                extra={"actor_email": actor.email}
            )
        return allowed

    def missing_permissions(self, actor: ActorContext, required_permissions: Iterable[str]) -> List[str]:
        """List required permissions the actor does not hold, in requirement order"""
        required = list(dict.fromkeys(required_permissions))
        if self._permission_provider is not None:
            return [
                permission for permission in required
                if not self._permission_provider.has_permissions(actor, {permission})
            ]
        held = set(actor.permissions)
        return [permission for permission in required if permission not in held]
