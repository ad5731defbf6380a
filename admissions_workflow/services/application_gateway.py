"""
Collaborator ports - interfaces the host application implements

The workflow core never stores applications, documents, payments or user
permissions itself. It reads them through these protocols.
"""
from typing import AbstractSet, Protocol

from ..domain.models import ActorContext, FactSnapshot


class ApplicationGateway(Protocol):
    """Read access to applications"""

    def get_application_type(self, application_id: str) -> str:
        """
        Application type used to pick the active workflow

        Raises:
            ApplicationNotFoundError: If the application does not exist
        """
        ...

    def get_fact_snapshot(self, application_id: str) -> FactSnapshot:
        """Current facts, verified documents and completed actions"""
        ...


class PermissionProvider(Protocol):
    """Resolves whether an actor holds permissions"""

    def has_permissions(self, actor: ActorContext, permissions: AbstractSet[str]) -> bool:
        ...
