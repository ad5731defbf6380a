"""Business logic services"""
from .application_gateway import ApplicationGateway, PermissionProvider
from .workflow_service import WorkflowService

__all__ = [
    "ApplicationGateway",
    "PermissionProvider",
    "WorkflowService",
]
