"""Data access layer"""
from .mongo_client import get_database, create_indexes, health_check, close_connection
from .workflow_repo import WorkflowRepository
from .status_repo import ApplicationStatusRepository
from .lock_repo import ApplicationLockRepository
from .audit_repo import AuditRepository

__all__ = [
    "get_database",
    "create_indexes",
    "health_check",
    "close_connection",
    "WorkflowRepository",
    "ApplicationStatusRepository",
    "ApplicationLockRepository",
    "AuditRepository",
]
