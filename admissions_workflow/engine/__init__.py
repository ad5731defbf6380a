"""Workflow Engine - Stage graph, guards and transition execution"""
from .condition_evaluator import ConditionEvaluator
from .permission_guard import PermissionGuard
from .stage_graph import StageGraph
from .locking import ApplicationLockManager
from .audit_writer import AuditWriter
from .engine import WorkflowEngine

__all__ = [
    "WorkflowEngine",
    "StageGraph",
    "ConditionEvaluator",
    "PermissionGuard",
    "ApplicationLockManager",
    "AuditWriter",
]
