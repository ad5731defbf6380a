"""Bundled workflow templates"""
from .default_workflows import default_workflows, undergraduate_workflow, graduate_workflow

__all__ = ["default_workflows", "undergraduate_workflow", "graduate_workflow"]
