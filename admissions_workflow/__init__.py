"""Admissions Workflow - Configurable stage workflows for admission applications"""

__version__ = "1.0.0"
