"""Background jobs"""
from .auto_transition_scanner import AutoTransitionScanner, ScanReport

__all__ = ["AutoTransitionScanner", "ScanReport"]
