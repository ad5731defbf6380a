"""ID Generation Utilities"""
import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Examples:
        >>> generate_id('WF')
        'WF-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_workflow_id() -> str:
    """Generate workflow ID"""
    return generate_id("WF")


def generate_stage_id() -> str:
    """Generate stage ID"""
    return generate_id("STG")


def generate_transition_id() -> str:
    """Generate transition ID"""
    return generate_id("TRN")


def generate_status_id() -> str:
    """Generate application status entry ID"""
    return generate_id("STS")


def generate_audit_event_id() -> str:
    """Generate audit event ID"""
    return generate_id("AUD")


def generate_event_id() -> str:
    """Generate domain event ID"""
    return generate_id("EVT")


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for tracing a unit of work

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
