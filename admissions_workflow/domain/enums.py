"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class ConditionOperator(str, Enum):
    """Operators for condition evaluation"""
    EQUALS = "=="
    NOT_EQUALS = "!="
    GREATER_THAN = ">"
    GREATER_THAN_OR_EQUALS = ">="
    LESS_THAN = "<"
    LESS_THAN_OR_EQUALS = "<="


# Legacy spellings accepted when a condition is written
CONDITION_OPERATOR_ALIASES = {
    "=": ConditionOperator.EQUALS.value,
    "<>": ConditionOperator.NOT_EQUALS.value,
}


class ConditionFailureReason(str, Enum):
    """Why a single condition did not pass"""
    MISSING = "missing"  # Field absent from facts or null
    MISMATCH = "mismatch"  # Comparison evaluated to false
    TYPE_MISMATCH = "type_mismatch"  # Fact and expected value are not comparable
    UNSUPPORTED_OPERATOR = "unsupported_operator"  # e.g. ">" on a string


class ValidationIssueType(str, Enum):
    """Stage graph validation findings"""
    NO_STAGES = "NO_STAGES"
    NO_INITIAL_STAGE = "NO_INITIAL_STAGE"
    NO_TERMINAL_STAGE = "NO_TERMINAL_STAGE"
    DEAD_END_STAGE = "DEAD_END_STAGE"  # Warning only
    UNREACHABLE_STAGE = "UNREACHABLE_STAGE"
    CROSS_WORKFLOW_REFERENCE = "CROSS_WORKFLOW_REFERENCE"
    UNKNOWN_STAGE_REFERENCE = "UNKNOWN_STAGE_REFERENCE"
    SELF_LOOP = "SELF_LOOP"
    DUPLICATE_TRANSITION = "DUPLICATE_TRANSITION"
    AUTOMATIC_WITH_PERMISSIONS = "AUTOMATIC_WITH_PERMISSIONS"
    DUPLICATE_SEQUENCE = "DUPLICATE_SEQUENCE"
    DUPLICATE_STAGE_KEY = "DUPLICATE_STAGE_KEY"
    INVALID_CONDITION = "INVALID_CONDITION"


class ValidationSeverity(str, Enum):
    """Severity of a validation issue"""
    ERROR = "ERROR"
    WARNING = "WARNING"


class AuditEventType(str, Enum):
    """Types of audit events"""
    # Workflow authoring
    WORKFLOW_CREATED = "WORKFLOW_CREATED"
    WORKFLOW_UPDATED = "WORKFLOW_UPDATED"
    WORKFLOW_ACTIVATED = "WORKFLOW_ACTIVATED"
    WORKFLOW_DEACTIVATED = "WORKFLOW_DEACTIVATED"
    WORKFLOW_DUPLICATED = "WORKFLOW_DUPLICATED"
    WORKFLOW_DELETED = "WORKFLOW_DELETED"
    STAGE_ADDED = "STAGE_ADDED"
    STAGE_UPDATED = "STAGE_UPDATED"
    STAGE_REMOVED = "STAGE_REMOVED"
    STAGES_REORDERED = "STAGES_REORDERED"
    TRANSITION_ADDED = "TRANSITION_ADDED"
    TRANSITION_UPDATED = "TRANSITION_UPDATED"
    TRANSITION_REMOVED = "TRANSITION_REMOVED"
    # Application runtime
    APPLICATION_INITIALIZED = "APPLICATION_INITIALIZED"
    TRANSITION_EXECUTED = "TRANSITION_EXECUTED"
    AUTO_TRANSITION_EXECUTED = "AUTO_TRANSITION_EXECUTED"


class DomainEventType(str, Enum):
    """Events published to collaborators after commit"""
    APPLICATION_INITIALIZED = "APPLICATION_INITIALIZED"
    STAGE_ENTERED = "STAGE_ENTERED"


class ScanOutcome(str, Enum):
    """Result of one automatic transition pass over an application"""
    ADVANCED = "advanced"  # At least one automatic transition executed
    NOT_READY = "not_ready"  # No automatic transition satisfied yet
    CONFLICT = "conflict"  # Another worker moved or holds the application
    FAILED = "failed"
