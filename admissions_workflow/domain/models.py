"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from pydantic import (
    BaseModel, Field, EmailStr, ConfigDict, field_validator,
    StrictBool, StrictInt, StrictFloat, StrictStr,
)

from .enums import (
    ConditionOperator, CONDITION_OPERATOR_ALIASES, ConditionFailureReason,
    ValidationIssueType, ValidationSeverity, AuditEventType,
)


# Values a fact or a condition may carry. Strict types keep True from passing as 1.
FactValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]


# ============================================================================
# User & Identity Snapshots
# ============================================================================

class UserSnapshot(BaseModel):
    """Snapshot of user identity at a point in time"""
    model_config = ConfigDict(extra="forbid")

    user_id: Optional[str] = Field(None, description="Identity provider user ID")
    email: EmailStr = Field(..., description="User email")
    display_name: str = Field(..., description="User display name")
    role_at_time: Optional[str] = Field(None, description="Role when snapshot was taken")


class ActorContext(BaseModel):
    """Acting user as supplied by the caller"""
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., description="Identity provider user ID")
    email: EmailStr = Field(..., description="User email")
    display_name: str = Field(..., description="User display name")
    roles: List[str] = Field(default_factory=list, description="Assigned roles")
    permissions: List[str] = Field(default_factory=list, description="Granted permissions")

    def to_snapshot(self) -> UserSnapshot:
        return UserSnapshot(
            user_id=self.user_id,
            email=self.email,
            display_name=self.display_name,
            role_at_time=self.roles[0] if self.roles else None,
        )


# ============================================================================
# Condition
# ============================================================================

class Condition(BaseModel):
    """Single comparison of an application fact against a literal"""
    model_config = ConfigDict(extra="forbid")

    field: str = Field(..., min_length=1, description="Fact name to evaluate")
    operator: ConditionOperator = Field(..., description="Comparison operator")
    value: FactValue = Field(..., description="Value to compare against")

    @field_validator("operator", mode="before")
    @classmethod
    def normalize_operator(cls, value: Any) -> Any:
        if isinstance(value, str):
            stripped = value.strip()
            return CONDITION_OPERATOR_ALIASES.get(stripped, stripped)
        return value


class ConditionFailure(BaseModel):
    """Explains why one condition did not pass"""
    field: str
    operator: ConditionOperator
    expected: FactValue
    actual: Optional[Any] = None
    reason: ConditionFailureReason


# ============================================================================
# Workflow, Stage & Transition
# ============================================================================

class Workflow(BaseModel):
    """Admissions workflow (one per application type may be active)"""
    model_config = ConfigDict(extra="ignore")

    workflow_id: str = Field(..., description="Unique workflow ID")
    name: str = Field(..., min_length=1, description="Workflow name")
    description: Optional[str] = None
    application_type: str = Field(..., min_length=1, description="Application type this workflow governs")
    is_active: bool = Field(default=False)
    created_by: Optional[UserSnapshot] = None
    created_at: datetime
    updated_at: datetime
    version: int = Field(default=1, description="Optimistic concurrency version")


class Stage(BaseModel):
    """Named step of a workflow"""
    model_config = ConfigDict(extra="ignore")

    stage_id: str = Field(..., description="Unique stage ID")
    workflow_id: str = Field(..., description="Owning workflow ID")
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    sequence: int = Field(..., ge=1, description="Display and initial-stage order within workflow")
    required_documents: List[str] = Field(default_factory=list)
    required_actions: List[str] = Field(default_factory=list)
    notification_triggers: List[str] = Field(default_factory=list, description="Notification names fired on entry")
    assigned_role: Optional[str] = None
    is_terminal: bool = Field(default=False, description="Intentional end point of the workflow")


class Transition(BaseModel):
    """Directed edge between two stages of the same workflow"""
    model_config = ConfigDict(extra="ignore")

    transition_id: str = Field(..., description="Unique transition ID")
    workflow_id: str = Field(..., description="Owning workflow ID")
    source_stage_id: str
    target_stage_id: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    conditions: List[Condition] = Field(default_factory=list, description="All must pass (AND)")
    required_permissions: List[str] = Field(default_factory=list)
    is_automatic: bool = Field(default=False)
    priority: int = Field(default=0, description="Higher fires first among automatic transitions")


# ============================================================================
# Application Runtime
# ============================================================================

class StatusEntry(BaseModel):
    """Append-only record of an application entering a stage"""
    model_config = ConfigDict(extra="ignore")

    status_id: str
    application_id: str
    workflow_id: str
    stage_id: str
    status_label: str = Field(..., description="Stage name at time of entry")
    sequence: int = Field(..., ge=1, description="Per-application ordinal")
    transition_id: Optional[str] = Field(None, description="None for the initial entry")
    created_at: datetime
    created_by: Optional[UserSnapshot] = Field(None, description="None when entered automatically")
    notes: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class FactSnapshot(BaseModel):
    """Facts about an application as reported by the application collaborator"""
    model_config = ConfigDict(extra="forbid")

    facts: Dict[str, Optional[FactValue]] = Field(default_factory=dict)
    verified_documents: List[str] = Field(default_factory=list)
    completed_actions: List[str] = Field(default_factory=list)


class StageRequirements(BaseModel):
    """Missing documents and actions for a stage"""
    stage_id: str
    documents: List[str] = Field(default_factory=list, description="Required but not verified")
    actions: List[str] = Field(default_factory=list, description="Required but not completed")
    satisfied: bool = True


# ============================================================================
# Validation
# ============================================================================

class ValidationIssue(BaseModel):
    """Single validation finding"""
    issue_type: ValidationIssueType
    severity: ValidationSeverity = ValidationSeverity.ERROR
    message: str
    stage_id: Optional[str] = None
    transition_id: Optional[str] = None


class WorkflowValidationResult(BaseModel):
    """Outcome of validating a workflow's stage graph"""
    workflow_id: Optional[str] = None
    is_valid: bool
    issues: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)


# ============================================================================
# Authoring Payloads
# ============================================================================

class StageDefinition(BaseModel):
    """Stage as authored; transitions refer to it by key"""
    model_config = ConfigDict(extra="forbid")

    key: str = Field(..., min_length=1, description="Reference used by transitions in the same definition")
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    sequence: Optional[int] = Field(None, ge=1, description="Defaults to position in the stage list")
    required_documents: List[str] = Field(default_factory=list)
    required_actions: List[str] = Field(default_factory=list)
    notification_triggers: List[str] = Field(default_factory=list)
    assigned_role: Optional[str] = None
    is_terminal: bool = False


class TransitionDefinition(BaseModel):
    """Transition as authored"""
    model_config = ConfigDict(extra="forbid")

    source: str = Field(..., description="Source stage key (or stage ID when added to an existing workflow)")
    target: str = Field(..., description="Target stage key (or stage ID when added to an existing workflow)")
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    conditions: List[Condition] = Field(default_factory=list)
    required_permissions: List[str] = Field(default_factory=list)
    is_automatic: bool = False
    priority: int = 0


class WorkflowDefinition(BaseModel):
    """Complete workflow as authored"""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    application_type: str = Field(..., min_length=1)
    is_active: bool = False
    stages: List[StageDefinition] = Field(default_factory=list)
    transitions: List[TransitionDefinition] = Field(default_factory=list)


class WorkflowPatch(BaseModel):
    """Partial workflow update; stages/transitions replace the structure wholesale"""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    application_type: Optional[str] = Field(None, min_length=1)
    stages: Optional[List[StageDefinition]] = None
    transitions: Optional[List[TransitionDefinition]] = None

    def touches_structure(self) -> bool:
        return self.stages is not None or self.transitions is not None


class StagePatch(BaseModel):
    """Partial stage update"""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    sequence: Optional[int] = Field(None, ge=1)
    required_documents: Optional[List[str]] = None
    required_actions: Optional[List[str]] = None
    notification_triggers: Optional[List[str]] = None
    assigned_role: Optional[str] = None
    is_terminal: Optional[bool] = None


# Stage fields that may change while the workflow is active
PRESENTATION_STAGE_FIELDS = frozenset({"name", "description", "notification_triggers", "assigned_role"})


class TransitionPatch(BaseModel):
    """Partial transition update"""
    model_config = ConfigDict(extra="forbid")

    source_stage_id: Optional[str] = None
    target_stage_id: Optional[str] = None
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    conditions: Optional[List[Condition]] = None
    required_permissions: Optional[List[str]] = None
    is_automatic: Optional[bool] = None
    priority: Optional[int] = None


# ============================================================================
# Audit
# ============================================================================

class AuditEvent(BaseModel):
    """Audit event (append-only)"""
    model_config = ConfigDict(extra="forbid")

    audit_event_id: str
    event_type: AuditEventType
    workflow_id: Optional[str] = None
    application_id: Optional[str] = None
    stage_id: Optional[str] = None
    transition_id: Optional[str] = None
    actor: Optional[UserSnapshot] = Field(None, description="None for system actions")
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    correlation_id: Optional[str] = None
