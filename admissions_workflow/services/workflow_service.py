"""Workflow Service - Workflow registry and authoring business logic"""
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError
from pymongo.database import Database
from pymongo.errors import PyMongoError

from ..domain.models import (
    ActorContext, Workflow, Stage, Transition, WorkflowDefinition, WorkflowPatch,
    StageDefinition, TransitionDefinition, StagePatch, TransitionPatch,
    ValidationIssue, WorkflowValidationResult, PRESENTATION_STAGE_FIELDS,
)
from ..domain.enums import AuditEventType, ValidationIssueType
from ..domain.errors import (
    WorkflowValidationError, ActiveWorkflowModificationError, WorkflowInUseError,
    NoActiveWorkflowError,
)
from ..engine.stage_graph import StageGraph
from ..engine.audit_writer import AuditWriter
from ..repositories.workflow_repo import WorkflowRepository
from ..repositories.status_repo import ApplicationStatusRepository
from ..repositories.audit_repo import AuditRepository
from ..templates.default_workflows import default_workflows
from ..utils.idgen import generate_workflow_id, generate_stage_id, generate_transition_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

METADATA_FIELDS = ("name", "description", "application_type")


class WorkflowService:
    """
    Service for workflow operations

    Owns the rules that keep workflows safe to run: one active workflow per
    application type, no structural edits to an active workflow, and no
    removal of stages that applications have already entered.
    """

    def __init__(
        self,
        database: Optional[Database] = None,
        audit_writer: Optional[AuditWriter] = None
    ):
        self.repo = WorkflowRepository(database)
        self.status_repo = ApplicationStatusRepository(database)
        self.audit_writer = audit_writer or AuditWriter(AuditRepository(database))
        self._activation_lock = threading.Lock()
        self._graph_cache: Dict[str, StageGraph] = {}
        self._graph_lock = threading.Lock()

    # =========================================================================
    # Workflow CRUD
    # =========================================================================

    def create_workflow(
        self,
        definition: Union[WorkflowDefinition, Dict[str, Any]],
        actor: Optional[ActorContext] = None
    ) -> Workflow:
        """
        Create a workflow with its stages and transitions

        Transitions reference stages by the stage key used in the definition.

        Raises:
            WorkflowValidationError: If the definition has structural issues
        """
        definition = self._parse(WorkflowDefinition, definition)
        now = utc_now()

        workflow = Workflow(
            workflow_id=generate_workflow_id(),
            name=definition.name,
            description=definition.description,
            application_type=definition.application_type,
            is_active=False,
            created_by=actor.to_snapshot() if actor else None,
            created_at=now,
            updated_at=now,
            version=1
        )

        stages, transitions = self._materialize(workflow, definition.stages, definition.transitions)

        self.repo.create_workflow(workflow)
        self.repo.create_stages(stages)
        self.repo.create_transitions(transitions)

        logger.info(
            f"Created workflow '{workflow.name}' with {len(stages)} stages",
            extra={"workflow_id": workflow.workflow_id, "application_type": workflow.application_type}
        )
        self.audit_writer.write_workflow_event(
            workflow.workflow_id,
            AuditEventType.WORKFLOW_CREATED,
            actor,
            details={
                "name": workflow.name,
                "application_type": workflow.application_type,
                "stage_count": len(stages),
                "transition_count": len(transitions)
            }
        )

        if definition.is_active:
            return self.activate_workflow(workflow.workflow_id, actor)
        return workflow

    def get_workflow(self, workflow_id: str) -> Workflow:
        """Get workflow by ID"""
        return self.repo.get_workflow_or_raise(workflow_id)

    def list_workflows(
        self,
        application_type: Optional[str] = None,
        is_active: Optional[bool] = None,
        skip: int = 0,
        limit: int = 0
    ) -> List[Workflow]:
        """List workflows"""
        return self.repo.list_workflows(
            application_type=application_type,
            is_active=is_active,
            skip=skip,
            limit=limit
        )

    def get_active_workflow(self, application_type: str) -> Workflow:
        """
        Get the active workflow for an application type

        Raises:
            NoActiveWorkflowError: If no workflow is active for the type
        """
        workflow = self.repo.get_active_workflow(application_type)
        if not workflow:
            raise NoActiveWorkflowError(
                f"No active workflow for application type '{application_type}'",
                details={"application_type": application_type}
            )
        return workflow

    def update_workflow(
        self,
        workflow_id: str,
        patch: Union[WorkflowPatch, Dict[str, Any]],
        actor: Optional[ActorContext] = None,
        expected_version: Optional[int] = None
    ) -> Workflow:
        """
        Update workflow metadata and/or replace its structure

        Replacing stages also replaces transitions (omitted transitions mean
        none). Replacing only transitions keeps the existing stages, which are
        then referenced by stage ID.

        Raises:
            ActiveWorkflowModificationError: Structural or type change on an active workflow
            WorkflowInUseError: Structural change while applications reference the stages
            WorkflowValidationError: If the new structure has issues
            WorkflowVersionConflictError: If expected_version is stale
        """
        patch = self._parse(WorkflowPatch, patch)
        workflow = self.repo.get_workflow_or_raise(workflow_id)

        changes_type = (
            patch.application_type is not None
            and patch.application_type != workflow.application_type
        )
        if workflow.is_active and (patch.touches_structure() or changes_type):
            raise ActiveWorkflowModificationError(
                "Cannot modify the structure of an active workflow. Duplicate it and edit the copy.",
                details={"workflow_id": workflow_id}
            )

        updates = {
            key: value for key, value in patch.model_dump(exclude_unset=True).items()
            if key in METADATA_FIELDS
        }

        structure = self._prepare_structure(workflow, patch) if patch.touches_structure() else None

        # Claims the version before any structural write
        updated = self.repo.update_workflow(workflow_id, updates, expected_version)

        if structure is not None:
            self._write_structure(workflow, *structure)
            updated = self.repo.touch_workflow(workflow_id)

        self.audit_writer.write_workflow_event(
            workflow_id,
            AuditEventType.WORKFLOW_UPDATED,
            actor,
            details={
                "updated_fields": sorted(updates),
                "structure_replaced": patch.touches_structure()
            }
        )
        return updated

    def _prepare_structure(
        self,
        workflow: Workflow,
        patch: WorkflowPatch
    ) -> Tuple[Optional[List[Stage]], List[Transition]]:
        """
        Build and check the replacement structure without writing anything

        Returns:
            (stages, transitions); stages is None when only transitions change
        """
        existing_stages = self.repo.list_stages(workflow.workflow_id)
        if self.status_repo.has_entries_for_stages([s.stage_id for s in existing_stages]):
            raise WorkflowInUseError(
                "Applications already reference this workflow's stages",
                details={"workflow_id": workflow.workflow_id}
            )

        if patch.stages is not None:
            return self._materialize(workflow, patch.stages, patch.transitions or [])

        key_to_id = {s.stage_id: s.stage_id for s in existing_stages}
        transitions = self._build_transitions(workflow.workflow_id, patch.transitions, key_to_id)
        self._raise_on_issues(StageGraph(workflow, existing_stages, transitions).structural_issues())
        return None, transitions

    def _write_structure(
        self,
        workflow: Workflow,
        stages: Optional[List[Stage]],
        transitions: List[Transition]
    ) -> None:
        """Swap in a prepared structure, putting the previous one back if a write fails"""
        workflow_id = workflow.workflow_id
        previous_stages = self.repo.list_stages(workflow_id)
        previous_transitions = self.repo.list_transitions(workflow_id=workflow_id)

        try:
            self.repo.delete_transitions_for_workflow(workflow_id)
            if stages is not None:
                self.repo.delete_stages_for_workflow(workflow_id)
                self.repo.create_stages(stages)
            self.repo.create_transitions(transitions)
        except PyMongoError as e:
            logger.error(
                f"Failed to replace structure of workflow {workflow_id}, restoring previous version: {e}",
                extra={"workflow_id": workflow_id}
            )
            self.repo.delete_transitions_for_workflow(workflow_id)
            if stages is not None:
                self.repo.delete_stages_for_workflow(workflow_id)
                self.repo.create_stages(previous_stages)
            self.repo.create_transitions(previous_transitions)
            self.repo.touch_workflow(workflow_id)
            raise

    def activate_workflow(self, workflow_id: str, actor: Optional[ActorContext] = None) -> Workflow:
        """
        Activate a workflow, deactivating every other workflow of its type

        Raises:
            WorkflowValidationError: If the workflow's stage graph has issues
        """
        with self._activation_lock:
            workflow = self.repo.get_workflow_or_raise(workflow_id)
            if workflow.is_active:
                return workflow

            validation = self.validate_workflow(workflow_id)
            if not validation.is_valid:
                raise WorkflowValidationError(
                    "Workflow validation failed",
                    details={"issues": [i.model_dump(mode="json") for i in validation.issues]}
                )

            activated = self.repo.activate_exclusive(workflow_id, workflow.application_type)

        logger.info(
            f"Activated workflow for {workflow.application_type}",
            extra={"workflow_id": workflow_id, "application_type": workflow.application_type}
        )
        self.audit_writer.write_workflow_event(
            workflow_id,
            AuditEventType.WORKFLOW_ACTIVATED,
            actor,
            details={"application_type": workflow.application_type}
        )
        return activated

    def deactivate_workflow(self, workflow_id: str, actor: Optional[ActorContext] = None) -> Workflow:
        """Deactivate a workflow"""
        with self._activation_lock:
            workflow = self.repo.get_workflow_or_raise(workflow_id)
            if not workflow.is_active:
                return workflow
            deactivated = self.repo.update_workflow(workflow_id, {"is_active": False})

        self.audit_writer.write_workflow_event(
            workflow_id,
            AuditEventType.WORKFLOW_DEACTIVATED,
            actor,
            details={"application_type": workflow.application_type}
        )
        return deactivated

    def duplicate_workflow(
        self,
        workflow_id: str,
        new_name: Optional[str] = None,
        actor: Optional[ActorContext] = None
    ) -> Workflow:
        """
        Deep copy a workflow into a new inactive workflow

        Stages and transitions get new IDs; conditions and permissions are
        copied verbatim.
        """
        source = self.repo.get_workflow_or_raise(workflow_id)
        stages = self.repo.list_stages(workflow_id)
        transitions = self.repo.list_transitions(workflow_id=workflow_id)
        now = utc_now()

        copy = Workflow(
            workflow_id=generate_workflow_id(),
            name=new_name or f"{source.name} (Copy)",
            description=source.description,
            application_type=source.application_type,
            is_active=False,
            created_by=actor.to_snapshot() if actor else None,
            created_at=now,
            updated_at=now,
            version=1
        )

        stage_id_map = {s.stage_id: generate_stage_id() for s in stages}
        new_stages = [
            s.model_copy(deep=True, update={
                "stage_id": stage_id_map[s.stage_id],
                "workflow_id": copy.workflow_id
            })
            for s in stages
        ]
        new_transitions = [
            t.model_copy(deep=True, update={
                "transition_id": generate_transition_id(),
                "workflow_id": copy.workflow_id,
                "source_stage_id": stage_id_map.get(t.source_stage_id, t.source_stage_id),
                "target_stage_id": stage_id_map.get(t.target_stage_id, t.target_stage_id)
            })
            for t in transitions
        ]

        self.repo.create_workflow(copy)
        self.repo.create_stages(new_stages)
        self.repo.create_transitions(new_transitions)

        logger.info(
            f"Duplicated workflow {workflow_id} as {copy.workflow_id}",
            extra={"workflow_id": copy.workflow_id}
        )
        self.audit_writer.write_workflow_event(
            copy.workflow_id,
            AuditEventType.WORKFLOW_DUPLICATED,
            actor,
            details={"source_workflow_id": workflow_id, "name": copy.name}
        )
        return copy

    def delete_workflow(self, workflow_id: str, actor: Optional[ActorContext] = None) -> bool:
        """
        Delete a workflow with its stages and transitions

        Raises:
            ActiveWorkflowModificationError: If the workflow is active
            WorkflowInUseError: If any application has entered one of its stages
        """
        workflow = self.repo.get_workflow_or_raise(workflow_id)
        if workflow.is_active:
            raise ActiveWorkflowModificationError(
                "Cannot delete an active workflow. Deactivate it first.",
                details={"workflow_id": workflow_id}
            )

        stage_ids = [s.stage_id for s in self.repo.list_stages(workflow_id)]
        if self.status_repo.has_entries_for_workflow(workflow_id) or self.status_repo.has_entries_for_stages(stage_ids):
            raise WorkflowInUseError(
                "Applications reference this workflow",
                details={"workflow_id": workflow_id}
            )

        success = self.repo.delete_workflow(workflow_id)
        with self._graph_lock:
            self._graph_cache.pop(workflow_id, None)

        if success:
            self.audit_writer.write_workflow_event(
                workflow_id,
                AuditEventType.WORKFLOW_DELETED,
                actor,
                details={"name": workflow.name}
            )
        return success

    # =========================================================================
    # Stage Graph & Validation
    # =========================================================================

    def get_stage_graph(self, workflow_id: str) -> StageGraph:
        """
        Get the stage graph of a workflow

        Graphs are cached per workflow version and shared between callers.
        """
        workflow = self.repo.get_workflow_or_raise(workflow_id)

        with self._graph_lock:
            cached = self._graph_cache.get(workflow_id)
        if cached is not None and cached.version == workflow.version:
            return cached

        graph = StageGraph(
            workflow,
            self.repo.list_stages(workflow_id),
            self.repo.list_transitions(workflow_id=workflow_id)
        )
        with self._graph_lock:
            current = self._graph_cache.get(workflow_id)
            if current is None or current.version < graph.version:
                self._graph_cache[workflow_id] = graph
        return graph

    def validate_workflow(self, workflow_id: str, check_reachability: bool = True) -> WorkflowValidationResult:
        """Validate a workflow's stage graph"""
        return self.get_stage_graph(workflow_id).validate(check_reachability=check_reachability)

    # =========================================================================
    # Stage Authoring
    # =========================================================================

    def list_stages(self, workflow_id: str) -> List[Stage]:
        """List stages of a workflow ordered by sequence"""
        self.repo.get_workflow_or_raise(workflow_id)
        return self.repo.list_stages(workflow_id)

    def get_stage(self, stage_id: str) -> Stage:
        return self.repo.get_stage_or_raise(stage_id)

    def add_stage(
        self,
        workflow_id: str,
        definition: Union[StageDefinition, Dict[str, Any]],
        actor: Optional[ActorContext] = None
    ) -> Stage:
        """
        Add a stage to an inactive workflow

        Without a sequence the stage goes last. A sequence already in use
        inserts the stage there and shifts later stages down.
        """
        workflow = self._get_editable_workflow(workflow_id)
        definition = self._parse(StageDefinition, definition)
        existing = self.repo.list_stages(workflow_id)

        sequence = definition.sequence or (max((s.sequence for s in existing), default=0) + 1)
        shifted = {s.stage_id: s.sequence + 1 for s in existing if s.sequence >= sequence}
        if shifted:
            self.repo.set_stage_sequences(shifted)

        stage = self._build_stage(workflow.workflow_id, definition, sequence)
        self.repo.create_stages([stage])
        self.repo.touch_workflow(workflow_id)

        self.audit_writer.write_workflow_event(
            workflow_id, AuditEventType.STAGE_ADDED, actor,
            details={"name": stage.name, "sequence": stage.sequence},
            stage_id=stage.stage_id
        )
        return stage

    def update_stage(
        self,
        stage_id: str,
        patch: Union[StagePatch, Dict[str, Any]],
        actor: Optional[ActorContext] = None
    ) -> Stage:
        """
        Update a stage

        On an active workflow only presentation fields (name, description,
        notification triggers, assigned role) may change.
        """
        patch = self._parse(StagePatch, patch)
        stage = self.repo.get_stage_or_raise(stage_id)
        workflow = self.repo.get_workflow_or_raise(stage.workflow_id)
        updates = patch.model_dump(exclude_unset=True)

        if workflow.is_active:
            blocked = sorted(set(updates) - PRESENTATION_STAGE_FIELDS)
            if blocked:
                raise ActiveWorkflowModificationError(
                    "Only presentation fields of a stage can change while its workflow is active",
                    details={"workflow_id": workflow.workflow_id, "stage_id": stage_id, "fields": blocked}
                )

        if "sequence" in updates and updates["sequence"] != stage.sequence:
            taken = {s.sequence for s in self.repo.list_stages(workflow.workflow_id) if s.stage_id != stage_id}
            if updates["sequence"] in taken:
                self._raise_on_issues([ValidationIssue(
                    issue_type=ValidationIssueType.DUPLICATE_SEQUENCE,
                    message=f"Sequence {updates['sequence']} is already used",
                    stage_id=stage_id
                )])

        updated = self.repo.update_stage(stage_id, updates) if updates else stage
        self.repo.touch_workflow(workflow.workflow_id)

        self.audit_writer.write_workflow_event(
            workflow.workflow_id, AuditEventType.STAGE_UPDATED, actor,
            details={"updated_fields": sorted(updates)},
            stage_id=stage_id
        )
        return updated

    def remove_stage(self, stage_id: str, actor: Optional[ActorContext] = None) -> bool:
        """
        Remove a stage and every transition touching it

        Remaining stages are renumbered to close the sequence gap.

        Raises:
            WorkflowInUseError: If any application has entered the stage
        """
        stage = self.repo.get_stage_or_raise(stage_id)
        workflow = self._get_editable_workflow(stage.workflow_id)

        if self.status_repo.has_entries_for_stages([stage_id]):
            raise WorkflowInUseError(
                f"Applications have entered stage '{stage.name}'",
                details={"workflow_id": workflow.workflow_id, "stage_id": stage_id}
            )

        removed_transitions = self.repo.delete_transitions_for_stage(stage_id)
        self.repo.delete_stage(stage_id)
        remaining = self.repo.list_stages(workflow.workflow_id)
        self.repo.set_stage_sequences({s.stage_id: index + 1 for index, s in enumerate(remaining)})
        self.repo.touch_workflow(workflow.workflow_id)

        self.audit_writer.write_workflow_event(
            workflow.workflow_id, AuditEventType.STAGE_REMOVED, actor,
            details={"name": stage.name, "removed_transitions": removed_transitions},
            stage_id=stage_id
        )
        return True

    def reorder_stages(
        self,
        workflow_id: str,
        ordered_stage_ids: List[str],
        actor: Optional[ActorContext] = None
    ) -> List[Stage]:
        """
        Assign sequences 1..n following the given stage order

        Raises:
            WorkflowValidationError: If the IDs are not exactly the workflow's stages
        """
        self._get_editable_workflow(workflow_id)
        existing_ids = {s.stage_id for s in self.repo.list_stages(workflow_id)}

        if len(ordered_stage_ids) != len(existing_ids) or set(ordered_stage_ids) != existing_ids:
            raise WorkflowValidationError(
                "Stage order must list every stage of the workflow exactly once",
                details={
                    "unknown": sorted(set(ordered_stage_ids) - existing_ids),
                    "missing": sorted(existing_ids - set(ordered_stage_ids))
                }
            )

        self.repo.set_stage_sequences({stage_id: index + 1 for index, stage_id in enumerate(ordered_stage_ids)})
        self.repo.touch_workflow(workflow_id)

        self.audit_writer.write_workflow_event(
            workflow_id, AuditEventType.STAGES_REORDERED, actor,
            details={"order": list(ordered_stage_ids)}
        )
        return self.repo.list_stages(workflow_id)

    # =========================================================================
    # Transition Authoring
    # =========================================================================

    def list_transitions(
        self,
        workflow_id: Optional[str] = None,
        source_stage_id: Optional[str] = None,
        target_stage_id: Optional[str] = None,
        is_automatic: Optional[bool] = None
    ) -> List[Transition]:
        """List transitions with optional filters"""
        return self.repo.list_transitions(
            workflow_id=workflow_id,
            source_stage_id=source_stage_id,
            target_stage_id=target_stage_id,
            is_automatic=is_automatic
        )

    def get_transition(self, transition_id: str) -> Transition:
        return self.repo.get_transition_or_raise(transition_id)

    def add_transition(
        self,
        workflow_id: str,
        definition: Union[TransitionDefinition, Dict[str, Any]],
        actor: Optional[ActorContext] = None
    ) -> Transition:
        """
        Add a transition between two stages (referenced by stage ID)

        Raises:
            WorkflowValidationError: Unknown or foreign stage, self-loop, a second
                transition between the same stages, or an automatic transition
                with permissions
        """
        workflow = self._get_editable_workflow(workflow_id)
        definition = self._parse(TransitionDefinition, definition)
        stages = self.repo.list_stages(workflow_id)

        key_to_id = {s.stage_id: s.stage_id for s in stages}
        transition = self._build_transitions(workflow_id, [definition], key_to_id)[0]
        self._check_transition(workflow, stages, transition)

        self.repo.create_transitions([transition])
        self.repo.touch_workflow(workflow_id)

        self.audit_writer.write_workflow_event(
            workflow_id, AuditEventType.TRANSITION_ADDED, actor,
            details={
                "name": transition.name,
                "source_stage_id": transition.source_stage_id,
                "target_stage_id": transition.target_stage_id,
                "is_automatic": transition.is_automatic
            },
            transition_id=transition.transition_id
        )
        return transition

    def update_transition(
        self,
        transition_id: str,
        patch: Union[TransitionPatch, Dict[str, Any]],
        actor: Optional[ActorContext] = None
    ) -> Transition:
        """Update a transition of an inactive workflow"""
        patch = self._parse(TransitionPatch, patch)
        transition = self.repo.get_transition_or_raise(transition_id)
        workflow = self._get_editable_workflow(transition.workflow_id)

        updates = patch.model_dump(exclude_unset=True)
        merged = self._parse(Transition, {**transition.model_dump(), **updates})
        self._check_transition(workflow, self.repo.list_stages(workflow.workflow_id), merged)

        doc = merged.model_dump(mode="json")
        doc.pop("transition_id")
        doc.pop("workflow_id")
        updated = self.repo.update_transition(transition_id, doc)
        self.repo.touch_workflow(workflow.workflow_id)

        self.audit_writer.write_workflow_event(
            workflow.workflow_id, AuditEventType.TRANSITION_UPDATED, actor,
            details={"updated_fields": sorted(updates)},
            transition_id=transition_id
        )
        return updated

    def remove_transition(self, transition_id: str, actor: Optional[ActorContext] = None) -> bool:
        """Remove a transition of an inactive workflow"""
        transition = self.repo.get_transition_or_raise(transition_id)
        workflow = self._get_editable_workflow(transition.workflow_id)

        removed = self.repo.delete_transition(transition_id)
        self.repo.touch_workflow(workflow.workflow_id)

        self.audit_writer.write_workflow_event(
            workflow.workflow_id, AuditEventType.TRANSITION_REMOVED, actor,
            details={"name": transition.name},
            transition_id=transition_id
        )
        return removed

    # =========================================================================
    # Seeding
    # =========================================================================

    def seed_default_workflows(self, actor: Optional[ActorContext] = None) -> List[Workflow]:
        """
        Install the bundled templates for application types without workflows

        Returns:
            Workflows created by this call
        """
        created = []
        for definition in default_workflows():
            if self.repo.count_workflows(definition.application_type):
                logger.debug(
                    f"Skipping default workflow for {definition.application_type}: already configured",
                    extra={"application_type": definition.application_type}
                )
                continue
            created.append(self.create_workflow(definition, actor))

        if created:
            logger.info(f"Seeded {len(created)} default workflow(s)")
        return created

    # =========================================================================
    # Helpers
    # =========================================================================

    def _get_editable_workflow(self, workflow_id: str) -> Workflow:
        workflow = self.repo.get_workflow_or_raise(workflow_id)
        if workflow.is_active:
            raise ActiveWorkflowModificationError(
                "Cannot modify the structure of an active workflow. Duplicate it and edit the copy.",
                details={"workflow_id": workflow_id}
            )
        return workflow

    def _parse(self, model: Type[ModelT], data: Union[ModelT, Dict[str, Any]]) -> ModelT:
        """Validate input, reporting schema problems as workflow validation issues"""
        if isinstance(data, model):
            return data
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            issues = [
                {
                    "issue_type": (
                        ValidationIssueType.INVALID_CONDITION.value
                        if "conditions" in error["loc"] else "SCHEMA_ERROR"
                    ),
                    "location": ".".join(str(part) for part in error["loc"]),
                    "message": error["msg"],
                }
                for error in e.errors()
            ]
            raise WorkflowValidationError(
                f"Invalid {model.__name__}",
                details={"issues": issues}
            )

    def _build_stage(self, workflow_id: str, definition: StageDefinition, sequence: int) -> Stage:
        return Stage(
            stage_id=generate_stage_id(),
            workflow_id=workflow_id,
            name=definition.name,
            description=definition.description,
            sequence=sequence,
            required_documents=list(definition.required_documents),
            required_actions=list(definition.required_actions),
            notification_triggers=list(definition.notification_triggers),
            assigned_role=definition.assigned_role,
            is_terminal=definition.is_terminal
        )

    def _build_transitions(
        self,
        workflow_id: str,
        definitions: Iterable[TransitionDefinition],
        key_to_id: Dict[str, str]
    ) -> List[Transition]:
        # Unresolved keys are kept as-is so validation reports them as unknown stages
        return [
            Transition(
                transition_id=generate_transition_id(),
                workflow_id=workflow_id,
                source_stage_id=key_to_id.get(d.source, d.source),
                target_stage_id=key_to_id.get(d.target, d.target),
                name=d.name,
                description=d.description,
                conditions=[c.model_copy() for c in d.conditions],
                required_permissions=list(d.required_permissions),
                is_automatic=d.is_automatic,
                priority=d.priority
            )
            for d in definitions
        ]

    def _materialize(
        self,
        workflow: Workflow,
        stage_definitions: List[StageDefinition],
        transition_definitions: List[TransitionDefinition]
    ) -> Tuple[List[Stage], List[Transition]]:
        """
        Turn authored definitions into stages and transitions

        Raises:
            WorkflowValidationError: On duplicate keys or structural issues
        """
        issues: List[ValidationIssue] = []
        key_to_id: Dict[str, str] = {}
        stages: List[Stage] = []

        for index, definition in enumerate(stage_definitions):
            if definition.key in key_to_id:
                issues.append(ValidationIssue(
                    issue_type=ValidationIssueType.DUPLICATE_STAGE_KEY,
                    message=f"Stage key '{definition.key}' is used more than once"
                ))
                continue
            stage = self._build_stage(workflow.workflow_id, definition, definition.sequence or index + 1)
            key_to_id[definition.key] = stage.stage_id
            stages.append(stage)

        transitions = self._build_transitions(workflow.workflow_id, transition_definitions, key_to_id)
        issues.extend(StageGraph(workflow, stages, transitions).structural_issues())
        self._raise_on_issues(issues)
        return stages, transitions

    def _check_transition(self, workflow: Workflow, stages: List[Stage], transition: Transition) -> None:
        """Raise if a single transition is unsafe to store in the workflow"""
        known = {s.stage_id for s in stages}
        foreign = [
            stage for stage in (
                self.repo.get_stage(stage_id)
                for stage_id in {transition.source_stage_id, transition.target_stage_id} - known
            )
            if stage is not None
        ]
        others = [
            t for t in self.repo.list_transitions(workflow_id=workflow.workflow_id)
            if t.transition_id != transition.transition_id
        ]
        graph = StageGraph(workflow, list(stages) + foreign, others + [transition])

        issues = graph.transition_issues(transition)
        if graph.duplicate_of(transition) is not None:
            issues.append(graph.duplicate_issue(transition))
        self._raise_on_issues(issues)

    def _raise_on_issues(self, issues: List[ValidationIssue]) -> None:
        if issues:
            raise WorkflowValidationError(
                "Workflow definition is invalid",
                details={"issues": [i.model_dump(mode="json") for i in issues]}
            )
