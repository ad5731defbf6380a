"""
Workflow Engine - Moves applications between stages

=============================================================================
MODULE STRUCTURE
=============================================================================

1. INITIALIZATION
   - Constructor with collaborators, repositories and guards

2. APPLICATION START
   - initialize_application: First status entry at the initial stage

3. QUERIES
   - get_current_status / get_current_stage / get_status_history
   - get_available_transitions / get_next_stages
   - evaluate_stage_requirements / get_unmet_conditions

4. TRANSITION EXECUTION
   - execute_transition: Lock, re-read, evaluate, authorize, append, publish

5. HELPERS
   - Status and graph resolution, post-commit side effects

=============================================================================
DEPENDENCIES
=============================================================================

Collaborators:
    - ApplicationGateway: Application type and fact snapshots
    - PermissionProvider (optional, through PermissionGuard)
    - EventDispatcher: Post-commit domain events

Repositories & Services:
    - ApplicationStatusRepository: Append-only status history
    - WorkflowService: Active workflow lookup and cached stage graphs

Guards:
    - ApplicationLockManager: Per-application serialization
    - ConditionEvaluator: Transition conditions
    - PermissionGuard: Manual transition permissions
    - AuditWriter: Audit trail

=============================================================================
"""
from typing import Any, Dict, List, Optional, Tuple, Union, TYPE_CHECKING

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..domain.models import (
    ActorContext, Stage, Transition, StatusEntry, FactSnapshot,
    StageRequirements, ConditionFailure,
)
from ..domain.enums import DomainEventType
from ..domain.errors import (
    ApplicationAlreadyInitializedError, ApplicationNotInitializedError,
    InvalidTransitionError, ConcurrencyError, StageRequirementsNotMetError,
    PermissionDeniedError, TransitionCommitError, TransitionNotFoundError,
    StageNotFoundError, WorkflowValidationError,
)
from ..domain.events import DomainEvent, EventDispatcher
from ..repositories.status_repo import ApplicationStatusRepository
from ..repositories.lock_repo import ApplicationLockRepository
from ..repositories.audit_repo import AuditRepository
from .stage_graph import StageGraph
from .condition_evaluator import ConditionEvaluator
from .permission_guard import PermissionGuard
from .locking import ApplicationLockManager
from .audit_writer import AuditWriter
from ..utils.idgen import generate_status_id
from ..utils.time import utc_now
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..services.application_gateway import ApplicationGateway
    from ..services.workflow_service import WorkflowService

logger = get_logger(__name__)


class WorkflowEngine:
    """
    The Workflow Engine - executes stage transitions for applications

    Responsibilities:
    - Start applications at the initial stage of the active workflow
    - Gate transitions on conditions (fresh facts) and permissions
    - Serialize changes per application and append exactly one status entry
    - Write audit events and publish domain events after commit
    """

    def __init__(
        self,
        application_gateway: "ApplicationGateway",
        workflow_service: Optional["WorkflowService"] = None,
        database: Optional[Database] = None,
        status_repo: Optional[ApplicationStatusRepository] = None,
        lock_manager: Optional[ApplicationLockManager] = None,
        permission_guard: Optional[PermissionGuard] = None,
        audit_writer: Optional[AuditWriter] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        condition_evaluator: Optional[ConditionEvaluator] = None
    ):
        if workflow_service is None:
            # Imported here: the service package imports engine modules
            from ..services.workflow_service import WorkflowService
            workflow_service = WorkflowService(database)

        self.application_gateway = application_gateway
        self.workflow_service = workflow_service
        self.status_repo = status_repo or ApplicationStatusRepository(database)
        self.lock_manager = lock_manager or ApplicationLockManager(ApplicationLockRepository(database))
        self.permission_guard = permission_guard or PermissionGuard()
        self.audit_writer = audit_writer or AuditWriter(AuditRepository(database))
        self.event_dispatcher = event_dispatcher or EventDispatcher()
        self.condition_evaluator = condition_evaluator or ConditionEvaluator()

    # =========================================================================
    # Application Start
    # =========================================================================

    def initialize_application(
        self,
        application_id: str,
        actor: Optional[ActorContext] = None,
        notes: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> StatusEntry:
        """
        Place an application at the initial stage of its active workflow

        Raises:
            ApplicationAlreadyInitializedError: If the application has history
            NoActiveWorkflowError: If no workflow is active for its type
            WorkflowValidationError: If the active workflow has no initial stage
        """
        application_type = self.application_gateway.get_application_type(application_id)

        with self.lock_manager.hold(application_id):
            if self.status_repo.has_history(application_id):
                raise ApplicationAlreadyInitializedError(
                    f"Application {application_id} already has a status history",
                    details={"application_id": application_id}
                )

            workflow = self.workflow_service.get_active_workflow(application_type)
            graph = self.workflow_service.get_stage_graph(workflow.workflow_id)
            stage = graph.initial_stage()
            if stage is None:
                raise WorkflowValidationError(
                    f"Workflow '{workflow.name}' has no initial stage",
                    details={"workflow_id": workflow.workflow_id}
                )

            entry = StatusEntry(
                status_id=generate_status_id(),
                application_id=application_id,
                workflow_id=workflow.workflow_id,
                stage_id=stage.stage_id,
                status_label=stage.name,
                sequence=1,
                created_at=utc_now(),
                created_by=actor.to_snapshot() if actor else None,
                notes=notes,
                context=context or {}
            )
            try:
                self.status_repo.append_entry(entry)
            except DuplicateKeyError:
                raise ApplicationAlreadyInitializedError(
                    f"Application {application_id} was initialized concurrently",
                    details={"application_id": application_id}
                )
            except PyMongoError as e:
                raise TransitionCommitError(
                    f"Failed to record initial stage for application {application_id}",
                    details={"application_id": application_id, "reason": str(e)}
                )

        logger.info(
            f"Initialized application {application_id} at stage '{stage.name}'",
            extra={
                "application_id": application_id,
                "workflow_id": workflow.workflow_id,
                "stage_id": stage.stage_id,
                "application_type": application_type
            }
        )
        self._after_commit(
            entry, stage, DomainEventType.APPLICATION_INITIALIZED, actor,
            audit=lambda: self.audit_writer.write_application_initialized(entry, actor)
        )
        return entry

    # =========================================================================
    # Queries
    # =========================================================================

    def get_current_status(self, application_id: str) -> StatusEntry:
        """
        Latest status entry of an application

        Raises:
            ApplicationNotInitializedError: If the application has no history
        """
        entry = self.status_repo.get_latest(application_id)
        if entry is None:
            raise ApplicationNotInitializedError(
                f"Application {application_id} has not been initialized",
                details={"application_id": application_id}
            )
        return entry

    def get_current_stage(self, application_id: str) -> Stage:
        status, graph = self._current(application_id)
        return self._stage_or_raise(graph, status.stage_id)

    def get_status_history(self, application_id: str, newest_first: bool = False) -> List[StatusEntry]:
        return self.status_repo.get_history(application_id, newest_first=newest_first)

    def get_available_transitions(
        self,
        application_id: str,
        actor: Optional[ActorContext] = None
    ) -> List[Transition]:
        """
        Transitions the application could take right now

        Conditions are evaluated against a fresh fact snapshot. When an actor
        is given, manual transitions the actor lacks permission for are left
        out (never raised).

        Returns:
            Transitions in firing order (priority descending, then ID)
        """
        status, graph = self._current(application_id)
        facts = self.application_gateway.get_fact_snapshot(application_id)

        available = []
        for transition in graph.outgoing(status.stage_id):
            if not self.condition_evaluator.evaluate(transition.conditions, facts.facts):
                continue
            if (
                actor is not None
                and not transition.is_automatic
                and not self.permission_guard.authorize(actor, transition.required_permissions)
            ):
                continue
            available.append(transition)
        return available

    def get_next_stages(self, application_id: str, actor: Optional[ActorContext] = None) -> List[Stage]:
        """Distinct target stages of the available transitions"""
        status, graph = self._current(application_id)
        stages: Dict[str, Stage] = {}
        for transition in self.get_available_transitions(application_id, actor):
            stage = graph.get_stage(transition.target_stage_id)
            if stage is not None and stage.stage_id not in stages:
                stages[stage.stage_id] = stage
        return list(stages.values())

    def evaluate_stage_requirements(
        self,
        application_id: str,
        stage_id: Optional[str] = None
    ) -> StageRequirements:
        """
        Required documents and actions still outstanding for a stage

        Args:
            application_id: Application ID
            stage_id: Stage to check (defaults to the current stage)
        """
        status, graph = self._current(application_id)
        stage = self._stage_or_raise(graph, stage_id or status.stage_id)
        facts = self.application_gateway.get_fact_snapshot(application_id)

        verified = set(facts.verified_documents)
        completed = set(facts.completed_actions)
        documents = [d for d in stage.required_documents if d not in verified]
        actions = [a for a in stage.required_actions if a not in completed]

        return StageRequirements(
            stage_id=stage.stage_id,
            documents=documents,
            actions=actions,
            satisfied=not documents and not actions
        )

    def get_unmet_conditions(self, application_id: str, transition_id: str) -> List[ConditionFailure]:
        """Conditions of a transition the application's facts do not satisfy"""
        status, graph = self._current(application_id)
        transition = self._resolve_transition(graph, transition_id)
        facts = self.application_gateway.get_fact_snapshot(application_id)
        return self.condition_evaluator.missing_requirements(transition.conditions, facts.facts)

    # =========================================================================
    # Transition Execution
    # =========================================================================

    def execute_transition(
        self,
        application_id: str,
        transition: Union[str, Transition],
        actor: Optional[ActorContext] = None,
        context: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        expected_status_id: Optional[str] = None
    ) -> StatusEntry:
        """
        Move an application along a transition

        Algorithm:
        1. Hold the application's lock
        2. Re-read the current status and check the transition starts there
        3. Evaluate conditions against fresh facts
        4. Check permissions (manual transitions need an actor)
        5. Append one status entry for the target stage
        6. After releasing the lock, write audit and publish STAGE_ENTERED

        Args:
            application_id: Application ID
            transition: Transition ID or Transition
            actor: Acting user; None for system-initiated automatic transitions
            context: Extra data stored on the status entry
            notes: Free-text notes stored on the status entry
            expected_status_id: Status entry the caller last saw

        Raises:
            InvalidTransitionError: Transition does not start at the current stage
            ConcurrencyError: expected_status_id is stale, or a concurrent append won
            TransitionLockTimeoutError: Lock not acquired in time
            StageRequirementsNotMetError: Conditions not satisfied
            PermissionDeniedError: Actor lacks permissions, or no actor for a manual transition
            TransitionCommitError: Status entry could not be persisted
        """
        transition_id = transition if isinstance(transition, str) else transition.transition_id

        with self.lock_manager.hold(application_id):
            status = self.status_repo.get_latest(application_id)
            if status is None:
                raise InvalidTransitionError(
                    f"Application {application_id} has no status history",
                    details={"application_id": application_id, "transition_id": transition_id}
                )

            if expected_status_id is not None and status.status_id != expected_status_id:
                raise ConcurrencyError(
                    f"Application {application_id} changed stage since it was read",
                    details={
                        "application_id": application_id,
                        "expected_status_id": expected_status_id,
                        "current_status_id": status.status_id
                    }
                )

            graph = self.workflow_service.get_stage_graph(status.workflow_id)
            resolved = self._resolve_transition(graph, transition_id)

            if resolved.source_stage_id != status.stage_id:
                raise InvalidTransitionError(
                    f"Transition '{resolved.name}' does not start at the current stage",
                    details={
                        "application_id": application_id,
                        "transition_id": resolved.transition_id,
                        "current_stage_id": status.stage_id,
                        "source_stage_id": resolved.source_stage_id
                    }
                )

            facts = self.application_gateway.get_fact_snapshot(application_id)
            self._check_conditions(application_id, resolved, facts)
            self._check_permissions(resolved, actor)

            target = self._stage_or_raise(graph, resolved.target_stage_id)
            entry = StatusEntry(
                status_id=generate_status_id(),
                application_id=application_id,
                workflow_id=status.workflow_id,
                stage_id=target.stage_id,
                status_label=target.name,
                sequence=status.sequence + 1,
                transition_id=resolved.transition_id,
                created_at=utc_now(),
                created_by=actor.to_snapshot() if actor else None,
                notes=notes,
                context=context or {}
            )
            try:
                self.status_repo.append_entry(entry)
            except DuplicateKeyError:
                raise ConcurrencyError(
                    f"Application {application_id} was moved by a concurrent transition",
                    details={"application_id": application_id, "transition_id": resolved.transition_id}
                )
            except PyMongoError as e:
                logger.error(
                    f"Failed to persist transition for application {application_id}: {e}",
                    extra={"application_id": application_id, "transition_id": resolved.transition_id}
                )
                raise TransitionCommitError(
                    f"Transition '{resolved.name}' could not be recorded",
                    details={"application_id": application_id, "transition_id": resolved.transition_id}
                )

        logger.info(
            f"Application {application_id} moved to '{target.name}' via '{resolved.name}'",
            extra={
                "application_id": application_id,
                "workflow_id": entry.workflow_id,
                "stage_id": target.stage_id,
                "transition_id": resolved.transition_id,
                "actor_email": actor.email if actor else None
            }
        )
        self._after_commit(
            entry, target, DomainEventType.STAGE_ENTERED, actor,
            previous_stage_id=status.stage_id,
            audit=lambda: self.audit_writer.write_transition_executed(entry, resolved, status.stage_id, actor)
        )
        return entry

    def _check_conditions(self, application_id: str, transition: Transition, facts: FactSnapshot) -> None:
        failures = self.condition_evaluator.missing_requirements(transition.conditions, facts.facts)
        if failures:
            raise StageRequirementsNotMetError(
                f"Requirements for '{transition.name}' are not met",
                details={
                    "application_id": application_id,
                    "transition_id": transition.transition_id,
                    "missing_requirements": [f.model_dump(mode="json") for f in failures]
                }
            )

    def _check_permissions(self, transition: Transition, actor: Optional[ActorContext]) -> None:
        if actor is None:
            if not transition.is_automatic:
                raise PermissionDeniedError(
                    f"Transition '{transition.name}' must be executed by a user",
                    details={
                        "transition_id": transition.transition_id,
                        "required_permissions": list(transition.required_permissions),
                        "missing_permissions": list(transition.required_permissions)
                    }
                )
            return

        if not self.permission_guard.authorize(actor, transition.required_permissions):
            raise PermissionDeniedError(
                f"You do not have permission to execute '{transition.name}'",
                details={
                    "transition_id": transition.transition_id,
                    "required_permissions": list(transition.required_permissions),
                    "missing_permissions": self.permission_guard.missing_permissions(
                        actor, transition.required_permissions
                    )
                }
            )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _current(self, application_id: str) -> Tuple[StatusEntry, StageGraph]:
        status = self.get_current_status(application_id)
        return status, self.workflow_service.get_stage_graph(status.workflow_id)

    def _stage_or_raise(self, graph: StageGraph, stage_id: str) -> Stage:
        stage = graph.get_stage(stage_id)
        if stage is None:
            raise StageNotFoundError(
                f"Stage {stage_id} not found in workflow {graph.workflow_id}",
                details={"stage_id": stage_id, "workflow_id": graph.workflow_id}
            )
        return stage

    def _resolve_transition(self, graph: StageGraph, transition_id: str) -> Transition:
        """Find a transition in the application's workflow"""
        transition = graph.get_transition(transition_id)
        if transition is not None:
            return transition

        other = self.workflow_service.repo.get_transition(transition_id)
        if other is None:
            raise TransitionNotFoundError(
                f"Transition {transition_id} not found",
                details={"transition_id": transition_id}
            )
        raise InvalidTransitionError(
            f"Transition '{other.name}' belongs to a different workflow",
            details={
                "transition_id": transition_id,
                "workflow_id": graph.workflow_id,
                "transition_workflow_id": other.workflow_id
            }
        )

    def _after_commit(
        self,
        entry: StatusEntry,
        stage: Stage,
        event_type: DomainEventType,
        actor: Optional[ActorContext],
        audit,
        previous_stage_id: Optional[str] = None
    ) -> None:
        """Audit and publish once the status entry is durable"""
        try:
            audit()
        except PyMongoError as e:
            logger.error(
                f"Failed to write audit event for application {entry.application_id}: {e}",
                extra={"application_id": entry.application_id, "status_id": entry.status_id}
            )

        self.event_dispatcher.publish(DomainEvent(
            event_type=event_type,
            application_id=entry.application_id,
            workflow_id=entry.workflow_id,
            stage_id=stage.stage_id,
            stage_name=stage.name,
            status_id=entry.status_id,
            previous_stage_id=previous_stage_id,
            transition_id=entry.transition_id,
            notification_triggers=list(stage.notification_triggers),
            actor=actor.to_snapshot() if actor else None
        ))
