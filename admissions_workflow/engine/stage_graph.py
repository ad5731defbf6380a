"""Stage Graph - Read-only view of a workflow's stages and transitions"""
from collections import deque
from types import MappingProxyType
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..domain.models import (
    Workflow, Stage, Transition, ValidationIssue, WorkflowValidationResult,
)
from ..domain.enums import ValidationIssueType, ValidationSeverity
from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)


def transition_order(transition: Transition) -> Tuple[int, str]:
    """Stable firing order: priority descending, then transition ID ascending"""
    return (-transition.priority, transition.transition_id)


class StageGraph:
    """
    Directed graph of a single workflow

    Nodes are stages, edges are transitions. Instances are built once per
    workflow version and shared between threads, so nothing here mutates
    after construction. Callers must treat the returned models as read-only.
    """

    def __init__(
        self,
        workflow: Workflow,
        stages: Iterable[Stage],
        transitions: Iterable[Transition]
    ):
        self.workflow = workflow
        self.stages: Tuple[Stage, ...] = tuple(sorted(stages, key=lambda s: (s.sequence, s.stage_id)))
        self.transitions: Tuple[Transition, ...] = tuple(sorted(transitions, key=transition_order))

        self._stages_by_id = MappingProxyType({s.stage_id: s for s in self.stages})
        self._transitions_by_id = MappingProxyType({t.transition_id: t for t in self.transitions})

        outgoing: Dict[str, List[Transition]] = {}
        incoming: Dict[str, List[Transition]] = {}
        for t in self.transitions:
            outgoing.setdefault(t.source_stage_id, []).append(t)
            incoming.setdefault(t.target_stage_id, []).append(t)
        self._outgoing = MappingProxyType({k: tuple(v) for k, v in outgoing.items()})
        self._incoming = MappingProxyType({k: tuple(v) for k, v in incoming.items()})

    @property
    def workflow_id(self) -> str:
        return self.workflow.workflow_id

    @property
    def version(self) -> int:
        return self.workflow.version

    # ========================================================================
    # Lookups
    # ========================================================================

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        return self._stages_by_id.get(stage_id)

    def get_transition(self, transition_id: str) -> Optional[Transition]:
        return self._transitions_by_id.get(transition_id)

    def outgoing(self, stage_id: str) -> Tuple[Transition, ...]:
        """Outgoing transitions of a stage in firing order"""
        return self._outgoing.get(stage_id, ())

    def incoming(self, stage_id: str) -> Tuple[Transition, ...]:
        return self._incoming.get(stage_id, ())

    def automatic_outgoing(self, stage_id: str) -> Tuple[Transition, ...]:
        return tuple(t for t in self.outgoing(stage_id) if t.is_automatic)

    def stages_with_automatic_exits(self) -> List[str]:
        """Stage IDs that have at least one automatic outgoing transition"""
        return [s.stage_id for s in self.stages if self.automatic_outgoing(s.stage_id)]

    def initial_stage(self) -> Optional[Stage]:
        """Lowest-sequence stage without incoming transitions"""
        for stage in self.stages:
            if not self.incoming(stage.stage_id):
                return stage
        return None

    def final_stages(self) -> List[Stage]:
        """Stages with no outgoing transitions"""
        return [s for s in self.stages if not self.outgoing(s.stage_id)]

    def is_terminal(self, stage: Stage, terminal_names: Optional[Sequence[str]] = None) -> bool:
        """
        Whether a stage is an intentional end point

        A stage is terminal when flagged so, or when any word of its name is a
        configured decision endpoint name (e.g. "Final Decision", "Rejected").
        """
        if stage.is_terminal:
            return True
        names = set(terminal_names if terminal_names is not None else settings.terminal_stage_names_list)
        return bool(names.intersection(stage.name.lower().split()))

    def reachable_from(self, stage_id: str) -> Set[str]:
        """Stage IDs reachable from a stage (inclusive), breadth first"""
        reachable = {stage_id}
        to_visit = deque([stage_id])

        while to_visit:
            current = to_visit.popleft()
            for t in self.outgoing(current):
                if t.target_stage_id not in reachable:
                    reachable.add(t.target_stage_id)
                    to_visit.append(t.target_stage_id)

        return reachable

    # ========================================================================
    # Validation
    # ========================================================================

    def structural_issues(self) -> List[ValidationIssue]:
        """Issues that make a workflow unsafe to store"""
        issues = []
        seen_sequences: Dict[int, str] = {}

        for stage in self.stages:
            if stage.workflow_id != self.workflow_id:
                issues.append(ValidationIssue(
                    issue_type=ValidationIssueType.CROSS_WORKFLOW_REFERENCE,
                    message=f"Stage '{stage.name}' belongs to workflow {stage.workflow_id}",
                    stage_id=stage.stage_id,
                ))
            if stage.sequence in seen_sequences:
                issues.append(ValidationIssue(
                    issue_type=ValidationIssueType.DUPLICATE_SEQUENCE,
                    message=f"Stage '{stage.name}' reuses sequence {stage.sequence}",
                    stage_id=stage.stage_id,
                ))
            else:
                seen_sequences[stage.sequence] = stage.stage_id

        seen_pairs: Set[Tuple[str, str]] = set()
        for t in self.transitions:
            issues.extend(self.transition_issues(t))
            pair = (t.source_stage_id, t.target_stage_id)
            if pair in seen_pairs:
                issues.append(self.duplicate_issue(t))
            seen_pairs.add(pair)

        return issues

    def duplicate_of(self, t: Transition) -> Optional[Transition]:
        """Another transition between the same two stages"""
        for other in self.outgoing(t.source_stage_id):
            if other.transition_id != t.transition_id and other.target_stage_id == t.target_stage_id:
                return other
        return None

    def duplicate_issue(self, t: Transition) -> ValidationIssue:
        return ValidationIssue(
            issue_type=ValidationIssueType.DUPLICATE_TRANSITION,
            message=f"Transition '{t.name}' repeats an existing transition between the same stages",
            stage_id=t.source_stage_id,
            transition_id=t.transition_id,
        )

    def transition_issues(self, t: Transition) -> List[ValidationIssue]:
        issues = []

        if t.workflow_id != self.workflow_id:
            issues.append(ValidationIssue(
                issue_type=ValidationIssueType.CROSS_WORKFLOW_REFERENCE,
                message=f"Transition '{t.name}' belongs to workflow {t.workflow_id}",
                transition_id=t.transition_id,
            ))

        for stage_id in (t.source_stage_id, t.target_stage_id):
            stage = self.get_stage(stage_id)
            if stage is None:
                issues.append(ValidationIssue(
                    issue_type=ValidationIssueType.UNKNOWN_STAGE_REFERENCE,
                    message=f"Transition '{t.name}' references unknown stage {stage_id}",
                    stage_id=stage_id,
                    transition_id=t.transition_id,
                ))
            elif stage.workflow_id != self.workflow_id:
                issues.append(ValidationIssue(
                    issue_type=ValidationIssueType.CROSS_WORKFLOW_REFERENCE,
                    message=f"Transition '{t.name}' references stage {stage_id} of another workflow",
                    stage_id=stage_id,
                    transition_id=t.transition_id,
                ))

        if t.source_stage_id == t.target_stage_id:
            issues.append(ValidationIssue(
                issue_type=ValidationIssueType.SELF_LOOP,
                message=f"Transition '{t.name}' starts and ends at the same stage",
                stage_id=t.source_stage_id,
                transition_id=t.transition_id,
            ))

        if t.is_automatic and t.required_permissions:
            issues.append(ValidationIssue(
                issue_type=ValidationIssueType.AUTOMATIC_WITH_PERMISSIONS,
                message=f"Automatic transition '{t.name}' cannot require permissions",
                transition_id=t.transition_id,
            ))

        return issues

    def validate(
        self,
        check_reachability: bool = True,
        terminal_names: Optional[Sequence[str]] = None
    ) -> WorkflowValidationResult:
        """
        Validate the stage graph

        Checks, in order: at least one stage, an initial stage, dead ends and
        terminal stages, reference integrity, then reachability from the
        initial stage.

        Returns:
            WorkflowValidationResult (is_valid ignores warnings)
        """
        issues: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        if not self.stages:
            issues.append(ValidationIssue(
                issue_type=ValidationIssueType.NO_STAGES,
                message="Workflow must have at least one stage",
            ))
            return WorkflowValidationResult(
                workflow_id=self.workflow_id, is_valid=False, issues=issues, warnings=warnings
            )

        initial = self.initial_stage()
        if initial is None:
            issues.append(ValidationIssue(
                issue_type=ValidationIssueType.NO_INITIAL_STAGE,
                message="Every stage has incoming transitions; no initial stage",
            ))

        final = self.final_stages()
        if not final:
            issues.append(ValidationIssue(
                issue_type=ValidationIssueType.NO_TERMINAL_STAGE,
                message="Every stage has outgoing transitions; applications can never finish",
            ))
        for stage in final:
            if not self.is_terminal(stage, terminal_names):
                warnings.append(ValidationIssue(
                    issue_type=ValidationIssueType.DEAD_END_STAGE,
                    severity=ValidationSeverity.WARNING,
                    message=f"Stage '{stage.name}' has no outgoing transitions",
                    stage_id=stage.stage_id,
                ))

        issues.extend(self.structural_issues())

        if check_reachability and initial is not None:
            reachable = self.reachable_from(initial.stage_id)
            for stage in self.stages:
                if stage.stage_id not in reachable:
                    issues.append(ValidationIssue(
                        issue_type=ValidationIssueType.UNREACHABLE_STAGE,
                        message=f"Stage '{stage.name}' is not reachable from '{initial.name}'",
                        stage_id=stage.stage_id,
                    ))

        result = WorkflowValidationResult(
            workflow_id=self.workflow_id,
            is_valid=not issues,
            issues=issues,
            warnings=warnings,
        )
        logger.debug(
            f"Validated workflow: {len(issues)} issues, {len(warnings)} warnings",
            extra={"workflow_id": self.workflow_id}
        )
        return result
