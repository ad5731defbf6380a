"""Stage graph queries and validation."""
from typing import List

import pytest

from admissions_workflow.domain.enums import ValidationIssueType, ValidationSeverity
from admissions_workflow.domain.models import Stage, Transition, Workflow
from admissions_workflow.engine.stage_graph import StageGraph
from admissions_workflow.utils.time import utc_now


WF = "WF-graph"


def workflow() -> Workflow:
    now = utc_now()
    return Workflow(
        workflow_id=WF, name="Graph", application_type="undergraduate",
        created_at=now, updated_at=now
    )


def stage(stage_id: str, sequence: int, name: str = None, workflow_id: str = WF, **kwargs) -> Stage:
    return Stage(
        stage_id=stage_id, workflow_id=workflow_id, name=name or stage_id.title(),
        sequence=sequence, **kwargs
    )


def transition(transition_id: str, source: str, target: str, workflow_id: str = WF, **kwargs) -> Transition:
    return Transition(
        transition_id=transition_id, workflow_id=workflow_id,
        source_stage_id=source, target_stage_id=target, name=transition_id, **kwargs
    )


def issue_types(issues) -> List[ValidationIssueType]:
    return [i.issue_type for i in issues]


@pytest.fixture
def linear() -> StageGraph:
    return StageGraph(
        workflow(),
        [stage("draft", 1), stage("review", 2), stage("closed", 3, is_terminal=True)],
        [transition("t1", "draft", "review"), transition("t2", "review", "closed")]
    )


# =============================================================================
# Queries
# =============================================================================

class TestQueries:

    def test_initial_stage_is_lowest_sequence_without_incoming(self, linear):
        assert linear.initial_stage().stage_id == "draft"

    def test_initial_stage_skips_stages_with_incoming(self):
        graph = StageGraph(
            workflow(),
            [stage("a", 1), stage("b", 2), stage("c", 3)],
            [transition("t1", "b", "a"), transition("t2", "a", "c")]
        )
        assert graph.initial_stage().stage_id == "b"

    def test_automatic_order_is_priority_then_id(self):
        graph = StageGraph(
            workflow(),
            [stage("a", 1), stage("b", 2), stage("c", 3), stage("d", 4)],
            [
                transition("t-z", "a", "b", is_automatic=True, priority=0),
                transition("t-b", "a", "c", is_automatic=True, priority=5),
                transition("t-a", "a", "d", is_automatic=True, priority=0),
                transition("t-m", "a", "d"),
            ]
        )
        assert [t.transition_id for t in graph.automatic_outgoing("a")] == ["t-b", "t-a", "t-z"]
        assert graph.stages_with_automatic_exits() == ["a"]

    def test_reachable_from(self, linear):
        assert linear.reachable_from("review") == {"review", "closed"}

    def test_terminal_by_flag_or_name(self):
        graph = StageGraph(workflow(), [], [])
        assert graph.is_terminal(stage("x", 1, name="Anything", is_terminal=True))
        assert graph.is_terminal(stage("y", 1, name="Final Decision"), ["decision"])
        assert not graph.is_terminal(stage("z", 1, name="Under Review"), ["decision"])


# =============================================================================
# Validation
# =============================================================================

class TestValidate:

    def test_valid_linear_workflow(self, linear):
        result = linear.validate()
        assert result.is_valid
        assert result.issues == []
        assert result.warnings == []

    def test_no_stages(self):
        result = StageGraph(workflow(), [], []).validate()
        assert not result.is_valid
        assert issue_types(result.issues) == [ValidationIssueType.NO_STAGES]

    def test_cycle_through_every_stage_has_no_initial_or_terminal(self):
        graph = StageGraph(
            workflow(),
            [stage("a", 1), stage("b", 2)],
            [transition("t1", "a", "b"), transition("t2", "b", "a")]
        )
        types = issue_types(graph.validate().issues)
        assert ValidationIssueType.NO_INITIAL_STAGE in types
        assert ValidationIssueType.NO_TERMINAL_STAGE in types

    def test_dead_end_is_a_warning(self):
        graph = StageGraph(
            workflow(),
            [stage("draft", 1), stage("limbo", 2, name="Limbo")],
            [transition("t1", "draft", "limbo")]
        )
        result = graph.validate(terminal_names=["decision"])

        assert result.is_valid
        assert issue_types(result.warnings) == [ValidationIssueType.DEAD_END_STAGE]
        assert result.warnings[0].severity == ValidationSeverity.WARNING

    def test_unreachable_stage(self):
        graph = StageGraph(
            workflow(),
            [stage("draft", 1), stage("closed", 2, is_terminal=True), stage("island", 3)],
            [transition("t1", "draft", "closed"), transition("t2", "island", "closed")]
        )
        # "island" has no incoming edges but "draft" wins on sequence
        result = graph.validate()
        assert issue_types(result.issues) == [ValidationIssueType.UNREACHABLE_STAGE]
        assert result.issues[0].stage_id == "island"
        assert graph.validate(check_reachability=False).is_valid

    def test_reference_problems(self):
        graph = StageGraph(
            workflow(),
            [stage("draft", 1), stage("closed", 2, is_terminal=True)],
            [
                transition("t1", "draft", "closed"),
                transition("t2", "draft", "ghost"),
                transition("t3", "closed", "closed"),
                transition("t4", "draft", "closed", workflow_id="WF-other"),
            ]
        )
        types = issue_types(graph.structural_issues())
        assert ValidationIssueType.UNKNOWN_STAGE_REFERENCE in types
        assert ValidationIssueType.SELF_LOOP in types
        assert ValidationIssueType.CROSS_WORKFLOW_REFERENCE in types

    def test_foreign_stage_reference(self):
        graph = StageGraph(
            workflow(),
            [stage("draft", 1), stage("foreign", 2, workflow_id="WF-other")],
            []
        )
        t = transition("t1", "draft", "foreign")
        assert issue_types(graph.transition_issues(t)) == [ValidationIssueType.CROSS_WORKFLOW_REFERENCE]

    def test_automatic_transition_with_permissions(self):
        graph = StageGraph(workflow(), [stage("a", 1), stage("b", 2)], [])
        t = transition("t1", "a", "b", is_automatic=True, required_permissions=["x.y"])
        assert issue_types(graph.transition_issues(t)) == [ValidationIssueType.AUTOMATIC_WITH_PERMISSIONS]

    def test_duplicate_sequence(self):
        graph = StageGraph(workflow(), [stage("a", 1), stage("b", 1)], [transition("t1", "a", "b")])
        assert ValidationIssueType.DUPLICATE_SEQUENCE in issue_types(graph.validate().issues)

    def test_repeated_source_and_target(self):
        graph = StageGraph(
            workflow(),
            [stage("a", 1), stage("b", 2, is_terminal=True)],
            [transition("t1", "a", "b"), transition("t2", "a", "b", is_automatic=True, priority=1)]
        )
        issues = [i for i in graph.structural_issues() if i.issue_type == ValidationIssueType.DUPLICATE_TRANSITION]

        assert [i.transition_id for i in issues] == ["t1"]
        assert graph.duplicate_of(graph.get_transition("t1")).transition_id == "t2"
