"""Transition execution: initialization, gating, atomicity and side effects."""
import pytest
from pymongo.errors import PyMongoError

from admissions_workflow.domain.enums import (
    AuditEventType, ConditionFailureReason, DomainEventType,
)
from admissions_workflow.domain.errors import (
    ApplicationAlreadyInitializedError, ApplicationNotFoundError,
    ApplicationNotInitializedError, ConcurrencyError, InvalidTransitionError,
    NoActiveWorkflowError, PermissionDeniedError, StageRequirementsNotMetError,
    TransitionCommitError, TransitionNotFoundError,
)
from admissions_workflow.repositories.audit_repo import AuditRepository

from tests.conftest import undergrad_definition


APP = "APP-1001"


@pytest.fixture
def events(dispatcher):
    received = []
    for event_type in DomainEventType:
        dispatcher.subscribe(event_type, received.append)
    return received


@pytest.fixture
def started(engine, gateway, undergrad):
    """Application initialized at Submitted"""
    gateway.add_application(APP, "undergraduate")
    return engine.initialize_application(APP, notes="Created by applicant")


@pytest.fixture
def in_review(engine, gateway, started, transitions_by_name):
    """Application moved to Document Review"""
    gateway.set_facts(APP, fee_paid=True)
    return engine.execute_transition(APP, transitions_by_name["Fee Paid"].transition_id)


# =============================================================================
# Initialization
# =============================================================================

class TestInitializeApplication:

    def test_starts_at_initial_stage(self, engine, started, stages_by_name, undergrad):
        assert started.sequence == 1
        assert started.stage_id == stages_by_name["Submitted"].stage_id
        assert started.workflow_id == undergrad.workflow_id
        assert started.status_label == "Submitted"
        assert started.transition_id is None
        assert started.notes == "Created by applicant"
        assert engine.get_current_stage(APP).name == "Submitted"

    def test_second_initialization_rejected(self, engine, started):
        with pytest.raises(ApplicationAlreadyInitializedError):
            engine.initialize_application(APP)
        assert len(engine.get_status_history(APP)) == 1

    def test_requires_active_workflow(self, engine, gateway):
        gateway.add_application("APP-G", "graduate")
        with pytest.raises(NoActiveWorkflowError):
            engine.initialize_application("APP-G")

    def test_unknown_application(self, engine, undergrad):
        with pytest.raises(ApplicationNotFoundError):
            engine.initialize_application("APP-missing")

    def test_not_initialized_queries(self, engine):
        with pytest.raises(ApplicationNotInitializedError):
            engine.get_current_status("APP-missing")
        assert engine.get_status_history("APP-missing") == []

    def test_publishes_and_audits(self, db, engine, gateway, undergrad, events, applicant):
        gateway.add_application(APP, "undergraduate")
        entry = engine.initialize_application(APP, actor=applicant)

        assert [e.event_type for e in events] == [DomainEventType.APPLICATION_INITIALIZED]
        assert events[0].status_id == entry.status_id
        audit = AuditRepository(db).get_events_for_application(APP)
        assert [e.event_type for e in audit] == [AuditEventType.APPLICATION_INITIALIZED]
        assert audit[0].actor.email == applicant.email


# =============================================================================
# Queries
# =============================================================================

class TestQueries:

    def test_available_transitions_follow_facts(self, engine, gateway, started):
        assert engine.get_available_transitions(APP) == []

        gateway.set_facts(APP, fee_paid=True)
        assert [t.name for t in engine.get_available_transitions(APP)] == ["Fee Paid"]
        assert [s.name for s in engine.get_next_stages(APP)] == ["Document Review"]

    def test_available_transitions_filter_by_permission(self, engine, in_review, reviewer, applicant):
        assert [t.name for t in engine.get_available_transitions(APP, reviewer)] == ["Complete Review"]
        assert engine.get_available_transitions(APP, applicant) == []
        assert engine.get_next_stages(APP, applicant) == []
        assert [t.name for t in engine.get_available_transitions(APP)] == ["Complete Review"]

    def test_stage_requirements(self, engine, gateway, in_review):
        gateway.set_documents(APP, verified_documents=["transcript"])

        requirements = engine.evaluate_stage_requirements(APP)
        assert requirements.documents == ["personal_statement"]
        assert requirements.actions == ["pay_application_fee"]
        assert not requirements.satisfied

        gateway.set_documents(
            APP,
            verified_documents=["transcript", "personal_statement"],
            completed_actions=["pay_application_fee"]
        )
        assert engine.evaluate_stage_requirements(APP).satisfied

    def test_stage_requirements_for_other_stage(self, engine, started, stages_by_name):
        requirements = engine.evaluate_stage_requirements(APP, stages_by_name["Document Review"].stage_id)
        assert requirements.stage_id == stages_by_name["Document Review"].stage_id
        assert requirements.documents == ["transcript", "personal_statement"]

    def test_unmet_conditions(self, engine, gateway, started, transitions_by_name):
        fee_paid = transitions_by_name["Fee Paid"].transition_id

        failures = engine.get_unmet_conditions(APP, fee_paid)
        assert [(f.field, f.reason) for f in failures] == [("fee_paid", ConditionFailureReason.MISSING)]

        gateway.set_facts(APP, fee_paid=True)
        assert engine.get_unmet_conditions(APP, fee_paid) == []


# =============================================================================
# Execution
# =============================================================================

class TestExecuteTransition:

    def test_automatic_transition_without_actor(self, engine, in_review, started, stages_by_name, transitions_by_name):
        assert in_review.sequence == 2
        assert in_review.stage_id == stages_by_name["Document Review"].stage_id
        assert in_review.transition_id == transitions_by_name["Fee Paid"].transition_id
        assert in_review.created_by is None
        assert engine.get_current_status(APP).status_id == in_review.status_id

    def test_manual_transition_with_permission(self, engine, in_review, reviewer, transitions_by_name):
        entry = engine.execute_transition(
            APP,
            transitions_by_name["Complete Review"],
            actor=reviewer,
            notes="Strong file",
            context={"score": 92}
        )

        assert entry.status_label == "Decision"
        assert entry.created_by.email == reviewer.email
        assert entry.context == {"score": 92}
        assert [e.status_label for e in engine.get_status_history(APP, newest_first=True)] == [
            "Decision", "Document Review", "Submitted",
        ]

    def test_conditions_not_met(self, engine, started, transitions_by_name):
        with pytest.raises(StageRequirementsNotMetError) as exc:
            engine.execute_transition(APP, transitions_by_name["Fee Paid"].transition_id)

        assert exc.value.missing_requirements[0]["field"] == "fee_paid"
        assert exc.value.missing_requirements[0]["reason"] == "missing"
        assert engine.get_current_status(APP).status_id == started.status_id

    def test_permission_denied_leaves_no_trace(self, db, engine, in_review, applicant, transitions_by_name, events):
        with pytest.raises(PermissionDeniedError) as exc:
            engine.execute_transition(APP, transitions_by_name["Complete Review"].transition_id, actor=applicant)

        assert exc.value.error_code == "WORKFLOW_PERMISSION_DENIED"
        assert exc.value.required_permissions == ["applications.complete_review"]
        assert exc.value.missing_permissions == ["applications.complete_review"]
        assert engine.get_current_status(APP).status_id == in_review.status_id
        assert events == []
        audit = AuditRepository(db).get_events_for_application(APP, [AuditEventType.TRANSITION_EXECUTED])
        assert audit == []

    def test_manual_transition_requires_actor(self, engine, in_review, transitions_by_name):
        with pytest.raises(PermissionDeniedError):
            engine.execute_transition(APP, transitions_by_name["Complete Review"].transition_id)

    def test_retry_of_applied_transition_is_invalid(self, engine, in_review, transitions_by_name):
        with pytest.raises(InvalidTransitionError):
            engine.execute_transition(APP, transitions_by_name["Fee Paid"].transition_id)
        assert len(engine.get_status_history(APP)) == 2

    def test_stale_expected_status(self, engine, started, in_review, reviewer, transitions_by_name):
        with pytest.raises(ConcurrencyError):
            engine.execute_transition(
                APP,
                transitions_by_name["Complete Review"].transition_id,
                actor=reviewer,
                expected_status_id=started.status_id
            )

        entry = engine.execute_transition(
            APP,
            transitions_by_name["Complete Review"].transition_id,
            actor=reviewer,
            expected_status_id=in_review.status_id
        )
        assert entry.sequence == 3

    def test_uninitialized_application(self, engine, undergrad, transitions_by_name):
        with pytest.raises(InvalidTransitionError):
            engine.execute_transition("APP-missing", transitions_by_name["Fee Paid"].transition_id)

    def test_unknown_transition(self, engine, started):
        with pytest.raises(TransitionNotFoundError):
            engine.execute_transition(APP, "TRN-missing")

    def test_transition_of_another_workflow(self, engine, workflow_service, started):
        other = workflow_service.create_workflow(undergrad_definition(is_active=False, name="Other"))
        foreign = workflow_service.list_transitions(workflow_id=other.workflow_id, is_automatic=True)[0]

        with pytest.raises(InvalidTransitionError):
            engine.execute_transition(APP, foreign.transition_id)

    def test_commit_failure_has_no_effect(self, engine, gateway, started, transitions_by_name, events, monkeypatch):
        gateway.set_facts(APP, fee_paid=True)

        def fail(entry):
            raise PyMongoError("disk full")

        monkeypatch.setattr(engine.status_repo, "append_entry", fail)

        with pytest.raises(TransitionCommitError):
            engine.execute_transition(APP, transitions_by_name["Fee Paid"].transition_id)

        monkeypatch.undo()
        assert engine.get_current_status(APP).status_id == started.status_id
        assert events == []

    def test_in_flight_application_keeps_its_workflow(
        self, engine, workflow_service, in_review, reviewer, transitions_by_name, undergrad
    ):
        workflow_service.create_workflow(undergrad_definition(name="Undergrad v2"))
        assert not workflow_service.get_workflow(undergrad.workflow_id).is_active

        entry = engine.execute_transition(APP, transitions_by_name["Complete Review"].transition_id, actor=reviewer)
        assert entry.workflow_id == undergrad.workflow_id


# =============================================================================
# Side Effects
# =============================================================================

class TestSideEffects:

    def test_stage_entered_event_carries_triggers(self, engine, gateway, started, transitions_by_name, events):
        gateway.set_facts(APP, fee_paid=True)
        entry = engine.execute_transition(APP, transitions_by_name["Fee Paid"].transition_id)

        assert [e.event_type for e in events] == [DomainEventType.STAGE_ENTERED]
        event = events[0]
        assert event.status_id == entry.status_id
        assert event.previous_stage_id == started.stage_id
        assert event.transition_id == entry.transition_id
        assert event.notification_triggers == ["documents_required"]
        assert event.actor is None

    def test_failing_subscriber_does_not_undo(self, engine, gateway, dispatcher, started, transitions_by_name):
        def broken(event):
            raise RuntimeError("mail server down")

        dispatcher.subscribe(DomainEventType.STAGE_ENTERED, broken)
        gateway.set_facts(APP, fee_paid=True)

        entry = engine.execute_transition(APP, transitions_by_name["Fee Paid"].transition_id)
        assert engine.get_current_status(APP).status_id == entry.status_id

    def test_transitions_are_audited(self, db, engine, in_review, reviewer, transitions_by_name):
        engine.execute_transition(APP, transitions_by_name["Complete Review"].transition_id, actor=reviewer)

        audit = AuditRepository(db)
        automatic = audit.get_events_for_application(APP, [AuditEventType.AUTO_TRANSITION_EXECUTED])
        manual = audit.get_events_for_application(APP, [AuditEventType.TRANSITION_EXECUTED])

        assert len(automatic) == 1 and automatic[0].actor is None
        assert len(manual) == 1
        assert manual[0].actor.email == reviewer.email
        assert manual[0].details["transition_name"] == "Complete Review"
