"""Automatic transitions driven by the scanner."""
import pytest

from admissions_workflow.domain.enums import AuditEventType
from admissions_workflow.domain.errors import PermissionDeniedError
from admissions_workflow.domain.models import ActorContext
from admissions_workflow.repositories.audit_repo import AuditRepository
from admissions_workflow.scheduler.auto_transition_scanner import AutoTransitionScanner
from admissions_workflow.templates.default_workflows import (
    PERMISSION_FORWARD_TO_COMMITTEE, graduate_workflow,
)


APP = "APP-2001"


@pytest.fixture
def started(engine, gateway, undergrad):
    gateway.add_application(APP, "undergraduate")
    return engine.initialize_application(APP)


# =============================================================================
# Undergrad fee-paid scenario
# =============================================================================

class TestUndergradFeePaid:

    def test_waits_until_fee_is_paid(self, engine, gateway, scanner, started):
        report = scanner.scan_once()
        assert (report.examined, report.advanced, report.not_ready) == (1, 0, 1)
        assert engine.get_current_stage(APP).name == "Submitted"

        gateway.set_facts(APP, fee_paid=True)
        report = scanner.scan_once()

        assert (report.examined, report.advanced) == (1, 1)
        assert engine.get_current_stage(APP).name == "Document Review"
        latest = engine.get_current_status(APP)
        assert latest.created_by is None

    def test_application_without_automatic_exit_is_not_examined(self, engine, gateway, scanner, started):
        gateway.set_facts(APP, fee_paid=True)
        scanner.scan_once()

        report = scanner.scan_once()
        assert report.examined == 0

    def test_scan_audit_events_share_the_pass_correlation_id(self, db, gateway, scanner, started):
        gateway.set_facts(APP, fee_paid=True)
        report = scanner.scan_once()

        events = AuditRepository(db).get_events_by_correlation_id(report.correlation_id)
        assert [e.event_type for e in events] == [AuditEventType.AUTO_TRANSITION_EXECUTED]
        assert events[0].application_id == APP

    def test_on_facts_changed(self, engine, gateway, scanner, started):
        assert scanner.on_facts_changed(APP) == []

        gateway.set_facts(APP, fee_paid=True)
        entries = scanner.on_facts_changed(APP)

        assert [e.status_label for e in entries] == ["Document Review"]

    def test_uninitialized_application_is_ignored(self, scanner, undergrad):
        assert scanner.process_application("APP-unknown") == []

    def test_many_applications_in_one_pass(self, engine, gateway, scanner, undergrad):
        for n in range(6):
            application_id = f"APP-{n}"
            gateway.add_application(application_id, "undergraduate", fee_paid=n % 2 == 0)
            engine.initialize_application(application_id)

        report = scanner.scan_once()

        assert (report.examined, report.advanced, report.not_ready, report.failed) == (6, 3, 3, 0)
        assert engine.get_current_stage("APP-0").name == "Document Review"
        assert engine.get_current_stage("APP-1").name == "Submitted"


# =============================================================================
# Chains and ordering
# =============================================================================

class TestChains:

    @pytest.fixture
    def chained(self, workflow_service):
        return workflow_service.create_workflow({
            "name": "Fast Track",
            "application_type": "transfer",
            "is_active": True,
            "stages": [
                {"key": "a", "name": "Received"},
                {"key": "b", "name": "Screened"},
                {"key": "c", "name": "Scholarship Review"},
                {"key": "d", "name": "Decision", "is_terminal": True},
            ],
            "transitions": [
                {"source": "a", "target": "b", "name": "Screen", "is_automatic": True,
                 "conditions": [{"field": "fee_paid", "operator": "==", "value": True}]},
                {"source": "b", "target": "d", "name": "Direct", "is_automatic": True, "priority": 0,
                 "conditions": [{"field": "gpa", "operator": ">=", "value": 3.0}]},
                {"source": "b", "target": "c", "name": "Scholarship", "is_automatic": True, "priority": 5,
                 "conditions": [{"field": "gpa", "operator": ">=", "value": 3.8}]},
                {"source": "c", "target": "d", "name": "Award", "is_automatic": True,
                 "conditions": [{"field": "essay_scored", "operator": "==", "value": True}]},
            ],
        })

    def test_chain_follows_priority(self, engine, gateway, scanner, chained):
        gateway.add_application("APP-T", "transfer", fee_paid=True, gpa=3.9, essay_scored=True)
        engine.initialize_application("APP-T")

        entries = scanner.process_application("APP-T")

        assert [e.status_label for e in entries] == ["Screened", "Scholarship Review", "Decision"]

    def test_lower_priority_fires_when_higher_is_unsatisfied(self, engine, gateway, scanner, chained):
        gateway.add_application("APP-T", "transfer", fee_paid=True, gpa=3.2)
        engine.initialize_application("APP-T")

        entries = scanner.process_application("APP-T")

        assert [e.status_label for e in entries] == ["Screened", "Decision"]

    def test_chain_is_bounded(self, engine, gateway, chained):
        gateway.add_application("APP-T", "transfer", fee_paid=True, gpa=3.9, essay_scored=True)
        engine.initialize_application("APP-T")

        entries = AutoTransitionScanner(engine, max_chain=2).process_application("APP-T")
        assert len(entries) == 2
        assert engine.get_current_stage("APP-T").name == "Scholarship Review"


# =============================================================================
# Graduate committee scenario
# =============================================================================

class TestGraduateCommittee:

    @pytest.fixture
    def at_department_review(self, engine, gateway, workflow_service, scanner, applicant):
        workflow_service.create_workflow(graduate_workflow())
        gateway.add_application("APP-G", "graduate")
        engine.initialize_application("APP-G", actor=applicant)

        gateway.set_facts("APP-G", is_submitted=True, application_fee_paid=True, all_documents_verified=True)
        submit = next(t for t in engine.get_available_transitions("APP-G", applicant) if t.name == "Submit Application")
        engine.execute_transition("APP-G", submit.transition_id, actor=applicant)
        scanner.on_facts_changed("APP-G")

        assert engine.get_current_stage("APP-G").name == "Department Review"

    def test_forward_requires_permission(self, engine, at_department_review):
        reviewer = ActorContext(
            user_id="user-dept",
            email="dept.reviewer@example.com",
            display_name="Department Reviewer",
            roles=["department_reviewer"],
            permissions=["applications.schedule_interview"]
        )
        forward = next(
            t for t in engine.get_available_transitions("APP-G") if t.name == "Forward to Committee"
        )

        with pytest.raises(PermissionDeniedError) as exc:
            engine.execute_transition("APP-G", forward.transition_id, actor=reviewer)

        assert exc.value.missing_permissions == [PERMISSION_FORWARD_TO_COMMITTEE]
        assert engine.get_current_stage("APP-G").name == "Department Review"
        assert [t.name for t in engine.get_available_transitions("APP-G", reviewer)] == ["Schedule Interview"]

    def test_forward_with_permission(self, engine, at_department_review):
        chair = ActorContext(
            user_id="user-chair",
            email="chair@example.com",
            display_name="Committee Chair",
            roles=["graduate_committee"],
            permissions=[PERMISSION_FORWARD_TO_COMMITTEE]
        )
        forward = next(
            t for t in engine.get_available_transitions("APP-G", chair) if t.name == "Forward to Committee"
        )

        entry = engine.execute_transition("APP-G", forward.transition_id, actor=chair)
        assert entry.status_label == "Graduate Committee Review"


# =============================================================================
# Paging through candidates
# =============================================================================

class TestCandidatePaging:

    @pytest.fixture
    def small_pages(self, engine) -> AutoTransitionScanner:
        return AutoTransitionScanner(engine, max_workers=2, max_chain=5, batch_size=2)

    @pytest.fixture
    def transfer(self, workflow_service):
        return workflow_service.create_workflow({
            "name": "Transfer",
            "application_type": "transfer",
            "is_active": True,
            "stages": [
                {"key": "received", "name": "Received"},
                {"key": "decision", "name": "Decision", "is_terminal": True},
            ],
            "transitions": [
                {"source": "received", "target": "decision", "name": "Credits Evaluated", "is_automatic": True,
                 "conditions": [{"field": "credits_evaluated", "operator": "==", "value": True}]},
            ],
        })

    def test_ready_application_behind_a_full_page_is_reached(self, engine, gateway, small_pages, undergrad):
        for application_id, paid in (("APP-1", False), ("APP-2", False), ("APP-3", True)):
            gateway.add_application(application_id, "undergraduate", fee_paid=paid)
            engine.initialize_application(application_id)

        report = small_pages.scan_once()

        assert (report.examined, report.advanced, report.not_ready) == (3, 1, 2)
        assert engine.get_current_stage("APP-3").name == "Document Review"

    def test_every_workflow_is_scanned_in_one_pass(self, engine, gateway, small_pages, undergrad, transfer):
        for n in range(3):
            gateway.add_application(f"APP-U{n}", "undergraduate")
            engine.initialize_application(f"APP-U{n}")
        gateway.add_application("APP-T1", "transfer", credits_evaluated=True)
        engine.initialize_application("APP-T1")

        report = small_pages.scan_once()

        assert (report.examined, report.advanced, report.not_ready) == (4, 1, 3)
        assert engine.get_current_stage("APP-T1").name == "Decision"

    def test_each_application_is_examined_once_per_pass(self, engine, gateway, small_pages, undergrad):
        for n in range(5):
            gateway.add_application(f"APP-{n}", "undergraduate", fee_paid=True)
            engine.initialize_application(f"APP-{n}")

        report = small_pages.scan_once()

        assert (report.examined, report.advanced) == (5, 5)
        assert all(len(engine.get_status_history(f"APP-{n}")) == 2 for n in range(5))


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:

    def test_start_and_stop(self, scanner):
        scanner.start()
        try:
            assert scanner.is_running
            job_ids = {job.id for job in scanner.scheduler.get_jobs()}
            assert job_ids == {"scan_automatic_transitions", "cleanup_stale_transition_locks"}
        finally:
            scanner.stop()
        assert not scanner.is_running
