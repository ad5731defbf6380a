"""
Pytest Configuration and Fixtures

Shared fixtures backed by mongomock, so no MongoDB server is needed.
"""
from typing import Any, Dict, List, Optional

import mongomock
import pytest

from admissions_workflow.domain.errors import ApplicationNotFoundError
from admissions_workflow.domain.events import EventDispatcher
from admissions_workflow.domain.models import ActorContext, FactSnapshot, WorkflowDefinition
from admissions_workflow.engine.engine import WorkflowEngine
from admissions_workflow.engine.locking import ApplicationLockManager
from admissions_workflow.repositories.lock_repo import ApplicationLockRepository
from admissions_workflow.repositories.mongo_client import create_indexes
from admissions_workflow.scheduler.auto_transition_scanner import AutoTransitionScanner
from admissions_workflow.services.workflow_service import WorkflowService


PERMISSION_COMPLETE_REVIEW = "applications.complete_review"


# =============================================================================
# Collaborator Fakes
# =============================================================================

class FakeApplicationGateway:
    """In-memory stand-in for the host application store"""

    def __init__(self):
        self.types: Dict[str, str] = {}
        self.snapshots: Dict[str, FactSnapshot] = {}

    def add_application(self, application_id: str, application_type: str, **facts: Any) -> None:
        self.types[application_id] = application_type
        self.snapshots[application_id] = FactSnapshot(facts=facts)

    def set_facts(self, application_id: str, **facts: Any) -> None:
        snapshot = self.snapshots[application_id]
        self.snapshots[application_id] = snapshot.model_copy(update={"facts": {**snapshot.facts, **facts}})

    def set_documents(
        self,
        application_id: str,
        verified_documents: Optional[List[str]] = None,
        completed_actions: Optional[List[str]] = None
    ) -> None:
        snapshot = self.snapshots[application_id]
        self.snapshots[application_id] = snapshot.model_copy(update={
            "verified_documents": verified_documents or [],
            "completed_actions": completed_actions or [],
        })

    def get_application_type(self, application_id: str) -> str:
        if application_id not in self.types:
            raise ApplicationNotFoundError(f"Application {application_id} not found")
        return self.types[application_id]

    def get_fact_snapshot(self, application_id: str) -> FactSnapshot:
        return self.snapshots.get(application_id, FactSnapshot())


class FakePermissionProvider:
    """Grants permissions by actor email"""

    def __init__(self, grants: Dict[str, List[str]]):
        self.grants = grants
        self.calls = 0

    def has_permissions(self, actor: ActorContext, permissions) -> bool:
        self.calls += 1
        return set(permissions).issubset(self.grants.get(actor.email, []))


# =============================================================================
# Infrastructure
# =============================================================================

@pytest.fixture
def db():
    """Fresh mongomock database with production indexes"""
    database = mongomock.MongoClient()["admissions_workflow_test"]
    create_indexes(database)
    return database


@pytest.fixture
def gateway() -> FakeApplicationGateway:
    return FakeApplicationGateway()


@pytest.fixture
def dispatcher() -> EventDispatcher:
    return EventDispatcher()


@pytest.fixture
def workflow_service(db) -> WorkflowService:
    return WorkflowService(db)


@pytest.fixture
def lock_manager(db) -> ApplicationLockManager:
    return ApplicationLockManager(
        ApplicationLockRepository(db),
        timeout_seconds=2.0,
        lease_seconds=30,
        poll_interval_seconds=0.01
    )


@pytest.fixture
def engine(db, gateway, workflow_service, lock_manager, dispatcher) -> WorkflowEngine:
    return WorkflowEngine(
        gateway,
        workflow_service=workflow_service,
        database=db,
        lock_manager=lock_manager,
        event_dispatcher=dispatcher
    )


@pytest.fixture
def scanner(engine) -> AutoTransitionScanner:
    return AutoTransitionScanner(engine, max_workers=2, max_chain=5, batch_size=100)


# =============================================================================
# Actors
# =============================================================================

@pytest.fixture
def admin() -> ActorContext:
    return ActorContext(
        user_id="user-admin",
        email="admin@example.com",
        display_name="Registry Admin",
        roles=["admin"],
        permissions=[]
    )


@pytest.fixture
def reviewer() -> ActorContext:
    return ActorContext(
        user_id="user-reviewer",
        email="reviewer@example.com",
        display_name="Admissions Reviewer",
        roles=["admissions_committee"],
        permissions=[PERMISSION_COMPLETE_REVIEW]
    )


@pytest.fixture
def applicant() -> ActorContext:
    return ActorContext(
        user_id="user-applicant",
        email="applicant@example.com",
        display_name="Jordan Applicant",
        roles=["applicant"],
        permissions=[]
    )


# =============================================================================
# Workflows
# =============================================================================

def undergrad_definition(is_active: bool = True, name: str = "Undergrad") -> WorkflowDefinition:
    """Submitted -> Document Review (automatic on fee paid) -> Decision (manual)"""
    return WorkflowDefinition.model_validate({
        "name": name,
        "description": "Small undergraduate process",
        "application_type": "undergraduate",
        "is_active": is_active,
        "stages": [
            {"key": "submitted", "name": "Submitted", "sequence": 1},
            {
                "key": "document_review",
                "name": "Document Review",
                "sequence": 2,
                "required_documents": ["transcript", "personal_statement"],
                "required_actions": ["pay_application_fee"],
                "notification_triggers": ["documents_required"],
            },
            {"key": "decision", "name": "Decision", "sequence": 3, "is_terminal": True},
        ],
        "transitions": [
            {
                "source": "submitted",
                "target": "document_review",
                "name": "Fee Paid",
                "is_automatic": True,
                "conditions": [{"field": "fee_paid", "operator": "==", "value": True}],
            },
            {
                "source": "document_review",
                "target": "decision",
                "name": "Complete Review",
                "required_permissions": [PERMISSION_COMPLETE_REVIEW],
            },
        ],
    })


@pytest.fixture
def undergrad(workflow_service, admin):
    """Active Undergrad workflow"""
    return workflow_service.create_workflow(undergrad_definition(), admin)


@pytest.fixture
def stages_by_name(workflow_service, undergrad):
    return {s.name: s for s in workflow_service.list_stages(undergrad.workflow_id)}


@pytest.fixture
def transitions_by_name(workflow_service, undergrad):
    return {t.name: t for t in workflow_service.list_transitions(workflow_id=undergrad.workflow_id)}
