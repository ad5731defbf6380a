"""Audit Writer - Append-only audit events"""
from typing import Any, Dict, Optional

from ..domain.models import AuditEvent, ActorContext, StatusEntry, Transition
from ..domain.enums import AuditEventType
from ..repositories.audit_repo import AuditRepository
from ..utils.idgen import generate_audit_event_id
from ..utils.time import utc_now
from ..utils.logger import get_logger, get_correlation_id

logger = get_logger(__name__)


class AuditWriter:
    """
    Write audit events (append-only)

    Every registry change and every stage change of an application produces
    an audit event. A missing actor records a system action.
    """

    def __init__(self, repo: Optional[AuditRepository] = None):
        self.repo = repo or AuditRepository()

    def write_event(
        self,
        event_type: AuditEventType,
        actor: Optional[ActorContext],
        workflow_id: Optional[str] = None,
        application_id: Optional[str] = None,
        stage_id: Optional[str] = None,
        transition_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None
    ) -> AuditEvent:
        """Write a single audit event"""
        event = AuditEvent(
            audit_event_id=generate_audit_event_id(),
            event_type=event_type,
            workflow_id=workflow_id,
            application_id=application_id,
            stage_id=stage_id,
            transition_id=transition_id,
            actor=actor.to_snapshot() if actor else None,
            details=details or {},
            timestamp=utc_now(),
            correlation_id=correlation_id or get_correlation_id()
        )

        return self.repo.create_event(event)

    def write_workflow_event(
        self,
        workflow_id: str,
        event_type: AuditEventType,
        actor: Optional[ActorContext],
        details: Optional[Dict[str, Any]] = None,
        stage_id: Optional[str] = None,
        transition_id: Optional[str] = None
    ) -> AuditEvent:
        """Write a workflow authoring event"""
        return self.write_event(
            event_type=event_type,
            actor=actor,
            workflow_id=workflow_id,
            stage_id=stage_id,
            transition_id=transition_id,
            details=details
        )

    def write_application_initialized(
        self,
        entry: StatusEntry,
        actor: Optional[ActorContext]
    ) -> AuditEvent:
        """Write initial stage entry event"""
        return self.write_event(
            event_type=AuditEventType.APPLICATION_INITIALIZED,
            actor=actor,
            workflow_id=entry.workflow_id,
            application_id=entry.application_id,
            stage_id=entry.stage_id,
            details={"status_id": entry.status_id, "stage_name": entry.status_label, "notes": entry.notes}
        )

    def write_transition_executed(
        self,
        entry: StatusEntry,
        transition: Transition,
        previous_stage_id: str,
        actor: Optional[ActorContext]
    ) -> AuditEvent:
        """Write stage change event"""
        event_type = (
            AuditEventType.AUTO_TRANSITION_EXECUTED if actor is None
            else AuditEventType.TRANSITION_EXECUTED
        )
        return self.write_event(
            event_type=event_type,
            actor=actor,
            workflow_id=entry.workflow_id,
            application_id=entry.application_id,
            stage_id=entry.stage_id,
            transition_id=transition.transition_id,
            details={
                "status_id": entry.status_id,
                "transition_name": transition.name,
                "from_stage_id": previous_stage_id,
                "to_stage_id": entry.stage_id,
                "sequence": entry.sequence,
                "notes": entry.notes
            }
        )
