"""Audit Repository - Data access for audit events"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo import DESCENDING

from .mongo_client import get_collection, AUDIT_EVENTS
from ..domain.models import AuditEvent
from ..domain.enums import AuditEventType
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AuditRepository:
    """Repository for audit event operations (append-only)"""

    def __init__(self, database: Optional[Database] = None):
        self._audit_events: Collection = get_collection(AUDIT_EVENTS, database)

    def create_event(self, event: AuditEvent) -> AuditEvent:
        """Create an audit event (append-only)"""
        doc = event.model_dump(mode="json")
        doc["_id"] = event.audit_event_id

        self._audit_events.insert_one(doc)
        logger.info(
            f"Created audit event: {event.event_type.value}",
            extra={
                "application_id": event.application_id,
                "workflow_id": event.workflow_id,
                "actor_email": event.actor.email if event.actor else None
            }
        )
        return event

    def _find(self, query: Dict[str, Any], skip: int = 0, limit: int = 100) -> List[AuditEvent]:
        cursor = self._audit_events.find(query).sort("timestamp", DESCENDING).skip(skip).limit(limit)

        events = []
        for doc in cursor:
            doc.pop("_id", None)
            events.append(AuditEvent.model_validate(doc))
        return events

    def get_events_for_application(
        self,
        application_id: str,
        event_types: Optional[List[AuditEventType]] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[AuditEvent]:
        """Get audit events for an application, newest first"""
        query: Dict[str, Any] = {"application_id": application_id}
        if event_types:
            query["event_type"] = {"$in": [et.value for et in event_types]}
        return self._find(query, skip, limit)

    def get_events_for_workflow(
        self,
        workflow_id: str,
        event_types: Optional[List[AuditEventType]] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[AuditEvent]:
        """Get audit events for a workflow, newest first"""
        query: Dict[str, Any] = {"workflow_id": workflow_id}
        if event_types:
            query["event_type"] = {"$in": [et.value for et in event_types]}
        return self._find(query, skip, limit)

    def get_events_by_correlation_id(self, correlation_id: str) -> List[AuditEvent]:
        """Get audit events by correlation ID"""
        return self._find({"correlation_id": correlation_id}, limit=0)
