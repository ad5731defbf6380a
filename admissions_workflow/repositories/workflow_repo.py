"""Workflow Repository - Data access for workflows, stages and transitions"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from .mongo_client import get_collection, WORKFLOWS, WORKFLOW_STAGES, WORKFLOW_TRANSITIONS
from ..domain.models import Workflow, Stage, Transition
from ..domain.errors import (
    WorkflowNotFoundError, StageNotFoundError, TransitionNotFoundError,
    WorkflowVersionConflictError, ConflictError,
)
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class WorkflowRepository:
    """Repository for workflow operations"""

    def __init__(self, database: Optional[Database] = None):
        self._workflows: Collection = get_collection(WORKFLOWS, database)
        self._stages: Collection = get_collection(WORKFLOW_STAGES, database)
        self._transitions: Collection = get_collection(WORKFLOW_TRANSITIONS, database)

    # =========================================================================
    # Workflow CRUD
    # =========================================================================

    def create_workflow(self, workflow: Workflow) -> Workflow:
        """Create a new workflow"""
        doc = workflow.model_dump(mode="json")
        doc["_id"] = workflow.workflow_id

        try:
            self._workflows.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError(f"Workflow {workflow.workflow_id} already exists")
        logger.info(f"Created workflow: {workflow.workflow_id}", extra={"workflow_id": workflow.workflow_id})
        return workflow

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        """Get workflow by ID"""
        doc = self._workflows.find_one({"workflow_id": workflow_id})
        if doc:
            doc.pop("_id", None)
            return Workflow.model_validate(doc)
        return None

    def get_workflow_or_raise(self, workflow_id: str) -> Workflow:
        """Get workflow by ID or raise error"""
        workflow = self.get_workflow(workflow_id)
        if not workflow:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    def list_workflows(
        self,
        application_type: Optional[str] = None,
        is_active: Optional[bool] = None,
        skip: int = 0,
        limit: int = 0
    ) -> List[Workflow]:
        """List workflows with optional filters, newest first"""
        query: Dict[str, Any] = {}
        if application_type is not None:
            query["application_type"] = application_type
        if is_active is not None:
            query["is_active"] = is_active

        cursor = self._workflows.find(query).sort("created_at", DESCENDING).skip(skip)
        if limit:
            cursor = cursor.limit(limit)

        workflows = []
        for doc in cursor:
            doc.pop("_id", None)
            workflows.append(Workflow.model_validate(doc))
        return workflows

    def get_active_workflow(self, application_type: str) -> Optional[Workflow]:
        """Get the active workflow for an application type"""
        doc = self._workflows.find_one({"application_type": application_type, "is_active": True})
        if doc:
            doc.pop("_id", None)
            return Workflow.model_validate(doc)
        return None

    def count_workflows(self, application_type: str) -> int:
        return self._workflows.count_documents({"application_type": application_type})

    def update_workflow(
        self,
        workflow_id: str,
        updates: Dict[str, Any],
        expected_version: Optional[int] = None
    ) -> Workflow:
        """
        Update workflow with optimistic concurrency

        Every update bumps the version, which also invalidates cached stage graphs.

        Args:
            workflow_id: Workflow ID
            updates: Fields to update
            expected_version: Expected version for optimistic lock
        """
        updates = dict(updates)
        updates["updated_at"] = utc_now()

        filter_query: Dict[str, Any] = {"workflow_id": workflow_id}
        if expected_version is not None:
            filter_query["version"] = expected_version

        result = self._workflows.find_one_and_update(
            filter_query,
            {"$set": updates, "$inc": {"version": 1}},
            return_document=True
        )

        if result is None:
            if expected_version is not None and self._workflows.find_one({"workflow_id": workflow_id}):
                raise WorkflowVersionConflictError(
                    f"Workflow {workflow_id} was modified. Please refresh and try again.",
                    details={"expected_version": expected_version}
                )
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")

        result.pop("_id", None)
        logger.info(f"Updated workflow: {workflow_id}", extra={"workflow_id": workflow_id})
        return Workflow.model_validate(result)

    def touch_workflow(self, workflow_id: str) -> Workflow:
        """Bump version after a stage or transition change"""
        return self.update_workflow(workflow_id, {})

    def activate_exclusive(self, workflow_id: str, application_type: str) -> Workflow:
        """
        Activate a workflow and deactivate every other one of the same type

        The partial unique index on active workflows rejects a second active
        workflow if two activations interleave across processes.
        """
        now = utc_now()
        deactivated = self._workflows.update_many(
            {
                "application_type": application_type,
                "is_active": True,
                "workflow_id": {"$ne": workflow_id}
            },
            {"$set": {"is_active": False, "updated_at": now}, "$inc": {"version": 1}}
        )
        if deactivated.modified_count:
            logger.info(
                f"Deactivated {deactivated.modified_count} workflow(s) for type {application_type}",
                extra={"application_type": application_type}
            )

        try:
            return self.update_workflow(workflow_id, {"is_active": True})
        except DuplicateKeyError:
            raise ConflictError(
                f"Another workflow for {application_type} was activated concurrently",
                details={"workflow_id": workflow_id, "application_type": application_type}
            )

    def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow with its stages and transitions"""
        self._transitions.delete_many({"workflow_id": workflow_id})
        self._stages.delete_many({"workflow_id": workflow_id})
        result = self._workflows.delete_one({"workflow_id": workflow_id})
        logger.info(f"Deleted workflow: {workflow_id}", extra={"workflow_id": workflow_id})
        return result.deleted_count > 0

    def workflow_ids_with_automatic_transitions(self) -> List[str]:
        """Workflow IDs owning at least one automatic transition"""
        return sorted(self._transitions.distinct("workflow_id", {"is_automatic": True}))

    # =========================================================================
    # Stages
    # =========================================================================

    def create_stages(self, stages: List[Stage]) -> List[Stage]:
        """Create multiple stages"""
        if not stages:
            return []
        docs = []
        for stage in stages:
            doc = stage.model_dump(mode="json")
            doc["_id"] = stage.stage_id
            docs.append(doc)
        self._stages.insert_many(docs)
        return stages

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        """Get stage by ID"""
        doc = self._stages.find_one({"stage_id": stage_id})
        if doc:
            doc.pop("_id", None)
            return Stage.model_validate(doc)
        return None

    def get_stage_or_raise(self, stage_id: str) -> Stage:
        stage = self.get_stage(stage_id)
        if not stage:
            raise StageNotFoundError(f"Stage {stage_id} not found")
        return stage

    def list_stages(self, workflow_id: str) -> List[Stage]:
        """List stages of a workflow ordered by sequence"""
        cursor = self._stages.find({"workflow_id": workflow_id}).sort("sequence", ASCENDING)
        stages = []
        for doc in cursor:
            doc.pop("_id", None)
            stages.append(Stage.model_validate(doc))
        return stages

    def update_stage(self, stage_id: str, updates: Dict[str, Any]) -> Stage:
        """Update stage fields"""
        result = self._stages.find_one_and_update(
            {"stage_id": stage_id},
            {"$set": updates},
            return_document=True
        )
        if result is None:
            raise StageNotFoundError(f"Stage {stage_id} not found")
        result.pop("_id", None)
        return Stage.model_validate(result)

    def set_stage_sequences(self, sequences: Dict[str, int]) -> None:
        """Assign sequences to stages"""
        for stage_id, sequence in sequences.items():
            self._stages.update_one({"stage_id": stage_id}, {"$set": {"sequence": sequence}})

    def delete_stage(self, stage_id: str) -> bool:
        result = self._stages.delete_one({"stage_id": stage_id})
        return result.deleted_count > 0

    def delete_stages_for_workflow(self, workflow_id: str) -> int:
        result = self._stages.delete_many({"workflow_id": workflow_id})
        return result.deleted_count

    # =========================================================================
    # Transitions
    # =========================================================================

    def create_transitions(self, transitions: List[Transition]) -> List[Transition]:
        """Create multiple transitions"""
        if not transitions:
            return []
        docs = []
        for transition in transitions:
            doc = transition.model_dump(mode="json")
            doc["_id"] = transition.transition_id
            docs.append(doc)
        self._transitions.insert_many(docs)
        return transitions

    def get_transition(self, transition_id: str) -> Optional[Transition]:
        """Get transition by ID"""
        doc = self._transitions.find_one({"transition_id": transition_id})
        if doc:
            doc.pop("_id", None)
            return Transition.model_validate(doc)
        return None

    def get_transition_or_raise(self, transition_id: str) -> Transition:
        transition = self.get_transition(transition_id)
        if not transition:
            raise TransitionNotFoundError(f"Transition {transition_id} not found")
        return transition

    def list_transitions(
        self,
        workflow_id: Optional[str] = None,
        source_stage_id: Optional[str] = None,
        target_stage_id: Optional[str] = None,
        is_automatic: Optional[bool] = None
    ) -> List[Transition]:
        """List transitions with optional filters"""
        query: Dict[str, Any] = {}
        if workflow_id is not None:
            query["workflow_id"] = workflow_id
        if source_stage_id is not None:
            query["source_stage_id"] = source_stage_id
        if target_stage_id is not None:
            query["target_stage_id"] = target_stage_id
        if is_automatic is not None:
            query["is_automatic"] = is_automatic

        cursor = self._transitions.find(query).sort(
            [("priority", DESCENDING), ("transition_id", ASCENDING)]
        )
        transitions = []
        for doc in cursor:
            doc.pop("_id", None)
            transitions.append(Transition.model_validate(doc))
        return transitions

    def update_transition(self, transition_id: str, updates: Dict[str, Any]) -> Transition:
        """Update transition fields"""
        result = self._transitions.find_one_and_update(
            {"transition_id": transition_id},
            {"$set": updates},
            return_document=True
        )
        if result is None:
            raise TransitionNotFoundError(f"Transition {transition_id} not found")
        result.pop("_id", None)
        return Transition.model_validate(result)

    def delete_transition(self, transition_id: str) -> bool:
        result = self._transitions.delete_one({"transition_id": transition_id})
        return result.deleted_count > 0

    def delete_transitions_for_stage(self, stage_id: str) -> int:
        """Delete transitions entering or leaving a stage"""
        result = self._transitions.delete_many(
            {"$or": [{"source_stage_id": stage_id}, {"target_stage_id": stage_id}]}
        )
        return result.deleted_count

    def delete_transitions_for_workflow(self, workflow_id: str) -> int:
        result = self._transitions.delete_many({"workflow_id": workflow_id})
        return result.deleted_count
