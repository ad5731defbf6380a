"""Application Status Repository - Append-only stage history per application"""
from typing import Any, Dict, List, Optional
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo import ASCENDING, DESCENDING

from .mongo_client import get_collection, APPLICATION_STATUSES
from ..domain.models import StatusEntry
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ApplicationStatusRepository:
    """
    Repository for application status entries (append-only)

    The current stage of an application is the stage of its entry with the
    greatest sequence. Entries are never updated or deleted.
    """

    def __init__(self, database: Optional[Database] = None):
        self._statuses: Collection = get_collection(APPLICATION_STATUSES, database)

    def append_entry(self, entry: StatusEntry) -> StatusEntry:
        """
        Append a status entry

        Raises:
            DuplicateKeyError: When another entry already holds this sequence
            PyMongoError: On any other database failure
        """
        doc = entry.model_dump(mode="json")
        doc["_id"] = entry.status_id

        self._statuses.insert_one(doc)
        logger.info(
            f"Appended status entry {entry.sequence} for application {entry.application_id}",
            extra={
                "application_id": entry.application_id,
                "status_id": entry.status_id,
                "stage_id": entry.stage_id,
                "workflow_id": entry.workflow_id
            }
        )
        return entry

    def get_latest(self, application_id: str) -> Optional[StatusEntry]:
        """Get the most recent status entry for an application"""
        doc = self._statuses.find_one(
            {"application_id": application_id},
            sort=[("sequence", DESCENDING)]
        )
        if doc:
            doc.pop("_id", None)
            return StatusEntry.model_validate(doc)
        return None

    def get_history(self, application_id: str, newest_first: bool = False) -> List[StatusEntry]:
        """Get all status entries for an application in sequence order"""
        direction = DESCENDING if newest_first else ASCENDING
        cursor = self._statuses.find({"application_id": application_id}).sort("sequence", direction)

        entries = []
        for doc in cursor:
            doc.pop("_id", None)
            entries.append(StatusEntry.model_validate(doc))
        return entries

    def has_history(self, application_id: str) -> bool:
        return self._statuses.count_documents({"application_id": application_id}, limit=1) > 0

    def has_entries_for_stages(self, stage_ids: List[str]) -> bool:
        """Whether any application has ever entered one of the stages"""
        if not stage_ids:
            return False
        return self._statuses.count_documents({"stage_id": {"$in": stage_ids}}, limit=1) > 0

    def has_entries_for_workflow(self, workflow_id: str) -> bool:
        return self._statuses.count_documents({"workflow_id": workflow_id}, limit=1) > 0

    def application_ids_at_stages(
        self,
        workflow_id: str,
        stage_ids: List[str],
        limit: int = 0,
        after: Optional[str] = None
    ) -> List[str]:
        """
        Applications whose latest entry sits at one of the given stages

        Args:
            workflow_id: Workflow the applications follow
            stage_ids: Candidate current stages
            limit: Maximum number of IDs to return (0 = no limit)
            after: Only IDs greater than this one (keyset paging)

        Returns:
            Application IDs in ascending order
        """
        if not stage_ids:
            return []

        match: Dict[str, Any] = {"workflow_id": workflow_id}
        if after is not None:
            match["application_id"] = {"$gt": after}

        pipeline: List[Dict[str, Any]] = [
            {"$match": match},
            {"$sort": {"application_id": ASCENDING, "sequence": DESCENDING}},
            {"$group": {"_id": "$application_id", "stage_id": {"$first": "$stage_id"}}},
            {"$match": {"stage_id": {"$in": stage_ids}}},
            {"$sort": {"_id": ASCENDING}},
        ]
        if limit:
            pipeline.append({"$limit": limit})

        return [doc["_id"] for doc in self._statuses.aggregate(pipeline)]
