"""Application Lock Repository - Lease locks serializing transitions per application"""
from datetime import timedelta
from typing import Optional
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from .mongo_client import get_collection, APPLICATION_LOCKS
from ..utils.logger import get_logger
from ..utils.time import utc_now, ensure_utc

logger = get_logger(__name__)


class ApplicationLockRepository:
    """
    Repository for per-application lease locks

    One document per application, keyed by application ID. A lock is free when
    locked_until is null or in the past, so a crashed holder blocks others for
    at most one lease.
    """

    def __init__(self, database: Optional[Database] = None):
        self._locks: Collection = get_collection(APPLICATION_LOCKS, database)

    def acquire_lock(
        self,
        application_id: str,
        lock_by: str,
        lock_duration_seconds: int = 30
    ) -> bool:
        """
        Try to acquire the lease on an application using an atomic upsert.

        Args:
            application_id: The application to lock
            lock_by: Unique identifier for this locker (e.g., "host-pid-uuid")
            lock_duration_seconds: How long to hold the lease

        Returns:
            True if lock acquired, False if another holder has a live lease

        Raises:
            PyMongoError: On database failure
        """
        now = utc_now()
        lock_until = now + timedelta(seconds=lock_duration_seconds)

        try:
            self._locks.find_one_and_update(
                {
                    "_id": application_id,
                    "$or": [
                        {"locked_until": {"$lte": now}},
                        {"locked_until": None}
                    ]
                },
                {
                    "$set": {
                        "application_id": application_id,
                        "locked_until": lock_until,
                        "locked_by": lock_by,
                        "lock_acquired_at": now
                    }
                },
                upsert=True
            )
        except DuplicateKeyError:
            # Document exists and its lease is still live
            logger.debug(
                f"Could not acquire lock on application {application_id} - already locked",
                extra={"application_id": application_id}
            )
            return False

        logger.debug(
            f"Lock acquired on application {application_id}",
            extra={"application_id": application_id}
        )
        return True

    def release_lock(self, application_id: str, lock_by: Optional[str] = None) -> bool:
        """
        Release the lease on an application.

        Args:
            application_id: The application to unlock
            lock_by: Optional - only release if held by this locker

        Returns:
            True if lock released, False otherwise
        """
        query = {"_id": application_id}
        if lock_by:
            query["locked_by"] = lock_by

        try:
            result = self._locks.update_one(
                query,
                {
                    "$set": {"locked_until": None, "locked_by": None},
                    "$unset": {"lock_acquired_at": ""}
                }
            )
        except PyMongoError as e:
            # Lease expiry frees the lock eventually
            logger.error(
                f"Database error releasing lock on application {application_id}: {e}",
                extra={"application_id": application_id}
            )
            return False

        return result.modified_count > 0

    def is_locked(self, application_id: str) -> bool:
        doc = self._locks.find_one({"_id": application_id})
        if not doc or doc.get("locked_until") is None:
            return False
        return ensure_utc(doc["locked_until"]) > utc_now()

    def cleanup_stale_locks(self, max_lock_age_minutes: int = 10) -> int:
        """
        Clean up locks whose lease expired long ago.

        Args:
            max_lock_age_minutes: Consider locks expired for longer than this as stale

        Returns:
            Number of stale locks cleaned up
        """
        cutoff = utc_now() - timedelta(minutes=max_lock_age_minutes)

        try:
            result = self._locks.delete_many({"locked_until": {"$lte": cutoff}})
        except PyMongoError as e:
            logger.error(f"Error cleaning up stale locks: {e}")
            return 0

        if result.deleted_count > 0:
            logger.warning(f"Cleaned up {result.deleted_count} stale application locks")
        return result.deleted_count
