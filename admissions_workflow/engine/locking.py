"""Application Locking - Serializes transitions per application"""
import os
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from ..domain.errors import TransitionLockTimeoutError
from ..repositories.lock_repo import ApplicationLockRepository
from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ApplicationLockManager:
    """
    Per-application mutual exclusion

    Two layers: an in-process lock per application ID for threads of this
    process, and a lease document in MongoDB for other processes. Waiting is
    bounded; callers for different applications never wait on each other.
    """

    def __init__(
        self,
        lock_repo: Optional[ApplicationLockRepository] = None,
        timeout_seconds: Optional[float] = None,
        lease_seconds: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None
    ):
        self._lock_repo = lock_repo or ApplicationLockRepository()
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.transition_lock_timeout_seconds
        self._lease = lease_seconds if lease_seconds is not None else settings.transition_lock_lease_seconds
        self._poll = poll_interval_seconds if poll_interval_seconds is not None else settings.lock_poll_interval_seconds

        # application_id -> [lock, number of threads using it]
        self._local_locks: Dict[str, List] = {}
        self._registry_lock = threading.Lock()
        self._owner = f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"

    @contextmanager
    def hold(self, application_id: str, timeout_seconds: Optional[float] = None) -> Iterator[None]:
        """
        Hold the application's lock for the duration of the block

        Raises:
            TransitionLockTimeoutError: If the lock is not acquired in time
        """
        timeout = self._timeout if timeout_seconds is None else timeout_seconds
        deadline = time.monotonic() + timeout

        local_lock = self._checkout(application_id)
        try:
            if not local_lock.acquire(timeout=max(timeout, 0)):
                raise self._timeout_error(application_id, timeout)
            try:
                lock_by = f"{self._owner}-{threading.get_ident()}"
                self._acquire_lease(application_id, lock_by, deadline, timeout)
                try:
                    yield
                finally:
                    self._lock_repo.release_lock(application_id, lock_by)
            finally:
                local_lock.release()
        finally:
            self._checkin(application_id)

    def _acquire_lease(self, application_id: str, lock_by: str, deadline: float, timeout: float) -> None:
        while not self._lock_repo.acquire_lock(application_id, lock_by, self._lease):
            if time.monotonic() >= deadline:
                raise self._timeout_error(application_id, timeout)
            time.sleep(self._poll)

    def _timeout_error(self, application_id: str, timeout: float) -> TransitionLockTimeoutError:
        logger.warning(
            f"Timed out after {timeout}s waiting for lock on application {application_id}",
            extra={"application_id": application_id}
        )
        return TransitionLockTimeoutError(
            f"Application {application_id} is being updated by another request. Please retry.",
            details={"application_id": application_id, "timeout_seconds": timeout}
        )

    def _checkout(self, application_id: str) -> threading.Lock:
        with self._registry_lock:
            entry = self._local_locks.get(application_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._local_locks[application_id] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, application_id: str) -> None:
        with self._registry_lock:
            entry = self._local_locks.get(application_id)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                del self._local_locks[application_id]

    def cleanup_stale_locks(self, max_lock_age_minutes: Optional[int] = None) -> int:
        """Remove long-expired lease documents"""
        minutes = max_lock_age_minutes if max_lock_age_minutes is not None else settings.stale_lock_cleanup_minutes
        return self._lock_repo.cleanup_stale_locks(minutes)
