"""Automatic Transition Scanner - Fires automatic transitions when facts allow

Runs on an interval (APScheduler) and on demand when the host reports that
an application's facts changed. Safe to run on several servers at once: every
hop goes through the engine, which serializes per application.
"""
from concurrent.futures import ThreadPoolExecutor
from typing import Iterator, List, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel
from pymongo.errors import PyMongoError

from ..config.settings import settings
from ..domain.enums import ScanOutcome
from ..domain.errors import (
    DomainError, InvalidTransitionError, StageRequirementsNotMetError,
    WorkflowNotFoundError,
)
from ..domain.models import StatusEntry
from ..engine.engine import WorkflowEngine
from ..engine.locking import ApplicationLockManager
from ..repositories.status_repo import ApplicationStatusRepository
from ..services.workflow_service import WorkflowService
from ..utils.idgen import generate_correlation_id
from ..utils.logger import get_logger, set_correlation_id
from ..utils.time import utc_now

logger = get_logger(__name__)


class ScanReport(BaseModel):
    """Counts from one scan pass"""
    correlation_id: str
    examined: int = 0
    advanced: int = 0
    not_ready: int = 0
    conflicts: int = 0
    failed: int = 0
    duration_ms: int = 0

    def record(self, outcome: ScanOutcome) -> None:
        self.examined += 1
        if outcome == ScanOutcome.ADVANCED:
            self.advanced += 1
        elif outcome == ScanOutcome.NOT_READY:
            self.not_ready += 1
        elif outcome == ScanOutcome.CONFLICT:
            self.conflicts += 1
        else:
            self.failed += 1


class AutoTransitionScanner:
    """
    Background driver for automatic transitions

    Responsibilities:
    - Find applications waiting at stages with automatic exits
    - Execute the first satisfied automatic transition, following chains
    - Clean up expired transition lock leases
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        workflow_service: Optional[WorkflowService] = None,
        status_repo: Optional[ApplicationStatusRepository] = None,
        lock_manager: Optional[ApplicationLockManager] = None,
        max_workers: Optional[int] = None,
        max_chain: Optional[int] = None,
        batch_size: Optional[int] = None
    ):
        self.engine = engine
        self.workflow_service = workflow_service or engine.workflow_service
        self.status_repo = status_repo or engine.status_repo
        self.lock_manager = lock_manager or engine.lock_manager
        self.max_workers = max_workers or settings.scanner_max_workers
        self.max_chain = max_chain or settings.auto_transition_max_chain
        self.batch_size = batch_size if batch_size is not None else settings.scanner_batch_size

        self.scheduler: Optional[BackgroundScheduler] = None
        self._is_running = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start interval jobs"""
        if self._is_running:
            logger.warning("Auto transition scanner already running")
            return

        self.scheduler = BackgroundScheduler()

        self.scheduler.add_job(
            self.scan_once,
            trigger=IntervalTrigger(seconds=settings.scanner_interval_seconds),
            id="scan_automatic_transitions",
            name="Scan automatic transitions",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        # Clean up expired lock leases every 5 minutes (crash recovery)
        self.scheduler.add_job(
            self._cleanup_stale_locks,
            trigger=IntervalTrigger(minutes=5),
            id="cleanup_stale_transition_locks",
            name="Cleanup stale transition locks",
            replace_existing=True
        )

        self.scheduler.start()
        self._is_running = True
        logger.info(
            "Auto transition scanner started",
            extra={"action": "scanner_start"}
        )

    def stop(self) -> None:
        """Stop interval jobs"""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            self._is_running = False
            logger.info("Auto transition scanner stopped")

    @property
    def is_running(self) -> bool:
        return self._is_running

    # =========================================================================
    # Scanning
    # =========================================================================

    def scan_once(self) -> ScanReport:
        """
        One pass over every workflow with automatic transitions

        Candidates are read in pages of batch_size application IDs, so a pass
        reaches every waiting application however many sit ahead of it.

        Returns:
            ScanReport with per-outcome counts
        """
        correlation_id = generate_correlation_id()
        set_correlation_id(correlation_id)
        started = utc_now()
        report = ScanReport(correlation_id=correlation_id)

        def run(application_id: str) -> ScanOutcome:
            set_correlation_id(correlation_id)
            return self._process(application_id)[0]

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="auto-transition") as pool:
            for page in self._candidate_pages():
                logger.debug(f"Scanning {len(page)} application(s) for automatic transitions")
                for outcome in pool.map(run, page):
                    report.record(outcome)

        report.duration_ms = int((utc_now() - started).total_seconds() * 1000)
        if report.advanced or report.failed:
            logger.info(
                f"Scan complete: {report.examined} examined, {report.advanced} advanced, "
                f"{report.not_ready} not ready, {report.conflicts} conflicts, {report.failed} failed"
            )
        return report

    def _candidate_pages(self) -> Iterator[List[str]]:
        """Pages of applications whose current stage has an automatic exit"""
        for workflow_id in self.workflow_service.repo.workflow_ids_with_automatic_transitions():
            try:
                graph = self.workflow_service.get_stage_graph(workflow_id)
            except WorkflowNotFoundError:
                # Deleted between the distinct query and now
                continue

            stage_ids = graph.stages_with_automatic_exits()
            last_seen: Optional[str] = None
            while True:
                page = self.status_repo.application_ids_at_stages(
                    workflow_id, stage_ids, limit=self.batch_size, after=last_seen
                )
                if page:
                    yield page
                if not self.batch_size or len(page) < self.batch_size:
                    break
                last_seen = page[-1]

    def process_application(self, application_id: str) -> List[StatusEntry]:
        """
        Follow satisfied automatic transitions from the current stage

        Returns:
            Status entries appended, oldest first (empty when nothing fired)
        """
        return self._process(application_id)[1]

    def on_facts_changed(self, application_id: str) -> List[StatusEntry]:
        """Entry point for hosts reporting a verified document, paid fee, etc."""
        logger.debug(
            f"Facts changed for application {application_id}",
            extra={"application_id": application_id}
        )
        return self.process_application(application_id)

    def _process(self, application_id: str) -> Tuple[ScanOutcome, List[StatusEntry]]:
        entries: List[StatusEntry] = []

        try:
            for _ in range(self.max_chain):
                entry = self._advance_once(application_id)
                if entry is None:
                    break
                entries.append(entry)
            else:
                logger.warning(
                    f"Stopped automatic chain for application {application_id} after {self.max_chain} hops",
                    extra={"application_id": application_id}
                )
        except StageRequirementsNotMetError:
            # Facts changed between evaluation and execution
            pass
        except InvalidTransitionError as e:
            logger.debug(
                f"Skipping application {application_id}: {e.message}",
                extra={"application_id": application_id, "error_code": e.error_code}
            )
            if not entries:
                return ScanOutcome.CONFLICT, entries
        except (DomainError, PyMongoError) as e:
            logger.error(
                f"Automatic transition failed for application {application_id}: {e}",
                exc_info=True,
                extra={"application_id": application_id}
            )
            if not entries:
                return ScanOutcome.FAILED, entries

        return (ScanOutcome.ADVANCED if entries else ScanOutcome.NOT_READY), entries

    def _advance_once(self, application_id: str) -> Optional[StatusEntry]:
        """Execute the first satisfied automatic transition, if any"""
        status = self.status_repo.get_latest(application_id)
        if status is None:
            return None

        graph = self.workflow_service.get_stage_graph(status.workflow_id)
        candidates = graph.automatic_outgoing(status.stage_id)
        if not candidates:
            return None

        facts = self.engine.application_gateway.get_fact_snapshot(application_id)
        for transition in candidates:
            if self.engine.condition_evaluator.evaluate(transition.conditions, facts.facts):
                return self.engine.execute_transition(
                    application_id,
                    transition.transition_id,
                    actor=None,
                    expected_status_id=status.status_id
                )
        return None

    def _cleanup_stale_locks(self) -> None:
        """Remove expired lock leases left by crashed processes"""
        try:
            cleaned = self.lock_manager.cleanup_stale_locks()
            if cleaned:
                logger.info(f"Cleaned up {cleaned} stale transition lock(s)")
        except PyMongoError as e:
            logger.error(f"Error cleaning up stale locks: {e}")
