"""
Sync orchestration for the Ticket Reconciler.

Wires adapters, categorization, linkage and reconciliation together into
sync jobs. A job is the error containment boundary: whatever goes wrong
inside one is turned into a human-readable job status message and never
escapes to the caller or to other jobs.
"""

import logging
import threading
import time
from typing import Callable, Optional

import httpx

from .adapters import (
    HelpdeskClient,
    ServiceDeskClient,
    SourceError,
    TrackerClient,
)
from .categorization import Categorizer
from .config import AppConfig, CategorizationSettings, ConfigurationError
from .escalations import EscalationDeriver
from .jobs import JobRegistry
from .linkage import (
    LinkageContext,
    LinkageResolver,
    custom_field_strategy,
    text_strategy,
)
from .models import (
    JobState,
    NormalizedRecord,
    OrphanSyncResult,
    Source,
    SprintBoardTicket,
    SyncResult,
    utc_now,
)
from .orphans import OrphanReconciler
from .reconciliation import ReconciliationEngine
from .store import Store, utc_start_of_year


logger = logging.getLogger(__name__)


class SyncError(Exception):
    """A sync job could not finish."""
    pass


class SyncCancelled(SyncError):
    """A sync job was cancelled between records."""
    pass


KIND_ALL = "all"
KIND_ORPHANS = "orphans"
KIND_ESCALATIONS = "escalations"
KIND_SPRINT_BOARD = "sprint_board"

SOURCE_KINDS = {source.value: source for source in Source}

# Order of the recurring pipeline
PERIODIC_KINDS = [
    Source.SERVICE_DESK.value,
    Source.HELPDESK.value,
    Source.TRACKER.value,
    KIND_ORPHANS,
    KIND_ESCALATIONS,
]

SYNC_KINDS = [*PERIODIC_KINDS, KIND_SPRINT_BOARD, KIND_ALL]

# The main sync only uses the linkage strategies that need no extra API calls
INLINE_LINKAGE_STRATEGIES = [custom_field_strategy, text_strategy]


ProgressFn = Callable[[float, str], None]


class SourceClients:
    """Builds (unopened) source clients from configuration."""

    def __init__(
        self,
        config: AppConfig,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._config = config
        self._transport = transport
        self._sleep = sleep

    def helpdesk(self) -> HelpdeskClient:
        return HelpdeskClient(
            self._config.helpdesk, self._config.http, transport=self._transport, sleep=self._sleep
        )

    def service_desk(self) -> ServiceDeskClient:
        return ServiceDeskClient(
            self._config.service_desk, self._config.http, transport=self._transport, sleep=self._sleep
        )

    def tracker(self) -> TrackerClient:
        return TrackerClient(
            self._config.tracker, self._config.http, transport=self._transport, sleep=self._sleep
        )

    def for_source(self, source: Source):
        return {
            Source.HELPDESK: self.helpdesk,
            Source.SERVICE_DESK: self.service_desk,
            Source.TRACKER: self.tracker,
        }[source]()


class SyncService:
    """
    Runs sync jobs of every kind and reports them to the job registry.
    """

    def __init__(
        self,
        config: AppConfig,
        store: Store,
        settings: CategorizationSettings,
        registry: Optional[JobRegistry] = None,
        clients: Optional[SourceClients] = None,
    ):
        """
        Initialize the service.

        Args:
            config: Application configuration.
            store: Canonical store.
            settings: Categorization and linkage tables.
            registry: Job registry; a private one is created if omitted.
            clients: Source client factory; built from ``config`` if omitted.
        """
        self._config = config
        self._store = store
        self._settings = settings
        self._registry = registry or JobRegistry()
        self._clients = clients or SourceClients(config)
        self._engine = ReconciliationEngine(store, Categorizer(settings))

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    # -------------------------------------------------------------------------
    # Job wrapper
    # -------------------------------------------------------------------------

    def run(self, kind: str, cancel: Optional[threading.Event] = None) -> str:
        """Start a job of ``kind`` and run it to completion on this thread."""
        job_id = self._registry.start_job(kind)
        self.execute(job_id, kind, cancel)
        return job_id

    def execute(self, job_id: str, kind: str, cancel: Optional[threading.Event] = None) -> None:
        """
        Run an already registered job, recording its outcome.

        Never raises; failures end up in the job status message.
        """
        cancel = cancel or threading.Event()

        def progress(percent: float, message: str) -> None:
            if cancel.is_set():
                raise SyncCancelled(f"{kind} sync cancelled")
            self._registry.update_status(job_id, JobState.RUNNING, message, percent)

        try:
            if kind not in SYNC_KINDS:
                raise SyncError(f"Unknown sync kind '{kind}'")
            message = self._dispatch(kind, progress)
        except SyncCancelled as e:
            self._registry.update_status(job_id, JobState.FAILED, f"Cancelled: {e}")
        except ConfigurationError as e:
            self._registry.update_status(job_id, JobState.FAILED, f"Configuration error: {e}")
        except SourceError as e:
            self._registry.update_status(job_id, JobState.FAILED, f"Source error during {kind} sync: {e}")
        except SyncError as e:
            self._registry.update_status(job_id, JobState.FAILED, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in {kind} job {job_id}")
            self._registry.update_status(job_id, JobState.FAILED, f"Unexpected error: {e}")
        else:
            self._registry.update_status(job_id, JobState.COMPLETED, message)

    def _dispatch(self, kind: str, progress: ProgressFn) -> str:
        if kind == KIND_ALL:
            return self.sync_all(progress)
        if kind in SOURCE_KINDS:
            result = self.sync_source(SOURCE_KINDS[kind], progress)
            return (
                f"{result.reconciled} of {result.fetched} {kind} tickets reconciled, "
                f"{result.failed} failed, {result.movements} movements"
            )
        if kind == KIND_ORPHANS:
            orphans = self.sync_orphans(progress)
            return (
                f"{orphans.processed} L4 items processed, {orphans.linked} linked, "
                f"{orphans.closed} closed, {orphans.failed} failed"
            )
        if kind == KIND_ESCALATIONS:
            return f"{self.derive_escalations(progress)} new escalations"
        if kind == KIND_SPRINT_BOARD:
            return f"{self.sync_sprint_boards(progress)} sprint board tickets stored"
        raise SyncError(f"Unknown sync kind '{kind}'")

    # -------------------------------------------------------------------------
    # Individual kinds
    # -------------------------------------------------------------------------

    def _require(self, source: Source) -> None:
        if not self._config.source_enabled(source):
            raise ConfigurationError(f"{source.value} sync is disabled")
        errors = self._config.source_errors(source)
        if errors:
            raise ConfigurationError("; ".join(errors))

    def _tracker_available(self) -> bool:
        return self._config.source_enabled(Source.TRACKER) and not self._config.source_errors(Source.TRACKER)

    def sync_source(self, source: Source, progress: Optional[ProgressFn] = None) -> SyncResult:
        """
        Fetch a source's recently updated tickets and reconcile them.

        The window starts at the newest updated_at already stored for the
        source, or at the start of the year on a first run.

        Raises:
            ConfigurationError: If the source is disabled or misconfigured.
            SourceError: If fetching fails after retries.
        """
        self._require(source)
        progress = progress or (lambda percent, message: None)

        since = self._store.latest_updated_at(source) or utc_start_of_year()
        progress(0.0, f"Fetching {source.value} tickets updated since {since:%Y-%m-%d %H:%M}")

        with self._clients.for_source(source) as client:
            records = client.fetch_updated_since(since)

        result = SyncResult(source=source.value, fetched=len(records))
        movements_before = self._store.count_movements()

        def on_progress(done: int, total: int) -> None:
            progress(done / total * 100 if total else 100.0, f"Reconciled {done}/{total} {source.value} tickets")

        if source is Source.SERVICE_DESK and self._tracker_available():
            with self._clients.tracker() as tracker:
                resolver = LinkageResolver(self._settings, tracker, strategies=INLINE_LINKAGE_STRATEGIES)

                def linkage(record: NormalizedRecord) -> Optional[str]:
                    found = resolver.resolve(LinkageContext(
                        external_id=record.external_id,
                        title=record.title,
                        description=record.description,
                        custom_fields=record.raw_custom_fields,
                    ))
                    return found.key if found else None

                reconciled, failed = self._engine.reconcile_batch(
                    source, records, linkage=linkage, on_progress=on_progress
                )
        else:
            reconciled, failed = self._engine.reconcile_batch(source, records, on_progress=on_progress)

        result.reconciled = len(reconciled)
        result.failed = failed
        result.movements = self._store.count_movements() - movements_before
        return result

    def sync_orphans(self, progress: Optional[ProgressFn] = None) -> OrphanSyncResult:
        """
        Sweep the awaiting-engineering queue into the orphan table.

        Runs without the tracker when it is not configured; linkage then
        falls back to project names.
        """
        self._require(Source.SERVICE_DESK)
        progress = progress or (lambda percent, message: None)
        progress(0.0, "Collecting L4 items")

        def on_progress(done: int, total: int) -> None:
            progress(done / total * 100 if total else 100.0, f"Processed {done}/{total} L4 items")

        with self._clients.service_desk() as service_desk:
            if self._tracker_available():
                with self._clients.tracker() as tracker:
                    resolver = LinkageResolver(self._settings, tracker)
                    return OrphanReconciler(
                        self._store, self._settings, service_desk, resolver
                    ).run(on_progress)
            logger.warning("Tracker not configured, L4 linkage limited to project names")
            return OrphanReconciler(self._store, self._settings, service_desk).run(on_progress)

    def derive_escalations(self, progress: Optional[ProgressFn] = None) -> int:
        if progress:
            progress(0.0, "Deriving escalations")
        return EscalationDeriver(self._store, self._settings).derive()

    def sync_sprint_boards(self, progress: Optional[ProgressFn] = None) -> int:
        """
        Refresh every configured team's sprint board from the tracker.

        Raises:
            ConfigurationError: If the tracker is disabled or misconfigured.
        """
        self._require(Source.TRACKER)
        progress = progress or (lambda percent, message: None)
        boards = self._settings.sprint_boards
        if not boards:
            logger.info("No sprint boards configured")
            return 0

        stored = 0
        with self._clients.tracker() as tracker:
            for i, (team, project_key) in enumerate(boards.items()):
                progress(i / len(boards) * 100, f"Refreshing sprint board for {team}")
                now = utc_now()
                tickets = [
                    SprintBoardTicket(
                        team=team,
                        tracker_key=issue.key,
                        title=issue.summary,
                        status=issue.status,
                        assigned_to=issue.assignee,
                        board_type="scrum",
                        updated_at=now,
                    )
                    for issue in tracker.active_sprint(project_key)
                ]
                stored += self._store.replace_sprint_board(team, tickets)
                logger.info(f"Sprint board for {team} ({project_key}): {len(tickets)} tickets")
        return stored

    def sync_all(self, progress: Optional[ProgressFn] = None) -> str:
        """
        Run the recurring pipeline.

        Disabled sources are skipped. A failing step is logged and the
        pipeline moves on; only cancellation stops it.
        """
        progress = progress or (lambda percent, message: None)
        steps = len(PERIODIC_KINDS)
        outcomes = []

        for index, kind in enumerate(PERIODIC_KINDS):
            def step_progress(percent: float, message: str, index=index) -> None:
                progress((index + percent / 100) / steps * 100, message)

            source = SOURCE_KINDS.get(kind)
            if source is not None and not self._config.source_enabled(source):
                outcomes.append(f"{kind}: disabled")
                continue
            if kind == KIND_ORPHANS and not self._config.source_enabled(Source.SERVICE_DESK):
                outcomes.append(f"{kind}: disabled")
                continue

            try:
                outcomes.append(f"{kind}: {self._dispatch(kind, step_progress)}")
            except SyncCancelled:
                raise
            except (ConfigurationError, SourceError, SyncError) as e:
                logger.error(f"{kind} step failed: {e}")
                outcomes.append(f"{kind}: failed ({e})")

        return "; ".join(outcomes)
