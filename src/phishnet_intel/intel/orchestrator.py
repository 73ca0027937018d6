# Intel Module - Ingestion Orchestrator
#
# Coordinates one ingestion run across all registered feed providers:
#   - Guarded state machine: idle -> running -> completed | failed
#   - Fans providers out on a thread pool sized to the provider count
#   - Overall run deadline; providers still running count as "timeout"
#   - Normalize -> classify -> upsert every collected record
#   - Recomputes and persists the ThreatAnalysis snapshot
#   - Emits IngestionFinished to registered listeners
#   - Schedules periodic runs and the daily aging pass (APScheduler)
#   - Logs every run to the audit trail
#
# A run fails only when no provider returned usable data, no provider is
# configured, the operator cancelled it, or an unexpected error occurred.
# A failed run never replaces the previous snapshot.

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..core.audit_log import AuditLogger, EventSeverity, EventType, get_audit_logger
from .analysis import ThreatAnalyzer
from .classifier import Classifier
from .exceptions import (
    AlreadyRunning,
    FeedUnavailable,
    NormalizationFailure,
    RunCancelled,
    RunFailed,
    UpsertConflict,
)
from .models import (
    FetchResult,
    IngestionFinished,
    RunReport,
    RunState,
    UpsertOutcome,
)
from .normalizer import normalize
from .provider import FeedProvider
from .store import IndicatorStore, to_timestamp

logger = logging.getLogger(__name__)

DEFAULT_RUN_DEADLINE_SEC = 120.0
DEFAULT_INTERVAL_HOURS = 2.0
DEFAULT_RETENTION_DAYS = 30
RETENTION_HOUR_UTC = 3

INGESTION_JOB_ID = "threat_intel_ingestion"
RETENTION_JOB_ID = "threat_intel_retention"

# Upper bound on one wait slice while the fetch barrier is pending, so an
# operator cancel is noticed promptly.
_POLL_INTERVAL_SEC = 0.1

IngestionListener = Callable[[IngestionFinished], None]


class IngestionOrchestrator:
    """Runs, schedules and reports threat feed ingestion.

    Usage::

        orch = IngestionOrchestrator(store)
        orch.register(OpenPhishProvider())
        orch.register(URLhausProvider())
        orch.add_listener(notify)
        report = orch.run_now()   # blocking run
        orch.start()              # periodic runs + daily aging
        orch.stop()
    """

    def __init__(
        self,
        store: IndicatorStore,
        providers: Optional[List[FeedProvider]] = None,
        classifier: Optional[Classifier] = None,
        analyzer: Optional[ThreatAnalyzer] = None,
        run_deadline_seconds: float = DEFAULT_RUN_DEADLINE_SEC,
        interval_hours: float = DEFAULT_INTERVAL_HOURS,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._providers: List[FeedProvider] = list(providers or [])
        self._classifier = classifier or Classifier()
        self._analyzer = analyzer or ThreatAnalyzer(store)
        self.run_deadline_seconds = run_deadline_seconds
        self.interval_hours = interval_hours
        self.retention_days = retention_days
        self._clock = clock or store.clock
        self._audit = audit

        self._lock = threading.RLock()
        self._state = RunState.IDLE
        self._active_run_id: Optional[str] = None
        self._stop_event: Optional[threading.Event] = None
        self._cancel_requested: Optional[threading.Event] = None
        self._last_report: Optional[RunReport] = None
        self._listeners: List[IngestionListener] = []
        self._scheduler: Optional[BackgroundScheduler] = None
        self._background: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, provider: FeedProvider) -> None:
        """Register a feed provider."""
        with self._lock:
            self._providers.append(provider)

    @property
    def providers(self) -> List[FeedProvider]:
        with self._lock:
            return list(self._providers)

    def add_listener(self, listener: IngestionListener) -> None:
        """Register a callback receiving IngestionFinished after each completed run."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: IngestionListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def audit(self) -> AuditLogger:
        return self._audit or get_audit_logger()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    @property
    def active_run_id(self) -> Optional[str]:
        with self._lock:
            return self._active_run_id

    @property
    def last_report(self) -> Optional[RunReport]:
        with self._lock:
            return self._last_report

    def _begin_run(self, trigger: str) -> RunReport:
        with self._lock:
            if self._state == RunState.RUNNING:
                self.audit.log_event(
                    EventType.INGESTION_REJECTED,
                    EventSeverity.INFO,
                    "Ingestion trigger rejected: a run is already active",
                    details={"active_run_id": self._active_run_id, "trigger": trigger},
                )
                raise AlreadyRunning(f"run {self._active_run_id} is already active")
            run_id = uuid.uuid4().hex
            self._state = RunState.RUNNING
            self._active_run_id = run_id
            self._stop_event = threading.Event()
            self._cancel_requested = threading.Event()
            return RunReport(run_id, trigger=trigger, started=to_timestamp(self._clock()))

    def _finish(self, report: RunReport, state: RunState) -> None:
        report.state = state
        report.finished = to_timestamp(self._clock())
        with self._lock:
            self._state = state
            self._last_report = report
            self._active_run_id = None
            self._stop_event = None
            self._cancel_requested = None

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def run_now(self, trigger: str = "manual") -> RunReport:
        """Execute an ingestion run and wait for it.

        Returns:
            RunReport whose ``analysis`` is the newly persisted snapshot.

        Raises:
            AlreadyRunning: if another run is active.
            RunFailed: if the run ends failed (``RunCancelled`` when the
                operator cancelled it).
        """
        report = self._begin_run(trigger)
        return self._execute(report)

    def trigger(self, trigger: str = "manual") -> str:
        """Start a run on a background thread and return its run id.

        Raises:
            AlreadyRunning: if another run is active.
        """
        report = self._begin_run(trigger)
        thread = threading.Thread(
            target=self._execute_quietly,
            args=(report,),
            name=f"ingest-{report.run_id[:8]}",
            daemon=True,
        )
        self._background = thread
        thread.start()
        return report.run_id

    def wait_for_background(self, timeout: Optional[float] = None) -> bool:
        """Join the last fire-and-forget run.  True if it has finished."""
        thread = self._background
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def cancel(self) -> bool:
        """Abort the active run.  Returns False when no run is active.

        Providers stop at their next HTTP call or backoff wait, records
        already upserted stay, and the previous snapshot is kept.
        """
        with self._lock:
            if self._state != RunState.RUNNING or self._stop_event is None:
                return False
            logger.info("Cancellation requested for run %s", self._active_run_id)
            self._cancel_requested.set()
            self._stop_event.set()
            return True

    def _execute_quietly(self, report: RunReport) -> None:
        try:
            self._execute(report)
        except RunFailed as exc:
            logger.warning("Background run %s failed: %s", report.run_id, exc.reason)

    def _scheduled_run(self) -> None:
        try:
            self.run_now(trigger="scheduled")
        except AlreadyRunning:
            logger.info("Scheduled ingestion skipped: a run is already active")
        except RunFailed as exc:
            logger.warning("Scheduled ingestion failed: %s", exc.reason)

    # ------------------------------------------------------------------
    # Core run
    # ------------------------------------------------------------------

    def _execute(self, report: RunReport) -> RunReport:
        stop_event = self._stop_event
        cancel_requested = self._cancel_requested
        try:
            providers = self.providers
            if not providers:
                raise RunFailed("no providers configured", report)

            self.audit.log_event(
                EventType.INGESTION_STARTED,
                EventSeverity.INFO,
                f"Ingestion run started ({report.trigger})",
                details={
                    "run_id": report.run_id,
                    "providers": [p.name for p in providers],
                },
            )

            report.fetch_results = self._fetch_all(providers, stop_event, cancel_requested)
            self._audit_feed_failures(report)

            if cancel_requested.is_set():
                raise RunCancelled("cancelled", report)
            if report.feeds_succeeded == 0:
                raise RunFailed(
                    f"all {len(providers)} providers failed", report
                )

            self._ingest_records(report, cancel_requested)

            now = self._clock()
            analysis = self._analyzer.compute_analysis(now)
            self._store.save_analysis(analysis)
            self._store.record_daily_statistics(now.date(), now)
            report.analysis = analysis

        except RunFailed as exc:
            report.error = exc.reason
            self._finish(report, RunState.FAILED)
            self._log_failure(report, cancelled=isinstance(exc, RunCancelled))
            raise
        except Exception as exc:
            logger.exception("Ingestion run %s crashed", report.run_id)
            report.error = f"unexpected error: {exc}"
            self._finish(report, RunState.FAILED)
            self._log_failure(report, cancelled=False)
            raise RunFailed(report.error, report) from exc

        self._finish(report, RunState.COMPLETED)
        self._finalize(report)
        return report

    def _fetch_all(
        self,
        providers: List[FeedProvider],
        stop_event: threading.Event,
        cancel_requested: threading.Event,
    ) -> List[FetchResult]:
        """Run every provider in parallel until done, deadline or cancel."""
        results: List[FetchResult] = []
        pool = ThreadPoolExecutor(
            max_workers=len(providers), thread_name_prefix="feed"
        )
        future_to_provider: Dict[Future, FeedProvider] = {}
        try:
            for provider in providers:
                future = pool.submit(self._run_single_provider, provider, stop_event)
                future_to_provider[future] = provider

            deadline = time.monotonic() + self.run_deadline_seconds
            pending = set(future_to_provider)
            while pending and not cancel_requested.is_set():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                done, pending = wait(
                    pending,
                    timeout=min(remaining, _POLL_INTERVAL_SEC),
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    results.append(future.result())  # FetchResult (never raises)

            if pending:
                # Stragglers are told to stop and their output is discarded
                stop_event.set()
                reason = "cancelled" if cancel_requested.is_set() else "timeout"
                for future in pending:
                    provider = future_to_provider[future]
                    result = FetchResult(provider.name)
                    result.error = reason
                    result.duration_ms = self.run_deadline_seconds * 1000
                    results.append(result)
                    logger.warning("Provider %s did not finish: %s", provider.name, reason)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        return results

    def _run_single_provider(
        self, provider: FeedProvider, stop_event: threading.Event
    ) -> FetchResult:
        """Run one provider, catching any exception."""
        result = FetchResult(provider.name)
        start = datetime.utcnow()
        try:
            result.records = list(provider.fetch_threats(cancel_event=stop_event))
        except FeedUnavailable as exc:
            result.error = exc.reason
            logger.warning("Provider %s unavailable: %s", provider.name, exc.reason)
        except Exception as exc:
            result.error = f"{type(exc).__name__}: {exc}"
            logger.warning("Provider %s failed: %s", provider.name, exc)
        result.duration_ms = (datetime.utcnow() - start).total_seconds() * 1000
        return result

    def _ingest_records(self, report: RunReport, cancel_requested: threading.Event) -> None:
        """Normalize, classify and upsert every collected record."""
        for fetch_result in report.fetch_results:
            if not fetch_result.success:
                continue
            report.total_fetched += len(fetch_result.records)

            for raw in fetch_result.records:
                if cancel_requested.is_set():
                    raise RunCancelled("cancelled", report)
                try:
                    indicator = normalize(raw)
                except NormalizationFailure as exc:
                    report.dropped += 1
                    logger.debug("Dropped record from %s: %s", raw.source, exc.reason)
                    continue

                classification = self._classifier.classify(raw, raw.source)
                indicator.confidence = classification.confidence
                indicator.threat_type = classification.threat_type

                try:
                    outcome = self._store.upsert(indicator, now=self._clock())
                except UpsertConflict as exc:
                    report.conflicts += 1
                    report.dropped += 1
                    logger.warning("Dropped record after upsert conflicts: %s", exc)
                    continue

                if outcome == UpsertOutcome.CREATED:
                    report.created += 1
                else:
                    report.merged += 1

    # ------------------------------------------------------------------
    # Logging & listeners
    # ------------------------------------------------------------------

    def _audit_feed_failures(self, report: RunReport) -> None:
        for result in report.fetch_results:
            if result.success:
                continue
            self.audit.log_event(
                EventType.FEED_UNAVAILABLE,
                EventSeverity.INVESTIGATE,
                f"Feed {result.provider_name} unavailable: {result.error}",
                details={"run_id": report.run_id, "provider": result.provider_name},
            )

    def _log_failure(self, report: RunReport, cancelled: bool) -> None:
        logger.error("Ingestion run %s failed: %s", report.run_id, report.error)
        self.audit.log_event(
            EventType.INGESTION_CANCELLED if cancelled else EventType.INGESTION_FAILED,
            EventSeverity.INFO if cancelled else EventSeverity.ALERT,
            f"Ingestion run {'cancelled' if cancelled else 'failed'}: {report.error}",
            details={
                "run_id": report.run_id,
                "failures": report.failures,
                "created": report.created,
                "merged": report.merged,
            },
        )

    def _finalize(self, report: RunReport) -> None:
        """Log the completed run and notify listeners."""
        logger.info(
            "Ingestion complete: %d fetched, %d new, %d merged, %d dropped, "
            "%d/%d feeds ok",
            report.total_fetched,
            report.created,
            report.merged,
            report.dropped,
            report.feeds_succeeded,
            report.feeds_succeeded + report.feeds_failed,
        )
        self.audit.log_event(
            EventType.INGESTION_COMPLETED,
            EventSeverity.INVESTIGATE if report.feeds_failed else EventSeverity.INFO,
            f"Ingestion run completed: {report.created} new, {report.merged} merged",
            details={
                "run_id": report.run_id,
                "sources": report.sources,
                "degraded_sources": report.degraded_sources,
                "created": report.created,
                "merged": report.merged,
                "dropped": report.dropped,
            },
        )

        event = IngestionFinished(
            run_id=report.run_id,
            new_count=report.created,
            merged_count=report.merged,
            dropped_count=report.dropped,
            sources=report.sources,
            failures=report.failures,
            finished_at=report.finished,
        )
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as exc:
                logger.warning("IngestionFinished listener failed: %s", exc)

    # ------------------------------------------------------------------
    # Aging
    # ------------------------------------------------------------------

    def apply_retention(self, now: Optional[datetime] = None) -> int:
        """Deactivate indicators not seen within the retention window."""
        deactivated = self._store.deactivate_stale(self.retention_days, now=now)
        logger.info(
            "Retention applied: %d indicators older than %d days deactivated",
            deactivated, self.retention_days,
        )
        self.audit.log_event(
            EventType.RETENTION_APPLIED,
            EventSeverity.INFO,
            f"{deactivated} stale indicators deactivated",
            details={"deactivated": deactivated, "retention_days": self.retention_days},
        )
        return deactivated

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(
        self,
        interval_hours: Optional[float] = None,
        run_immediately: bool = False,
    ) -> None:
        """Start periodic ingestion and the daily aging job."""
        if self._scheduler is not None:
            return  # already running
        if interval_hours is not None:
            if interval_hours <= 0:
                raise ValueError("interval_hours must be > 0")
            self.interval_hours = interval_hours

        self._scheduler = BackgroundScheduler(daemon=True, timezone="UTC")
        job_kwargs: Dict[str, Any] = {}
        if run_immediately:
            job_kwargs["next_run_time"] = datetime.now(timezone.utc)
        self._scheduler.add_job(
            self._scheduled_run,
            trigger=IntervalTrigger(hours=self.interval_hours, timezone="UTC"),
            id=INGESTION_JOB_ID,
            name="Threat intel ingestion",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **job_kwargs,
        )
        self._scheduler.add_job(
            self.apply_retention,
            trigger=CronTrigger(hour=RETENTION_HOUR_UTC, minute=0, timezone="UTC"),
            id=RETENTION_JOB_ID,
            name="Threat intel aging",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "Ingestion scheduler started: every %.1fh, aging daily at %02d:00 UTC",
            self.interval_hours, RETENTION_HOUR_UTC,
        )
        self.audit.log_event(
            EventType.SYSTEM_START,
            EventSeverity.INFO,
            "Threat intel scheduler started",
            details={"interval_hours": self.interval_hours},
        )

    def stop(self) -> None:
        """Stop the background scheduler.  An active run is left to finish."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Ingestion scheduler stopped")
            self.audit.log_event(
                EventType.SYSTEM_STOP,
                EventSeverity.INFO,
                "Threat intel scheduler stopped",
            )

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def next_run_time(self) -> Optional[str]:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(INGESTION_JOB_ID)
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.isoformat()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Return orchestrator status summary."""
        with self._lock:
            state = self._state
            run_id = self._active_run_id
            last = self._last_report
            provider_stats = [p.get_stats() for p in self._providers]
        return {
            "state": state.value,
            "active_run_id": run_id,
            "scheduler_running": self.is_running,
            "interval_hours": self.interval_hours,
            "next_run_time": self.next_run_time(),
            "run_deadline_seconds": self.run_deadline_seconds,
            "retention_days": self.retention_days,
            "providers": [s["name"] for s in provider_stats],
            "provider_stats": provider_stats,
            "last_report": last.to_dict() if last else None,
            "checked_at": to_timestamp(self._clock()),
        }
