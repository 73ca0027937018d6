# Threat Intelligence Service Facade
#
# Wires settings -> store -> providers -> classifier -> analyzer ->
# orchestrator and exposes the query and trigger surface used by the
# HTTP router, the CLI and the notification system.

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .core.audit_log import configure_audit_logger
from .core.config import IntelSettings, load_settings
from .intel.analysis import ThreatAnalyzer
from .intel.classifier import Classifier
from .intel.exceptions import RunFailed
from .intel.models import Indicator, ThreatAnalysis, ThreatType
from .intel.openphish_provider import OpenPhishProvider
from .intel.orchestrator import IngestionListener, IngestionOrchestrator
from .intel.otx_provider import OTXProvider
from .intel.phishing_database_provider import PhishingDatabaseProvider
from .intel.provider import FeedProvider
from .intel.store import IndicatorStore
from .intel.threatfox_provider import ThreatFoxProvider
from .intel.urlhaus_provider import URLhausProvider

logger = logging.getLogger(__name__)

MIN_SEARCH_LENGTH = 3


def parse_category(category: Union[str, ThreatType, None]) -> Optional[ThreatType]:
    """``"phishing"`` -> ThreatType.PHISHING; empty -> None.

    Raises:
        ValueError: for an unknown category.
    """
    if category is None or isinstance(category, ThreatType):
        return category
    category = category.strip().lower()
    if not category:
        return None
    try:
        return ThreatType(category)
    except ValueError:
        valid = ", ".join(t.value for t in ThreatType)
        raise ValueError(f"unknown category {category!r}; expected one of {valid}") from None


def build_providers(settings: IntelSettings) -> List[FeedProvider]:
    """Instantiate and configure every enabled feed provider."""
    timeout = settings.http_timeout_seconds
    cap = settings.max_records_per_feed
    providers: List[FeedProvider] = []

    if settings.feed_enabled("alienvault-otx"):
        otx = OTXProvider()
        otx.configure(api_key=settings.otx_api_key, max_records=cap, timeout=timeout)
        providers.append(otx)
    if settings.feed_enabled("abuse.ch-urlhaus"):
        urlhaus = URLhausProvider()
        urlhaus.configure(max_records=cap, timeout=timeout)
        providers.append(urlhaus)
    if settings.feed_enabled("abuse.ch-threatfox"):
        threatfox = ThreatFoxProvider()
        threatfox.configure(
            api_key=settings.threatfox_api_key,
            max_records=min(cap, 500),
            timeout=timeout,
        )
        providers.append(threatfox)
    if settings.feed_enabled("openphish"):
        openphish = OpenPhishProvider()
        openphish.configure(max_records=min(cap, 200), timeout=timeout)
        providers.append(openphish)
    if settings.feed_enabled("phishing-database"):
        phishing_db = PhishingDatabaseProvider()
        phishing_db.configure(max_records=cap, timeout=timeout)
        providers.append(phishing_db)

    return providers


class ThreatIntelService:
    """Query and trigger surface over the ingestion engine.

    Usage::

        service = ThreatIntelService.from_settings(load_settings())
        service.start(run_immediately=True)
        analysis = service.get_threat_analysis()
    """

    def __init__(
        self,
        store: IndicatorStore,
        orchestrator: IngestionOrchestrator,
        analyzer: Optional[ThreatAnalyzer] = None,
        settings: Optional[IntelSettings] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.analyzer = analyzer or ThreatAnalyzer(store)
        self.settings = settings or IntelSettings()

    @classmethod
    def from_settings(
        cls,
        settings: Optional[IntelSettings] = None,
        providers: Optional[List[FeedProvider]] = None,
    ) -> "ThreatIntelService":
        """Build the full engine from settings.

        Args:
            settings: Engine configuration (``load_settings()`` when None).
            providers: Explicit provider list instead of the configured feeds.
        """
        settings = settings or load_settings()
        configure_audit_logger(Path(settings.audit_dir))

        store = IndicatorStore(settings.db_path)
        analyzer = ThreatAnalyzer(
            store,
            recent_limit=settings.recent_limit,
            top_types_limit=settings.top_types_limit,
        )
        orchestrator = IngestionOrchestrator(
            store,
            providers=providers if providers is not None else build_providers(settings),
            classifier=Classifier(settings.source_reputation),
            analyzer=analyzer,
            run_deadline_seconds=settings.run_deadline_seconds,
            interval_hours=settings.ingest_interval_hours,
            retention_days=settings.retention_days,
        )
        logger.info(
            "Threat intel service ready: %d providers, db=%s",
            len(orchestrator.providers), settings.db_path,
        )
        return cls(store, orchestrator, analyzer, settings)

    # ------------------------------------------------------------------
    # Query surface
    # ------------------------------------------------------------------

    def get_threat_analysis(self) -> ThreatAnalysis:
        """The persisted snapshot, or an empty analysis before the first run."""
        return self.store.load_analysis() or ThreatAnalysis.empty()

    def get_recent_threats(
        self, limit: int = 50, category: Union[str, ThreatType, None] = None
    ) -> List[Indicator]:
        return self.analyzer.recent_threats(limit, category=parse_category(category))

    def search_threats(self, query: str, limit: int = 20) -> List[Indicator]:
        """Raises ValueError when ``query`` is shorter than three characters."""
        query = (query or "").strip()
        if len(query) < MIN_SEARCH_LENGTH:
            raise ValueError(
                f"search query must be at least {MIN_SEARCH_LENGTH} characters"
            )
        return self.store.search(query, limit)

    # ------------------------------------------------------------------
    # Trigger surface
    # ------------------------------------------------------------------

    def trigger_ingestion(self) -> str:
        """Start a background run and return its run id (raises AlreadyRunning)."""
        return self.orchestrator.trigger()

    def ingest_now(self) -> ThreatAnalysis:
        """Run ingestion to completion and return the new snapshot.

        Raises:
            AlreadyRunning: if a run is active.
            RunFailed: if the run fails.
        """
        report = self.orchestrator.run_now()
        if report.analysis is None:
            raise RunFailed("run completed without an analysis", report)
        return report.analysis

    def cancel_ingestion(self) -> bool:
        return self.orchestrator.cancel()

    def apply_retention(self) -> int:
        return self.orchestrator.apply_retention()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def add_listener(self, listener: IngestionListener) -> None:
        self.orchestrator.add_listener(listener)

    def start(self, interval_hours: Optional[float] = None, run_immediately: bool = False) -> None:
        self.orchestrator.start(interval_hours=interval_hours, run_immediately=run_immediately)

    def stop(self) -> None:
        self.orchestrator.stop()

    def status(self) -> Dict[str, Any]:
        status = self.orchestrator.status()
        status["store"] = self.store.stats()
        return status

    def close(self) -> None:
        self.stop()
        self.store.close()
