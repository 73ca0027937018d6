# Intel Module - Threat Feed Ingestion
#
# Feed providers, normalization, classification, the deduplicating
# indicator store, the analysis aggregator and the ingestion orchestrator.

from .analysis import ThreatAnalyzer
from .classifier import Classification, Classifier, threat_level
from .exceptions import (
    AlreadyRunning,
    FeedUnavailable,
    IntelError,
    NormalizationFailure,
    RunCancelled,
    RunFailed,
    UpsertConflict,
)
from .http_client import FeedHttpClient
from .models import (
    FetchResult,
    Indicator,
    IndicatorType,
    IngestionFinished,
    RawThreat,
    RunReport,
    RunState,
    ThreatAnalysis,
    ThreatLevel,
    ThreatType,
    TrendPoint,
    TypeCount,
    UpsertOutcome,
)
from .normalizer import infer_indicator_type, normalize
from .openphish_provider import OpenPhishProvider
from .orchestrator import IngestionOrchestrator
from .otx_provider import OTXProvider
from .phishing_database_provider import DatabaseList, PhishingDatabaseProvider
from .provider import FeedProvider
from .store import IndicatorStore
from .threatfox_provider import ThreatFoxProvider
from .urlhaus_provider import URLhausProvider

__all__ = [
    # Models
    "RawThreat",
    "Indicator",
    "IndicatorType",
    "ThreatType",
    "ThreatLevel",
    "ThreatAnalysis",
    "TypeCount",
    "TrendPoint",
    "IngestionFinished",
    "FetchResult",
    "RunReport",
    "RunState",
    "UpsertOutcome",
    # Errors
    "IntelError",
    "FeedUnavailable",
    "NormalizationFailure",
    "UpsertConflict",
    "RunFailed",
    "RunCancelled",
    "AlreadyRunning",
    # Providers
    "FeedHttpClient",
    "FeedProvider",
    "OTXProvider",
    "URLhausProvider",
    "ThreatFoxProvider",
    "OpenPhishProvider",
    "PhishingDatabaseProvider",
    "DatabaseList",
    # Pipeline
    "normalize",
    "infer_indicator_type",
    "Classifier",
    "Classification",
    "threat_level",
    "IndicatorStore",
    "ThreatAnalyzer",
    "IngestionOrchestrator",
]
