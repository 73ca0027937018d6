# Intel Module - Threat Feed Data Models
#
# Defines the data flowing through the ingestion pipeline:
#   RawThreat         - one record as a feed provider reported it
#   Indicator         - canonical, deduplicated IOC row in the store
#   ThreatAnalysis    - pre-aggregated dashboard snapshot
#   IngestionFinished - outbound event consumed by the notification system
#   FetchResult / RunReport - per-provider and per-run outcomes

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class IndicatorType(str, Enum):
    """Shape of the primary indicator value."""

    DOMAIN = "domain"
    URL = "url"
    HASH = "hash"
    IP = "ip"


class ThreatType(str, Enum):
    """Threat category used for dashboards and balancing."""

    PHISHING = "phishing"
    MALWARE = "malware"
    SPAM = "spam"
    OTHER = "other"


class ThreatLevel(str, Enum):
    """Display/alerting bucket derived from confidence and threat type."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RunState(str, Enum):
    """Ingestion orchestrator states."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class UpsertOutcome(str, Enum):
    CREATED = "created"
    MERGED = "merged"


def merge_tags(existing: List[str], incoming: List[str]) -> List[str]:
    """Union of two tag lists, keeping first-seen order and dropping blanks."""
    merged: List[str] = []
    seen = set()
    for tag in list(existing) + list(incoming):
        if not isinstance(tag, str):
            continue
        tag = tag.strip()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        merged.append(tag)
    return merged


# ---------------------------------------------------------------------------
# Provider output
# ---------------------------------------------------------------------------


@dataclass
class RawThreat:
    """A threat record exactly as a feed provider mapped it.

    Feeds populate ``indicator``, ``url`` and ``domain`` inconsistently;
    the normalizer picks the primary value from them.
    """

    source: str
    indicator: Optional[str] = None
    url: Optional[str] = None
    domain: Optional[str] = None
    indicator_type: Optional[IndicatorType] = None
    threat_type: Optional[str] = None  # feed label, e.g. "malware_download"
    confidence: Optional[int] = None  # 0 - 100 as reported by the feed
    tags: List[str] = field(default_factory=list)
    description: Optional[str] = None
    malware_family: Optional[str] = None
    campaign_name: Optional[str] = None
    reported_first_seen: Optional[str] = None  # ISO 8601, feed's own clock
    raw_data: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Canonical record
# ---------------------------------------------------------------------------


@dataclass
class Indicator:
    """Canonical indicator of compromise, one row per normalized key."""

    indicator: str
    normalized_indicator: str
    indicator_type: IndicatorType
    source: str
    threat_type: ThreatType = ThreatType.OTHER
    confidence: int = 50
    is_active: bool = True
    first_seen: Optional[str] = None  # ISO 8601, set once by the store
    last_seen: Optional[str] = None  # ISO 8601, advanced on every sighting
    tags: List[str] = field(default_factory=list)
    description: Optional[str] = None
    url: Optional[str] = None
    domain: Optional[str] = None
    malware_family: Optional[str] = None
    campaign_name: Optional[str] = None
    reported_first_seen: Optional[str] = None  # feed's own first-seen stamp
    raw_data: Optional[Dict[str, Any]] = None  # provider-specific extras
    id: Optional[str] = None  # assigned by the store at first insert

    @property
    def threat_level(self) -> ThreatLevel:
        from .classifier import threat_level

        return threat_level(self.confidence, self.threat_type)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["indicator_type"] = self.indicator_type.value
        d["threat_type"] = self.threat_type.value
        d["threat_level"] = self.threat_level.value
        return d

    @classmethod
    def from_row(cls, row: Any) -> "Indicator":
        """Build from a ``sqlite3.Row`` of the ``indicators`` table."""
        tags = row["tags"]
        raw_data = row["raw_data"]
        return cls(
            id=row["id"],
            indicator=row["indicator"],
            normalized_indicator=row["normalized_indicator"],
            indicator_type=IndicatorType(row["indicator_type"]),
            threat_type=ThreatType(row["threat_type"]),
            source=row["source"],
            confidence=int(row["confidence"]),
            is_active=bool(row["is_active"]),
            first_seen=row["first_seen"],
            last_seen=row["last_seen"],
            tags=json.loads(tags) if tags else [],
            description=row["description"],
            url=row["url"],
            domain=row["domain"],
            malware_family=row["malware_family"],
            campaign_name=row["campaign_name"],
            reported_first_seen=row["reported_first_seen"],
            raw_data=json.loads(raw_data) if raw_data else None,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Indicator":
        return cls(
            id=data.get("id"),
            indicator=data["indicator"],
            normalized_indicator=data["normalized_indicator"],
            indicator_type=IndicatorType(data["indicator_type"]),
            threat_type=ThreatType(data.get("threat_type", ThreatType.OTHER.value)),
            source=data["source"],
            confidence=int(data.get("confidence", 50)),
            is_active=bool(data.get("is_active", True)),
            first_seen=data.get("first_seen"),
            last_seen=data.get("last_seen"),
            tags=list(data.get("tags") or []),
            description=data.get("description"),
            url=data.get("url"),
            domain=data.get("domain"),
            malware_family=data.get("malware_family"),
            campaign_name=data.get("campaign_name"),
            reported_first_seen=data.get("reported_first_seen"),
            raw_data=data.get("raw_data"),
        )


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


@dataclass
class TypeCount:
    type: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "count": self.count}


@dataclass
class TrendPoint:
    date: str  # YYYY-MM-DD
    type: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date, "type": self.type, "count": self.count}


@dataclass
class ThreatAnalysis:
    """Dashboard snapshot, recomputed from the store after every run."""

    total_threats: int = 0
    new_threats_today: int = 0
    active_sources: int = 0
    top_threat_types: List[TypeCount] = field(default_factory=list)
    recent_threats: List[Indicator] = field(default_factory=list)
    threat_trends: List[TrendPoint] = field(default_factory=list)
    computed_at: Optional[str] = None

    @classmethod
    def empty(cls) -> "ThreatAnalysis":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_threats": self.total_threats,
            "new_threats_today": self.new_threats_today,
            "active_sources": self.active_sources,
            "top_threat_types": [t.to_dict() for t in self.top_threat_types],
            "recent_threats": [i.to_dict() for i in self.recent_threats],
            "threat_trends": [t.to_dict() for t in self.threat_trends],
            "computed_at": self.computed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreatAnalysis":
        return cls(
            total_threats=int(data.get("total_threats", 0)),
            new_threats_today=int(data.get("new_threats_today", 0)),
            active_sources=int(data.get("active_sources", 0)),
            top_threat_types=[
                TypeCount(type=t["type"], count=int(t["count"]))
                for t in data.get("top_threat_types", [])
            ],
            recent_threats=[
                Indicator.from_dict(i) for i in data.get("recent_threats", [])
            ],
            threat_trends=[
                TrendPoint(date=t["date"], type=t["type"], count=int(t["count"]))
                for t in data.get("threat_trends", [])
            ],
            computed_at=data.get("computed_at"),
        )


# ---------------------------------------------------------------------------
# Run outcomes
# ---------------------------------------------------------------------------


@dataclass
class IngestionFinished:
    """Emitted once per completed run.  Counts and feed names only."""

    run_id: str
    new_count: int
    merged_count: int
    dropped_count: int
    sources: List[str]
    failures: Dict[str, str]
    finished_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FetchResult:
    """Outcome of a single provider fetch."""

    def __init__(self, provider_name: str):
        self.provider_name = provider_name
        self.records: List[RawThreat] = []
        self.error: Optional[str] = None
        self.duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider_name,
            "success": self.success,
            "records_count": len(self.records),
            "error": self.error,
            "duration_ms": round(self.duration_ms, 1),
        }


class RunReport:
    """Summary of one ingestion run."""

    def __init__(self, run_id: str, trigger: str = "manual", started: Optional[str] = None):
        self.run_id = run_id
        self.trigger = trigger
        self.state: RunState = RunState.RUNNING
        self.started = started or datetime.utcnow().isoformat()
        self.finished: Optional[str] = None
        self.fetch_results: List[FetchResult] = []
        self.total_fetched: int = 0
        self.created: int = 0
        self.merged: int = 0
        self.dropped: int = 0
        self.conflicts: int = 0
        self.analysis: Optional[ThreatAnalysis] = None
        self.error: Optional[str] = None

    @property
    def feeds_succeeded(self) -> int:
        return sum(1 for r in self.fetch_results if r.success)

    @property
    def feeds_failed(self) -> int:
        return sum(1 for r in self.fetch_results if not r.success)

    @property
    def sources(self) -> List[str]:
        return sorted(r.provider_name for r in self.fetch_results if r.success)

    @property
    def failures(self) -> Dict[str, str]:
        return {
            r.provider_name: r.error or ""
            for r in self.fetch_results
            if not r.success
        }

    @property
    def degraded_sources(self) -> List[str]:
        return sorted(self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "trigger": self.trigger,
            "state": self.state.value,
            "started": self.started,
            "finished": self.finished,
            "feeds_succeeded": self.feeds_succeeded,
            "feeds_failed": self.feeds_failed,
            "degraded_sources": self.degraded_sources,
            "total_fetched": self.total_fetched,
            "created": self.created,
            "merged": self.merged,
            "dropped": self.dropped,
            "conflicts": self.conflicts,
            "error": self.error,
            "fetch_results": [r.to_dict() for r in self.fetch_results],
        }
