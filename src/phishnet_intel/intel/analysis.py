# Intel Module - Threat Analysis Aggregator
#
# Computes the ThreatAnalysis dashboard snapshot with read-only queries
# over the persisted indicators table.  Nothing is accumulated during
# ingestion, so the snapshot always reflects exactly what is stored.

import logging
import math
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .models import Indicator, ThreatAnalysis, ThreatType, TrendPoint, TypeCount
from .store import IndicatorStore, to_timestamp

logger = logging.getLogger(__name__)

DEFAULT_RECENT_LIMIT = 10
DEFAULT_TOP_TYPES_LIMIT = 5
DEFAULT_TREND_DAYS = 7


def _start_of_day(moment: datetime) -> datetime:
    return datetime(moment.year, moment.month, moment.day)


def _recency_order(indicators: List[Indicator]) -> List[Indicator]:
    """Newest first_seen first, ties broken by normalized key ascending."""
    ordered = sorted(indicators, key=lambda i: i.normalized_indicator)
    return sorted(ordered, key=lambda i: i.first_seen or "", reverse=True)


class ThreatAnalyzer:
    """Aggregates the indicator store into dashboard figures."""

    def __init__(
        self,
        store: IndicatorStore,
        recent_limit: int = DEFAULT_RECENT_LIMIT,
        top_types_limit: int = DEFAULT_TOP_TYPES_LIMIT,
        trend_days: int = DEFAULT_TREND_DAYS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.recent_limit = recent_limit
        self.top_types_limit = top_types_limit
        self.trend_days = trend_days
        self.clock = clock or store.clock

    def compute_analysis(self, now: Optional[datetime] = None) -> ThreatAnalysis:
        """Build a fresh snapshot from the current table contents."""
        now = now or self.clock()
        today = _start_of_day(now)

        return ThreatAnalysis(
            total_threats=self.store.count(active_only=True),
            new_threats_today=self.store.count_first_seen_between(
                today, today + timedelta(days=1)
            ),
            active_sources=self.store.active_source_count(),
            top_threat_types=self.top_threat_types(),
            recent_threats=self.recent_threats(self.recent_limit),
            threat_trends=self.threat_trends(self.trend_days, now),
            computed_at=to_timestamp(now),
        )

    def top_threat_types(self, limit: Optional[int] = None) -> List[TypeCount]:
        limit = self.top_types_limit if limit is None else limit
        return [
            TypeCount(type=threat_type, count=count)
            for threat_type, count in self.store.threat_type_counts()[:limit]
        ]

    def recent_threats(
        self, limit: int, category: Optional[ThreatType] = None
    ) -> List[Indicator]:
        """Most recent active indicators.

        With a category, the newest indicators of that type.  Without one,
        a balanced view: every present threat type contributes up to
        ``ceil(limit / types)`` of its newest rows before the merged list
        is re-sorted by recency and truncated to ``limit``.
        """
        if limit <= 0:
            return []
        if category is not None:
            return self.store.recent(limit, threat_type=category)

        buckets = [ThreatType(t) for t, _ in self.store.threat_type_counts()]
        if not buckets:
            return []

        per_bucket = math.ceil(limit / len(buckets))
        merged: List[Indicator] = []
        for threat_type in buckets:
            merged.extend(self.store.recent(per_bucket, threat_type=threat_type))

        return _recency_order(merged)[:limit]

    def threat_trends(
        self, days: int = DEFAULT_TREND_DAYS, now: Optional[datetime] = None
    ) -> List[TrendPoint]:
        """Per-day, per-type counts of active rows first seen in the last ``days`` days."""
        now = now or self.clock()
        since = _start_of_day(now) - timedelta(days=max(1, days) - 1)
        return [
            TrendPoint(date=day, type=threat_type, count=count)
            for day, threat_type, count in self.store.trend_counts(since)
        ]
