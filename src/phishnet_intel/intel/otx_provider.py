# Intel Module - AlienVault OTX Feed Provider
#
# Concrete FeedProvider for AlienVault Open Threat Exchange (OTX).
# Reads the public pulse activity stream and turns pulse indicators
# (URLs, domains, IPs, file hashes) into RawThreat records.
#
# Supports:
#   - API key authentication (optional, public activity works without)
#   - Pagination (OTX returns a full next-page URL)
#   - Per-pulse confidence from author, votes, subscribers and age
#   - Caps on pulses and indicators per pulse

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .http_client import FeedHttpClient
from .models import IndicatorType, RawThreat
from .provider import FeedProvider, extract_domain

logger = logging.getLogger(__name__)

PROVIDER_NAME = "alienvault-otx"
DEFAULT_BASE_URL = "https://otx.alienvault.com"
ACTIVITY_PATH = "/api/v1/pulses/activity"

# OTX indicator type -> our IndicatorType mapping
_OTX_TYPE_MAP: Dict[str, IndicatorType] = {
    "URL": IndicatorType.URL,
    "URI": IndicatorType.URL,
    "domain": IndicatorType.DOMAIN,
    "hostname": IndicatorType.DOMAIN,
    "IPv4": IndicatorType.IP,
    "IPv6": IndicatorType.IP,
    "FileHash-MD5": IndicatorType.HASH,
    "FileHash-SHA1": IndicatorType.HASH,
    "FileHash-SHA256": IndicatorType.HASH,
}

BASE_CONFIDENCE = 70
MIN_CONFIDENCE = 50
MAX_CONFIDENCE = 95
MAX_TAGS = 5


def _parse_otx_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class OTXProvider(FeedProvider):
    """AlienVault OTX pulse activity provider.

    Usage::

        provider = OTXProvider()
        provider.configure(api_key="your-otx-api-key")
        threats = provider.fetch_threats()
    """

    def __init__(
        self,
        http: Optional[FeedHttpClient] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        super().__init__(
            PROVIDER_NAME,
            http or FeedHttpClient(PROVIDER_NAME, base_url=DEFAULT_BASE_URL),
        )
        self._api_key: Optional[str] = None
        self._clock = clock
        self._max_pages: int = 1
        self._max_pulses: int = 20
        self._max_indicators_per_pulse: int = 10

    # ------------------------------------------------------------------
    # FeedProvider interface
    # ------------------------------------------------------------------

    def configure(self, **kwargs) -> None:
        """Configure the OTX provider.

        Keyword Args:
            api_key: OTX API key (optional).
            base_url: Override the default OTX API base URL.
            max_pages: Activity pages to follow (default 1).
            max_pulses: Pulses to read in total (default 20).
            max_indicators_per_pulse: Indicators kept per pulse (default 10).
            max_records: Overall record cap.
        """
        self._apply_common_config(kwargs)
        self._api_key = kwargs.get("api_key") or None
        if self._api_key:
            self.http.headers["X-OTX-API-KEY"] = self._api_key
        else:
            self.http.headers.pop("X-OTX-API-KEY", None)
        self._max_pages = int(kwargs.get("max_pages", self._max_pages))
        self._max_pulses = int(kwargs.get("max_pulses", self._max_pulses))
        self._max_indicators_per_pulse = int(
            kwargs.get("max_indicators_per_pulse", self._max_indicators_per_pulse)
        )

    def fetch_threats(
        self, cancel_event: Optional[threading.Event] = None
    ) -> List[RawThreat]:
        """Fetch recent pulses and extract their indicators."""
        try:
            pulses = self._fetch_pulses(cancel_event)
            threats = self._parse_pulses(pulses)
        except Exception as exc:
            self.record_error(str(exc))
            raise
        self.record_fetch(len(threats))
        logger.info(
            "%s: %d threats from %d pulses", self.name, len(threats), len(pulses)
        )
        return threats

    # ------------------------------------------------------------------
    # Pulse fetching with pagination
    # ------------------------------------------------------------------

    def _fetch_pulses(
        self, cancel_event: Optional[threading.Event]
    ) -> List[Dict[str, Any]]:
        pulses: List[Dict[str, Any]] = []
        path: Optional[str] = ACTIVITY_PATH
        params: Optional[Dict[str, Any]] = {"limit": self._max_pulses}
        page = 0

        while path and page < self._max_pages and len(pulses) < self._max_pulses:
            resp = self.http.request(
                "GET",
                path,
                params=params,
                headers={"Accept": "application/json"},
                cancel_event=cancel_event,
            )
            try:
                data = resp.json()
            except ValueError as exc:
                raise self._fail(f"invalid JSON: {exc}") from exc
            if not isinstance(data, dict) or not isinstance(data.get("results"), list):
                raise self._fail("invalid response format")

            pulses.extend(data["results"])

            # next is a full URL with the query string already applied
            path = data.get("next") or None
            params = None
            page += 1

        return pulses[: self._max_pulses]

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _parse_pulses(self, pulses: List[Dict[str, Any]]) -> List[RawThreat]:
        threats: List[RawThreat] = []
        now = self._clock()

        for pulse in pulses:
            if not isinstance(pulse, dict):
                continue
            indicators = pulse.get("indicators") or []
            if not isinstance(indicators, list):
                continue
            confidence = self.pulse_confidence(pulse, now)
            threat_label = self._map_threat_type(pulse)
            family = self._malware_family(pulse)

            for ind in indicators[: self._max_indicators_per_pulse]:
                threat = self._parse_indicator(
                    ind, pulse, confidence, threat_label, family
                )
                if threat is not None:
                    threats.append(threat)
                    if len(threats) >= self.max_records:
                        return threats

        return threats

    def _parse_indicator(
        self,
        ind: Dict[str, Any],
        pulse: Dict[str, Any],
        confidence: int,
        threat_label: str,
        family: Optional[str],
    ) -> Optional[RawThreat]:
        if not isinstance(ind, dict):
            return None
        otx_type = ind.get("type") or ""
        ind_type = _OTX_TYPE_MAP.get(otx_type)
        if ind_type is None:
            return None  # unsupported indicator type

        value = (ind.get("indicator") or "").strip()
        if not value:
            return None

        url = value if ind_type == IndicatorType.URL else None
        if ind_type == IndicatorType.URL:
            domain = extract_domain(value)
        elif ind_type == IndicatorType.DOMAIN:
            domain = value
        else:
            domain = None

        pulse_name = pulse.get("name") or ""
        return RawThreat(
            source=self.name,
            indicator=value,
            url=url,
            domain=domain,
            indicator_type=ind_type,
            threat_type=threat_label,
            confidence=confidence,
            tags=self._extract_tags(pulse.get("tags"), otx_type),
            description=pulse.get("description") or f"{pulse_name} - {value}",
            malware_family=family,
            campaign_name=pulse_name or None,
            reported_first_seen=pulse.get("created") or ind.get("created"),
            raw_data={
                "pulse_id": pulse.get("id", ""),
                "indicator_id": ind.get("id", ""),
                "otx_type": otx_type,
            },
        )

    @staticmethod
    def pulse_confidence(pulse: Dict[str, Any], now: datetime) -> int:
        """Reputation-weighted confidence for every indicator of a pulse."""
        confidence = BASE_CONFIDENCE

        author = pulse.get("author_name") or ""
        if "AlienVault" in author:
            confidence += 10
        votes = pulse.get("votes") or {}
        if isinstance(votes, dict) and (votes.get("up") or 0) > (votes.get("down") or 0):
            confidence += 5
        if (pulse.get("subscriber_count") or 0) > 100:
            confidence += 5

        created = _parse_otx_time(pulse.get("created"))
        if created is not None:
            age_days = (now - created).total_seconds() / 86400
            if age_days > 30:
                confidence -= 10
            if age_days > 90:
                confidence -= 20

        return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, confidence))

    @staticmethod
    def _pulse_labels(pulse: Dict[str, Any]) -> List[str]:
        labels = [t for t in (pulse.get("tags") or []) if isinstance(t, str)]
        for family in pulse.get("malware_families") or []:
            if isinstance(family, dict):
                labels.append(family.get("display_name") or family.get("name") or "")
            elif isinstance(family, str):
                labels.append(family)
        return [label.lower() for label in labels if label]

    def _map_threat_type(self, pulse: Dict[str, Any]) -> str:
        labels = self._pulse_labels(pulse)
        if any("phish" in label for label in labels):
            return "phishing"
        if any("spam" in label for label in labels):
            return "spam"
        return "malware"

    @staticmethod
    def _malware_family(pulse: Dict[str, Any]) -> Optional[str]:
        families = pulse.get("malware_families") or []
        if not families:
            return None
        first = families[0]
        if isinstance(first, dict):
            return first.get("display_name") or first.get("name") or None
        return str(first) or None

    @staticmethod
    def _extract_tags(pulse_tags: Any, otx_type: str) -> List[str]:
        tags = ["otx"]
        if otx_type:
            tags.append(otx_type)
        if isinstance(pulse_tags, list):
            tags.extend(t for t in pulse_tags[:3] if isinstance(t, str))
        return tags[:MAX_TAGS]
