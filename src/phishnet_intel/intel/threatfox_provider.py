# Intel Module - abuse.ch ThreatFox Feed Provider
#
# Queries the ThreatFox JSON API (``get_iocs``) for IOCs shared in the
# last N days.  Supported IOC types: url, domain, ip:port and the three
# file hash types.  Ports are stripped from ip:port values, including the
# bracketed IPv6 form ``[2001:db8::1]:443``.

import logging
import threading
from typing import Any, Dict, List, Optional

from .http_client import FeedHttpClient
from .models import IndicatorType, RawThreat
from .provider import FeedProvider, extract_domain

logger = logging.getLogger(__name__)

PROVIDER_NAME = "abuse.ch-threatfox"
DEFAULT_BASE_URL = "https://threatfox-api.abuse.ch"
API_PATH = "/api/v1/"

DEFAULT_CONFIDENCE = 75
MAX_TAGS = 5

# ThreatFox IOC type -> our IndicatorType mapping
_THREATFOX_TYPE_MAP: Dict[str, IndicatorType] = {
    "url": IndicatorType.URL,
    "domain": IndicatorType.DOMAIN,
    "ip:port": IndicatorType.IP,
    "md5_hash": IndicatorType.HASH,
    "sha1_hash": IndicatorType.HASH,
    "sha256_hash": IndicatorType.HASH,
}


def strip_port(value: str) -> str:
    """``1.2.3.4:443`` -> ``1.2.3.4``; ``[2001:db8::1]:443`` -> ``2001:db8::1``."""
    if value.startswith("["):
        bracket_end = value.find("]")
        if bracket_end != -1:
            return value[1:bracket_end]
        return value
    if value.count(":") == 1:
        return value.rsplit(":", 1)[0]
    return value


class ThreatFoxProvider(FeedProvider):
    """abuse.ch ThreatFox IOC provider.

    Usage::

        provider = ThreatFoxProvider()
        provider.configure(api_key="auth-key", days=1)
        threats = provider.fetch_threats()
    """

    def __init__(self, http: Optional[FeedHttpClient] = None):
        super().__init__(
            PROVIDER_NAME,
            http or FeedHttpClient(PROVIDER_NAME, base_url=DEFAULT_BASE_URL),
        )
        self._days: int = 1
        self.max_records = 500

    def configure(self, **kwargs) -> None:
        """Configure the ThreatFox provider.

        Keyword Args:
            api_key: abuse.ch Auth-Key (optional).
            base_url: Override the API base URL.
            days: Look-back window in days, 1-7 (default 1).
            max_records: Cap on IOCs returned (default 500).
        """
        self._apply_common_config(kwargs)
        api_key = kwargs.get("api_key")
        if api_key:
            self.http.headers["Auth-Key"] = api_key
        else:
            self.http.headers.pop("Auth-Key", None)
        if kwargs.get("days") is not None:
            self._days = max(1, min(7, int(kwargs["days"])))

    def fetch_threats(
        self, cancel_event: Optional[threading.Event] = None
    ) -> List[RawThreat]:
        """Run a ``get_iocs`` query and map the returned IOCs."""
        try:
            resp = self.http.request(
                "POST",
                API_PATH,
                json={"query": "get_iocs", "days": self._days},
                headers={"Accept": "application/json"},
                cancel_event=cancel_event,
            )
            try:
                data = resp.json()
            except ValueError as exc:
                raise self._fail(f"invalid JSON: {exc}") from exc
            threats = self.parse_response(data)
        except Exception as exc:
            self.record_error(str(exc))
            raise
        self.record_fetch(len(threats))
        logger.info("%s: %d IOCs", self.name, len(threats))
        return threats

    def parse_response(self, data: Any) -> List[RawThreat]:
        if not isinstance(data, dict):
            raise self._fail("invalid response format")

        query_status = data.get("query_status", "")
        if query_status == "no_result":
            return []
        if query_status != "ok":
            raise self._fail(f"query_status {query_status or 'missing'}")

        entries = data.get("data") or []
        if not isinstance(entries, list):
            raise self._fail("invalid response format")

        threats: List[RawThreat] = []
        for entry in entries:
            threat = self._parse_entry(entry)
            if threat is None:
                continue
            threats.append(threat)
            if len(threats) >= self.max_records:
                break
        return threats

    def _parse_entry(self, entry: Any) -> Optional[RawThreat]:
        if not isinstance(entry, dict):
            return None
        ioc_type_str = (entry.get("ioc_type") or "").lower()
        ind_type = _THREATFOX_TYPE_MAP.get(ioc_type_str)
        if ind_type is None:
            return None

        value = (entry.get("ioc") or "").strip()
        if not value:
            return None
        if ioc_type_str == "ip:port":
            value = strip_port(value)

        url = value if ind_type == IndicatorType.URL else None
        if ind_type == IndicatorType.URL:
            domain = extract_domain(value)
        elif ind_type == IndicatorType.DOMAIN:
            domain = value
        else:
            domain = None

        malware = entry.get("malware_printable") or entry.get("malware") or None
        # Classified by malware family; the IOC's threat_type
        # (payload_delivery, botnet_cc) only when no family is named
        threat_label = (
            malware or entry.get("threat_type") or entry.get("threat_type_desc") or None
        )

        confidence = entry.get("confidence_level")
        try:
            confidence = int(confidence) if confidence is not None else DEFAULT_CONFIDENCE
        except (TypeError, ValueError):
            confidence = DEFAULT_CONFIDENCE

        return RawThreat(
            source=self.name,
            indicator=value,
            url=url,
            domain=domain,
            indicator_type=ind_type,
            threat_type=threat_label,
            confidence=confidence,
            tags=self._extract_tags(entry, malware),
            description=entry.get("comment") or f"{malware or 'Malicious'} IOC: {value}",
            malware_family=malware,
            reported_first_seen=entry.get("first_seen") or entry.get("first_seen_utc"),
            raw_data={
                "threatfox_id": entry.get("id", ""),
                "ioc_type": ioc_type_str,
                "reporter": entry.get("reporter", ""),
            },
        )

    @staticmethod
    def _extract_tags(entry: Dict[str, Any], malware: Optional[str]) -> List[str]:
        tags = ["threatfox"]
        if malware:
            tags.append("_".join(malware.lower().split()))
        feed_tags = entry.get("tags") or []
        if isinstance(feed_tags, str):
            feed_tags = [t.strip() for t in feed_tags.split(",") if t.strip()]
        tags.extend(t for t in feed_tags if isinstance(t, str))
        return tags[:MAX_TAGS]
