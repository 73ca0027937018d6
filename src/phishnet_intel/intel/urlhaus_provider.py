# Intel Module - abuse.ch URLhaus Feed Provider
#
# Reads the URLhaus "recent URLs" CSV export and keeps only URLs that are
# currently online.  Export columns:
#
#   id, dateadded, url, url_status, last_online, threat, tags,
#   urlhaus_link, reporter
#
# Comment lines start with "#".  No API key is required for the export;
# an Auth-Key header is sent when one is configured.

import csv
import io
import logging
import threading
from typing import List, Optional

from .http_client import FeedHttpClient
from .models import IndicatorType, RawThreat
from .provider import FeedProvider, extract_domain

logger = logging.getLogger(__name__)

PROVIDER_NAME = "abuse.ch-urlhaus"
DEFAULT_BASE_URL = "https://urlhaus.abuse.ch"
RECENT_CSV_PATH = "/downloads/csv_recent/"

URLHAUS_CONFIDENCE = 85
_MIN_COLUMNS = 7


class URLhausProvider(FeedProvider):
    """abuse.ch URLhaus recent-URL provider.

    Usage::

        provider = URLhausProvider()
        provider.configure(max_records=500)
        threats = provider.fetch_threats()
    """

    def __init__(self, http: Optional[FeedHttpClient] = None):
        super().__init__(
            PROVIDER_NAME,
            http or FeedHttpClient(PROVIDER_NAME, base_url=DEFAULT_BASE_URL),
        )
        self._path: str = RECENT_CSV_PATH

    def configure(self, **kwargs) -> None:
        """Configure the URLhaus provider.

        Keyword Args:
            api_key: abuse.ch Auth-Key (optional).
            base_url: Override https://urlhaus.abuse.ch.
            path: Override the CSV export path.
            max_records: Cap on online URLs returned.
        """
        self._apply_common_config(kwargs)
        api_key = kwargs.get("api_key")
        if api_key:
            self.http.headers["Auth-Key"] = api_key
        else:
            self.http.headers.pop("Auth-Key", None)
        self._path = kwargs.get("path") or self._path

    def fetch_threats(
        self, cancel_event: Optional[threading.Event] = None
    ) -> List[RawThreat]:
        """Download the recent CSV and return the online URLs."""
        try:
            resp = self.http.request("GET", self._path, cancel_event=cancel_event)
            threats = self.parse_csv(resp.text)
        except Exception as exc:
            self.record_error(str(exc))
            raise
        self.record_fetch(len(threats))
        logger.info("%s: %d online URLs", self.name, len(threats))
        return threats

    def parse_csv(self, text: str) -> List[RawThreat]:
        """Parse the CSV export body into RawThreat records."""
        data_lines = [
            line for line in text.splitlines()
            if line.strip() and not line.lstrip().startswith("#")
        ]
        threats: List[RawThreat] = []

        try:
            rows = list(csv.reader(io.StringIO("\n".join(data_lines))))
        except csv.Error as exc:
            raise self._fail(f"invalid CSV: {exc}") from exc

        for row in rows:
            if len(row) < _MIN_COLUMNS:
                logger.debug("%s: skipping short row %r", self.name, row)
                continue
            threat = self._parse_row(row)
            if threat is None:
                continue
            threats.append(threat)
            if len(threats) >= self.max_records:
                break

        return threats

    def _parse_row(self, row: List[str]) -> Optional[RawThreat]:
        url_id, date_added, url, url_status, last_online, threat, tags = (
            field.strip() for field in row[:_MIN_COLUMNS]
        )
        if not url or url_status != "online":
            return None
        domain = extract_domain(url)
        if not domain:
            return None

        return RawThreat(
            source=self.name,
            indicator=url,
            url=url,
            domain=domain,
            indicator_type=IndicatorType.URL,
            threat_type=threat or None,
            confidence=URLHAUS_CONFIDENCE,
            tags=[t for t in tags.split("|") if t.strip()],
            description=f"Malicious URL hosting {threat or 'unknown malware'}",
            reported_first_seen=date_added or None,
            raw_data={
                "urlhaus_id": url_id,
                "url_status": url_status,
                "last_online": last_online,
                "urlhaus_link": row[7].strip() if len(row) > 7 else "",
            },
        )
