# Intel Module - Phishing.Database Feed Provider
#
# Phishing.Database (mitchellkrogza/Phishing.Database) publishes plain-text
# lists of phishing links, domains and IPs grouped by status:
#
#   NEW       - seen in the last hour / today      (confidence 95)
#   ACTIVE    - currently resolving                 (confidence 90)
#   INACTIVE  - previously active                   (confidence 75)
#   INVALID   - blocked or no longer valid          (confidence 60)
#
# Each configured list is downloaded separately.  A single list failing is
# logged and skipped; the provider is only unavailable when every list
# fails.

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .exceptions import FeedUnavailable
from .http_client import FeedHttpClient
from .models import IndicatorType, RawThreat
from .provider import FeedProvider, extract_domain, guess_brand

logger = logging.getLogger(__name__)

PROVIDER_NAME = "phishing-database"
DEFAULT_BASE_URL = (
    "https://raw.githubusercontent.com/mitchellkrogza/Phishing.Database/master"
)

STATUS_CONFIDENCE = {
    "new": 95,
    "active": 90,
    "inactive": 75,
    "invalid": 60,
}

_STATUS_TEXT = {
    "new": "Newly detected",
    "active": "Active",
    "inactive": "Previously active",
    "invalid": "Blocked/invalid",
}

_KIND_TYPE = {
    "url": IndicatorType.URL,
    "domain": IndicatorType.DOMAIN,
    "ip": IndicatorType.IP,
}


@dataclass(frozen=True)
class DatabaseList:
    """One Phishing.Database list file."""

    filename: str
    kind: str  # url | domain | ip
    status: str  # new | active | inactive | invalid
    limit: int


DEFAULT_LISTS = (
    DatabaseList("phishing-links-NEW-today.txt", "url", "new", 500),
    DatabaseList("phishing-domains-NEW-today.txt", "domain", "new", 500),
    DatabaseList("phishing-IPs-NEW-today.txt", "ip", "new", 200),
    DatabaseList("phishing-links-ACTIVE-NOW.txt", "url", "active", 1000),
    DatabaseList("phishing-domains-ACTIVE.txt", "domain", "active", 1000),
    DatabaseList("phishing-IPs-ACTIVE.txt", "ip", "active", 300),
)


def describe(item: str, kind: str, status: str) -> str:
    status_text = _STATUS_TEXT.get(status, status.capitalize())
    if kind == "url":
        return f"{status_text} phishing URL targeting {guess_brand(item)}"
    if kind == "domain":
        return (
            f"{status_text} phishing domain hosting malicious content "
            f"targeting {guess_brand(item)}"
        )
    if kind == "ip":
        return f"{status_text} IP address hosting phishing infrastructure"
    return f"{status_text} phishing threat detected"


class PhishingDatabaseProvider(FeedProvider):
    """Phishing.Database public list provider."""

    def __init__(self, http: Optional[FeedHttpClient] = None):
        super().__init__(
            PROVIDER_NAME,
            http or FeedHttpClient(PROVIDER_NAME, base_url=DEFAULT_BASE_URL),
        )
        self.lists: List[DatabaseList] = list(DEFAULT_LISTS)

    def configure(self, **kwargs) -> None:
        """Configure the provider.

        Keyword Args:
            base_url: Override the raw GitHub base URL.
            lists: Sequence of ``DatabaseList`` to download.
            max_records: Overall cap across all lists.
        """
        self._apply_common_config(kwargs)
        lists: Optional[Sequence[DatabaseList]] = kwargs.get("lists")
        if lists is not None:
            for entry in lists:
                if entry.kind not in _KIND_TYPE:
                    raise ValueError(f"unknown list kind {entry.kind!r}")
                if entry.status not in STATUS_CONFIDENCE:
                    raise ValueError(f"unknown list status {entry.status!r}")
            self.lists = list(lists)

    def fetch_threats(
        self, cancel_event: Optional[threading.Event] = None
    ) -> List[RawThreat]:
        try:
            threats = self._fetch_lists(cancel_event)
        except Exception as exc:
            self.record_error(str(exc))
            raise
        self.record_fetch(len(threats))
        logger.info("%s: %d threats from %d lists", self.name, len(threats), len(self.lists))
        return threats

    def _fetch_lists(
        self, cancel_event: Optional[threading.Event]
    ) -> List[RawThreat]:
        if not self.lists:
            return []

        threats: List[RawThreat] = []
        failed: List[str] = []

        for entry in self.lists:
            if len(threats) >= self.max_records:
                break
            try:
                resp = self.http.request(
                    "GET", f"/{entry.filename}", cancel_event=cancel_event
                )
            except FeedUnavailable as exc:
                if cancel_event is not None and cancel_event.is_set():
                    raise
                logger.warning(
                    "%s: skipping %s (%s)", self.name, entry.filename, exc.reason
                )
                failed.append(entry.filename)
                continue
            threats.extend(self.parse_list(resp.text, entry))

        if failed and len(failed) == len(self.lists):
            raise self._fail(f"all {len(failed)} lists failed")
        return threats[: self.max_records]

    def parse_list(self, text: str, entry: DatabaseList) -> List[RawThreat]:
        threats: List[RawThreat] = []
        ind_type = _KIND_TYPE[entry.kind]
        confidence = STATUS_CONFIDENCE[entry.status]

        for line in text.splitlines():
            item = line.strip()
            if not item or item.startswith("#") or len(item) < 3:
                continue

            url: Optional[str] = None
            domain: Optional[str] = None
            if entry.kind == "url":
                url = item
                domain = extract_domain(item)
            elif entry.kind == "domain":
                domain = item

            threats.append(RawThreat(
                source=self.name,
                indicator=item,
                url=url,
                domain=domain,
                indicator_type=ind_type,
                threat_type="phishing",
                confidence=confidence,
                tags=["phishing", "verified", entry.kind, entry.status, PROVIDER_NAME],
                description=describe(item, entry.kind, entry.status),
                raw_data={
                    "list": entry.filename,
                    "item_type": entry.kind,
                    "status": entry.status,
                },
            ))
            if len(threats) >= entry.limit:
                break

        return threats
