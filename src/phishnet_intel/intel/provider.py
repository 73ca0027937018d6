# Intel Module - Abstract Feed Provider
#
# Defines the FeedProvider abstract base class that every concrete feed
# integration (OTX, URLhaus, ThreatFox, OpenPhish, Phishing.Database)
# implements, plus small parsing helpers shared by the providers.
#
# Providers only read from the network and return RawThreat records.
# They never touch the store; the orchestrator owns all writes.

import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional
from urllib.parse import urlsplit

from .exceptions import FeedUnavailable
from .http_client import FeedHttpClient
from .models import RawThreat

DEFAULT_MAX_RECORDS = 1000

# Ordered (pattern, brand) pairs; the first match wins.
_BRANDS = [
    (r"paypal", "PayPal"),
    (r"amazon", "Amazon"),
    (r"microsoft|outlook|office|msn", "Microsoft"),
    (r"apple|icloud", "Apple"),
    (r"google|gmail", "Google"),
    (r"facebook|meta", "Facebook/Meta"),
    (r"netflix", "Netflix"),
    (r"ebay", "eBay"),
    (r"linkedin", "LinkedIn"),
    (r"twitter|x\.com", "Twitter/X"),
    (r"instagram", "Instagram"),
    (r"dropbox", "Dropbox"),
    (r"adobe", "Adobe"),
    (r"yahoo", "Yahoo"),
    (r"hotmail", "Hotmail"),
    (r"bank", "Banking Services"),
    (r"visa|mastercard|amex", "Financial Services"),
    (r"dhl|fedex|ups", "Shipping Services"),
    (r"steam", "Steam"),
    (r"spotify", "Spotify"),
    (r"coinbase|crypto|bitcoin|binance|ethereum|wallet|trezor|ledger",
     "Cryptocurrency Services"),
    (r"whatsapp|telegram|discord|teams", "Communication Services"),
    (r"tiktok|youtube|twitch", "Social Media"),
    (r"gov\.|-gov-|government", "Government Services"),
]
_BRAND_PATTERNS = [(re.compile(p, re.IGNORECASE), name) for p, name in _BRANDS]

UNKNOWN_BRAND = "unknown service"


def guess_brand(text: str) -> str:
    """Best-effort guess of the brand a phishing URL or domain imitates."""
    for pattern, name in _BRAND_PATTERNS:
        if pattern.search(text or ""):
            return name
    return UNKNOWN_BRAND


def extract_domain(url: str) -> Optional[str]:
    """Hostname of ``url`` or None when it does not parse."""
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    return host or None


class FeedProvider(ABC):
    """Abstract base class for threat feed providers.

    Lifecycle:
        1. ``configure()`` - set API keys, base URLs, record caps
        2. ``fetch_threats()`` - pull the feed and return ``RawThreat`` list
        3. ``get_stats()`` - fetch counters for status pages

    ``fetch_threats`` raises ``FeedUnavailable`` for every network,
    timeout, HTTP or parse error.  Zero records is a valid result.
    """

    def __init__(self, name: str, http: Optional[FeedHttpClient] = None):
        self.name = name
        self.http = http or FeedHttpClient(name)
        self.max_records: int = DEFAULT_MAX_RECORDS
        self._last_fetch: Optional[str] = None
        self._fetch_count: int = 0
        self._error_count: int = 0
        self._last_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Abstract interface
    # ------------------------------------------------------------------

    @abstractmethod
    def configure(self, **kwargs) -> None:
        """Configure the provider (API keys, endpoints, caps).

        Keyword Args:
            api_key: API key for the feed (if supported)
            base_url: Override default base URL
            max_records: Cap on records returned per fetch
            timeout: HTTP timeout in seconds
        """

    @abstractmethod
    def fetch_threats(
        self, cancel_event: Optional[threading.Event] = None
    ) -> List[RawThreat]:
        """Fetch the current feed contents.

        Args:
            cancel_event: Set by the orchestrator when the run is
                cancelled or past its deadline.  Providers stop at the
                next HTTP call or backoff wait.
        """

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _apply_common_config(self, kwargs: Dict[str, object]) -> None:
        if "base_url" in kwargs and kwargs["base_url"]:
            self.http.base_url = str(kwargs["base_url"]).rstrip("/")
        if "max_records" in kwargs and kwargs["max_records"] is not None:
            self.max_records = max(1, int(kwargs["max_records"]))
        if "timeout" in kwargs and kwargs["timeout"] is not None:
            self.http.timeout = float(kwargs["timeout"])

    def _fail(self, reason: str) -> FeedUnavailable:
        return FeedUnavailable(self.name, reason)

    def record_fetch(self, count: int) -> None:
        """Record a successful fetch for stats tracking."""
        self._last_fetch = datetime.utcnow().isoformat()
        self._fetch_count += count

    def record_error(self, reason: Optional[str] = None) -> None:
        """Record a fetch error for stats tracking."""
        self._error_count += 1
        self._last_error = reason

    def get_stats(self) -> Dict[str, object]:
        """Return provider statistics."""
        return {
            "name": self.name,
            "last_fetch": self._last_fetch,
            "total_fetched": self._fetch_count,
            "total_errors": self._error_count,
            "last_error": self._last_error,
        }
