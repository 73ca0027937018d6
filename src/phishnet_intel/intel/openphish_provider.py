# Intel Module - OpenPhish Feed Provider
#
# The OpenPhish community feed is a plain-text list of verified phishing
# URLs, one per line, newest first.

import logging
import threading
from typing import List, Optional

from .http_client import FeedHttpClient
from .models import IndicatorType, RawThreat
from .provider import FeedProvider, extract_domain, guess_brand

logger = logging.getLogger(__name__)

PROVIDER_NAME = "openphish"
DEFAULT_BASE_URL = "https://openphish.com"
FEED_PATH = "/feed.txt"

OPENPHISH_CONFIDENCE = 90
DEFAULT_LIMIT = 200


class OpenPhishProvider(FeedProvider):
    """OpenPhish public feed provider."""

    def __init__(self, http: Optional[FeedHttpClient] = None):
        super().__init__(
            PROVIDER_NAME,
            http or FeedHttpClient(PROVIDER_NAME, base_url=DEFAULT_BASE_URL),
        )
        self.max_records = DEFAULT_LIMIT

    def configure(self, **kwargs) -> None:
        """Keyword Args: base_url, max_records (default 200), timeout."""
        self._apply_common_config(kwargs)

    def fetch_threats(
        self, cancel_event: Optional[threading.Event] = None
    ) -> List[RawThreat]:
        try:
            resp = self.http.request("GET", FEED_PATH, cancel_event=cancel_event)
            threats = self.parse_feed(resp.text)
        except Exception as exc:
            self.record_error(str(exc))
            raise
        self.record_fetch(len(threats))
        logger.info("%s: %d phishing URLs", self.name, len(threats))
        return threats

    def parse_feed(self, text: str) -> List[RawThreat]:
        threats: List[RawThreat] = []
        for line in text.splitlines():
            url = line.strip()
            if not url.startswith("http"):
                continue
            domain = extract_domain(url)
            if not domain:
                continue
            threats.append(RawThreat(
                source=self.name,
                indicator=url,
                url=url,
                domain=domain,
                indicator_type=IndicatorType.URL,
                threat_type="phishing",
                confidence=OPENPHISH_CONFIDENCE,
                tags=["phishing", "verified"],
                description=(
                    f"Verified phishing URL targeting {guess_brand(url)}"
                ),
                raw_data={"original_url": url},
            ))
            if len(threats) >= self.max_records:
                break
        return threats
