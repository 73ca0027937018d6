# Intel Module - Shared Feed HTTP Client
#
# Every feed provider talks HTTP through FeedHttpClient so that retry,
# backoff and error reporting behave the same for all feeds:
#   - Retry with exponential backoff (3 attempts, 1s doubling)
#   - 429 honours Retry-After, 5xx and network errors are retried
#   - Other 4xx fail fast
#   - Backoff waits wake up early when the run's cancel event is set
#   - Every failure surfaces as FeedUnavailable(provider, reason)

import logging
import threading
import time
from typing import Any, Dict, Optional

import httpx

from .exceptions import FeedUnavailable

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
INITIAL_BACKOFF_SEC = 1.0
BACKOFF_MULTIPLIER = 2.0
REQUEST_TIMEOUT_SEC = 30.0

USER_AGENT = "PhishNetIntel/1.0"


class FeedHttpClient:
    """Retrying httpx wrapper bound to one provider.

    Usage::

        client = FeedHttpClient("openphish", base_url="https://openphish.com")
        resp = client.request("GET", "/feed.txt", cancel_event=event)
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str = "",
        headers: Optional[Dict[str, str]] = None,
        timeout: float = REQUEST_TIMEOUT_SEC,
        max_retries: int = MAX_RETRIES,
        initial_backoff: float = INITIAL_BACKOFF_SEC,
    ):
        self.provider_name = provider_name
        self.base_url = base_url.rstrip("/")
        self.headers: Dict[str, str] = {"User-Agent": USER_AGENT}
        if headers:
            self.headers.update(headers)
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.initial_backoff = initial_backoff

    def build_url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> httpx.Response:
        """Execute an HTTP request with retry + exponential backoff.

        ``path`` is appended to ``base_url`` unless it is already an
        absolute URL.

        Raises:
            FeedUnavailable: after the last attempt, on a non-retryable
                4xx, or when the cancel event is set.
        """
        url = self.build_url(path)
        merged_headers = dict(self.headers)
        if headers:
            merged_headers.update(headers)

        backoff = self.initial_backoff
        last_error = "no attempt made"

        for attempt in range(1, self.max_retries + 1):
            self._check_cancelled(cancel_event)
            try:
                resp = httpx.request(
                    method,
                    url,
                    headers=merged_headers,
                    params=params,
                    json=json,
                    timeout=self.timeout,
                    follow_redirects=True,
                )
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                if attempt < self.max_retries:
                    logger.warning(
                        "%s request failed (%s), retrying in %.1fs "
                        "(attempt %d/%d)",
                        self.provider_name, last_error, backoff,
                        attempt, self.max_retries,
                    )
                    self._wait(backoff, cancel_event)
                    backoff *= BACKOFF_MULTIPLIER
                continue

            if resp.status_code < 400:
                return resp

            # Rate limited
            if resp.status_code == 429:
                last_error = "HTTP 429 rate limited"
                if attempt < self.max_retries:
                    wait = self._retry_after(resp, backoff)
                    logger.warning(
                        "%s rate limited (429), retrying in %.1fs "
                        "(attempt %d/%d)",
                        self.provider_name, wait, attempt, self.max_retries,
                    )
                    self._wait(wait, cancel_event)
                    backoff *= BACKOFF_MULTIPLIER
                continue

            # Server error
            if resp.status_code >= 500:
                last_error = f"HTTP {resp.status_code}"
                if attempt < self.max_retries:
                    logger.warning(
                        "%s server error %d, retrying in %.1fs "
                        "(attempt %d/%d)",
                        self.provider_name, resp.status_code, backoff,
                        attempt, self.max_retries,
                    )
                    self._wait(backoff, cancel_event)
                    backoff *= BACKOFF_MULTIPLIER
                continue

            # Client error (4xx except 429), fail fast
            raise FeedUnavailable(self.provider_name, f"HTTP {resp.status_code}")

        raise FeedUnavailable(
            self.provider_name,
            f"request failed after {self.max_retries} attempts: {last_error}",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _retry_after(resp: httpx.Response, default: float) -> float:
        raw = resp.headers.get("Retry-After")
        if not raw:
            return default
        try:
            return max(0.0, float(raw))
        except ValueError:
            return default

    def _check_cancelled(self, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise FeedUnavailable(self.provider_name, "cancelled")

    def _wait(self, seconds: float, cancel_event: Optional[threading.Event]) -> None:
        if seconds <= 0:
            self._check_cancelled(cancel_event)
            return
        if cancel_event is None:
            time.sleep(seconds)
            return
        if cancel_event.wait(seconds):
            raise FeedUnavailable(self.provider_name, "cancelled")
