"""
Tests for the AlienVault OTX pulse provider.

Covers: indicator extraction, type mapping, pulse confidence, threat
labels, tags, caps, pagination, API key header and error handling.
"""

from datetime import datetime
from unittest.mock import MagicMock, patch

import httpx
import pytest

from phishnet_intel.intel.exceptions import FeedUnavailable
from phishnet_intel.intel.http_client import FeedHttpClient
from phishnet_intel.intel.models import IndicatorType
from phishnet_intel.intel.otx_provider import (
    DEFAULT_BASE_URL,
    PROVIDER_NAME,
    OTXProvider,
)

NOW = datetime(2025, 3, 10, 12, 0, 0)


# ============================================================================
# Helpers
# ============================================================================


def _indicator(value, otx_type="domain", ind_id="1"):
    return {"id": ind_id, "indicator": value, "type": otx_type}


def _pulse(
    indicators=None,
    name="Test Pulse",
    tags=None,
    malware_families=None,
    author="someone",
    created="2025-03-09T00:00:00",
    description="",
    votes=None,
    subscribers=0,
):
    return {
        "id": "pulse-1",
        "name": name,
        "description": description,
        "author_name": author,
        "created": created,
        "tags": tags or [],
        "malware_families": malware_families or [],
        "votes": votes or {},
        "subscriber_count": subscribers,
        "indicators": indicators or [],
    }


def _mock_response(status_code=200, json_data=None, headers=None):
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    resp.headers = headers or {}
    resp.json.return_value = json_data if json_data is not None else {}
    return resp


def _page(pulses, next_url=None):
    return _mock_response(200, {"results": pulses, "next": next_url})


def _provider(**config):
    provider = OTXProvider(
        http=FeedHttpClient(PROVIDER_NAME, base_url=DEFAULT_BASE_URL, initial_backoff=0),
        clock=lambda: NOW,
    )
    provider.configure(**config)
    return provider


# ============================================================================
# Extraction
# ============================================================================


class TestExtraction:
    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_supported_types_mapped(self, mock_req):
        mock_req.return_value = _page([_pulse(indicators=[
            _indicator("http://evil.example/login", "URL"),
            _indicator("evil.example", "domain"),
            _indicator("203.0.113.7", "IPv4"),
            _indicator("a" * 64, "FileHash-SHA256"),
            _indicator("rule x {}", "YARA"),
        ])])

        threats = _provider().fetch_threats()

        assert [t.indicator_type for t in threats] == [
            IndicatorType.URL, IndicatorType.DOMAIN, IndicatorType.IP, IndicatorType.HASH,
        ]
        url_threat = threats[0]
        assert url_threat.source == "alienvault-otx"
        assert url_threat.url == "http://evil.example/login"
        assert url_threat.domain == "evil.example"
        assert threats[1].domain == "evil.example"
        assert threats[2].url is None and threats[2].domain is None

    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_record_fields(self, mock_req):
        mock_req.return_value = _page([_pulse(
            name="Campaign X",
            indicators=[_indicator("evil.example")],
        )])

        threat = _provider().fetch_threats()[0]

        assert threat.campaign_name == "Campaign X"
        assert threat.description == "Campaign X - evil.example"
        assert threat.reported_first_seen == "2025-03-09T00:00:00"
        assert threat.raw_data["otx_type"] == "domain"

    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_tags_capped(self, mock_req):
        mock_req.return_value = _page([_pulse(
            tags=["t1", "t2", "t3", "t4"],
            indicators=[_indicator("http://x.example/", "URL")],
        )])
        assert _provider().fetch_threats()[0].tags == ["otx", "URL", "t1", "t2", "t3"]

    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_empty_activity_is_valid(self, mock_req):
        mock_req.return_value = _page([])
        assert _provider().fetch_threats() == []


# ============================================================================
# Threat labels & confidence
# ============================================================================


class TestThreatLabel:
    @pytest.mark.parametrize("pulse_kwargs,expected", [
        ({"tags": ["Phishing campaign"]}, "phishing"),
        ({"tags": ["spam-wave"]}, "spam"),
        ({"malware_families": [{"display_name": "PhishKit"}]}, "phishing"),
        ({"tags": ["emotet"]}, "malware"),
    ])
    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_labels(self, mock_req, pulse_kwargs, expected):
        mock_req.return_value = _page([_pulse(
            indicators=[_indicator("evil.example")], **pulse_kwargs,
        )])
        assert _provider().fetch_threats()[0].threat_type == expected

    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_malware_family(self, mock_req):
        mock_req.return_value = _page([_pulse(
            malware_families=[{"display_name": "Emotet"}],
            indicators=[_indicator("evil.example")],
        )])
        assert _provider().fetch_threats()[0].malware_family == "Emotet"


class TestPulseConfidence:
    def test_reputable_fresh_pulse(self):
        pulse = _pulse(author="AlienVault", votes={"up": 3, "down": 1},
                       subscribers=150, created="2025-03-09T00:00:00")
        assert OTXProvider.pulse_confidence(pulse, NOW) == 90

    def test_plain_pulse(self):
        assert OTXProvider.pulse_confidence(_pulse(), NOW) == 70

    def test_month_old_pulse(self):
        pulse = _pulse(created="2025-01-30T00:00:00")
        assert OTXProvider.pulse_confidence(pulse, NOW) == 60

    def test_old_pulse_floored(self):
        pulse = _pulse(created="2024-10-01T00:00:00")
        assert OTXProvider.pulse_confidence(pulse, NOW) == 50

    def test_offset_timestamp_converted_to_utc(self):
        # 15:00+05:00 is 10:00 UTC: just over 30 days before NOW
        pulse = _pulse(created="2025-02-08T15:00:00+05:00")
        assert OTXProvider.pulse_confidence(pulse, NOW) == 60
        pulse = _pulse(created="2025-02-08T15:00:00Z")
        assert OTXProvider.pulse_confidence(pulse, NOW) == 70

    def test_unparsable_created_ignored(self):
        assert OTXProvider.pulse_confidence(_pulse(created="yesterday"), NOW) == 70


# ============================================================================
# Paging, caps & auth
# ============================================================================


class TestPaging:
    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_pulse_and_indicator_caps(self, mock_req):
        pulses = [
            _pulse(indicators=[_indicator(f"p{p}-i{i}.example") for i in range(12)])
            for p in range(25)
        ]
        mock_req.return_value = _page(pulses)

        threats = _provider(max_records=10000).fetch_threats()
        assert len(threats) == 20 * 10

    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_max_records(self, mock_req):
        mock_req.return_value = _page([
            _pulse(indicators=[_indicator(f"i{i}.example") for i in range(10)])
        ])
        assert len(_provider(max_records=3).fetch_threats()) == 3

    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_follows_next_url(self, mock_req):
        next_url = "https://otx.alienvault.com/api/v1/pulses/activity?page=2"
        mock_req.side_effect = [
            _page([_pulse(indicators=[_indicator("one.example")])], next_url),
            _page([_pulse(indicators=[_indicator("two.example")])]),
        ]

        threats = _provider(max_pages=2).fetch_threats()

        assert [t.indicator for t in threats] == ["one.example", "two.example"]
        first_call, second_call = mock_req.call_args_list
        assert first_call.args[1] == DEFAULT_BASE_URL + "/api/v1/pulses/activity"
        assert first_call.kwargs["params"] == {"limit": 20}
        assert second_call.args[1] == next_url
        assert second_call.kwargs["params"] is None

    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_single_page_by_default(self, mock_req):
        mock_req.return_value = _page(
            [_pulse(indicators=[_indicator("one.example")])],
            "https://otx.alienvault.com/api/v1/pulses/activity?page=2",
        )
        _provider().fetch_threats()
        assert mock_req.call_count == 1

    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_api_key_header(self, mock_req):
        mock_req.return_value = _page([])
        _provider(api_key="otx-key").fetch_threats()
        assert mock_req.call_args.kwargs["headers"]["X-OTX-API-KEY"] == "otx-key"

    def test_api_key_removed_when_unset(self):
        provider = _provider(api_key="otx-key")
        provider.configure(api_key=None)
        assert "X-OTX-API-KEY" not in provider.http.headers


# ============================================================================
# Errors
# ============================================================================


class TestErrors:
    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_invalid_format(self, mock_req):
        mock_req.return_value = _mock_response(200, {"detail": "nope"})
        provider = _provider()
        with pytest.raises(FeedUnavailable, match="invalid response format"):
            provider.fetch_threats()
        assert provider.get_stats()["total_errors"] == 1

    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_invalid_json(self, mock_req):
        resp = _mock_response(200)
        resp.json.side_effect = ValueError("Expecting value")
        mock_req.return_value = resp
        with pytest.raises(FeedUnavailable, match="invalid JSON"):
            _provider().fetch_threats()

    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_forbidden(self, mock_req):
        mock_req.return_value = _mock_response(403)
        with pytest.raises(FeedUnavailable) as exc_info:
            _provider().fetch_threats()
        assert exc_info.value.provider == "alienvault-otx"
        assert exc_info.value.reason == "HTTP 403"

    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_stats_after_success(self, mock_req):
        mock_req.return_value = _page([_pulse(indicators=[_indicator("a.example")])])
        provider = _provider()
        provider.fetch_threats()
        stats = provider.get_stats()
        assert stats["total_fetched"] == 1
        assert stats["last_fetch"] is not None
