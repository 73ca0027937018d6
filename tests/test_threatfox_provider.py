"""
Tests for the abuse.ch ThreatFox IOC provider.
"""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from phishnet_intel.intel.classifier import Classifier
from phishnet_intel.intel.exceptions import FeedUnavailable
from phishnet_intel.intel.http_client import FeedHttpClient
from phishnet_intel.intel.models import IndicatorType, ThreatType
from phishnet_intel.intel.threatfox_provider import (
    DEFAULT_BASE_URL,
    PROVIDER_NAME,
    ThreatFoxProvider,
    strip_port,
)


def _entry(ioc, ioc_type, **extra):
    entry = {
        "id": "1",
        "ioc": ioc,
        "ioc_type": ioc_type,
        "threat_type": "botnet_cc",
        "malware_printable": "Cobalt Strike",
        "confidence_level": 100,
        "first_seen": "2025-03-10 08:00:00 UTC",
        "tags": ["c2", "beacon"],
        "reporter": "abuse_ch",
    }
    entry.update(extra)
    return entry


def _mock_response(status_code=200, json_data=None):
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    resp.headers = {}
    resp.json.return_value = json_data if json_data is not None else {}
    return resp


def _provider(**config):
    provider = ThreatFoxProvider(
        http=FeedHttpClient(PROVIDER_NAME, base_url=DEFAULT_BASE_URL, initial_backoff=0)
    )
    provider.configure(**config)
    return provider


class TestStripPort:
    @pytest.mark.parametrize("value,expected", [
        ("1.2.3.4:443", "1.2.3.4"),
        ("[2001:db8::1]:8443", "2001:db8::1"),
        ("2001:db8::1", "2001:db8::1"),
        ("1.2.3.4", "1.2.3.4"),
    ])
    def test_strip(self, value, expected):
        assert strip_port(value) == expected


class TestParse:
    def test_types_mapped(self):
        threats = _provider().parse_response({"query_status": "ok", "data": [
            _entry("1.2.3.4:443", "ip:port"),
            _entry("[2001:db8::1]:443", "ip:port"),
            _entry("c2.example", "domain"),
            _entry("http://c2.example/gate.php", "url"),
            _entry("b" * 64, "sha256_hash"),
            _entry("x@example.com", "email"),
        ]})

        assert [t.indicator for t in threats] == [
            "1.2.3.4", "2001:db8::1", "c2.example",
            "http://c2.example/gate.php", "b" * 64,
        ]
        assert [t.indicator_type for t in threats] == [
            IndicatorType.IP, IndicatorType.IP, IndicatorType.DOMAIN,
            IndicatorType.URL, IndicatorType.HASH,
        ]
        assert threats[2].domain == "c2.example"
        assert threats[3].domain == "c2.example"

    def test_record_fields(self):
        threat = _provider().parse_response({
            "query_status": "ok", "data": [_entry("1.2.3.4:443", "ip:port")],
        })[0]
        assert threat.source == "abuse.ch-threatfox"
        assert threat.threat_type == "Cobalt Strike"
        assert threat.malware_family == "Cobalt Strike"
        assert threat.confidence == 100
        assert threat.tags == ["threatfox", "cobalt_strike", "c2", "beacon"]
        assert threat.description == "Cobalt Strike IOC: 1.2.3.4"
        assert threat.reported_first_seen == "2025-03-10 08:00:00 UTC"

    def test_defaults_and_comment(self):
        threat = _provider().parse_response({"query_status": "ok", "data": [
            _entry("c2.example", "domain", confidence_level=None,
                   comment="seen beaconing", threat_type=None, malware_printable=None,
                   threat_type_desc="payload_delivery"),
        ]})[0]
        assert threat.confidence == 75
        assert threat.description == "seen beaconing"
        assert threat.threat_type == "payload_delivery"

    def test_no_result(self):
        assert _provider().parse_response({"query_status": "no_result"}) == []

    def test_bad_status(self):
        with pytest.raises(FeedUnavailable, match="illegal_search_term"):
            _provider().parse_response({"query_status": "illegal_search_term"})

    def test_max_records(self):
        data = [_entry(f"h{i}.example", "domain") for i in range(10)]
        threats = _provider(max_records=4).parse_response({"query_status": "ok", "data": data})
        assert len(threats) == 4


class TestFetch:
    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_post_query(self, mock_req):
        mock_req.return_value = _mock_response(200, {"query_status": "ok", "data": []})
        _provider(api_key="tf-key", days=3).fetch_threats()

        args, kwargs = mock_req.call_args
        assert args == ("POST", "https://threatfox-api.abuse.ch/api/v1/")
        assert kwargs["json"] == {"query": "get_iocs", "days": 3}
        assert kwargs["headers"]["Auth-Key"] == "tf-key"

    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_days_clamped(self, mock_req):
        mock_req.return_value = _mock_response(200, {"query_status": "no_result"})
        _provider(days=30).fetch_threats()
        assert mock_req.call_args.kwargs["json"]["days"] == 7

    @patch("phishnet_intel.intel.http_client.httpx.request")
    def test_unauthorized(self, mock_req):
        mock_req.return_value = _mock_response(401)
        with pytest.raises(FeedUnavailable, match="HTTP 401"):
            _provider().fetch_threats()


class TestClassification:
    def _classify(self, entry):
        threat = _provider().parse_response({"query_status": "ok", "data": [entry]})[0]
        return Classifier().classify(threat).threat_type

    def test_named_family_is_malware(self):
        entry = _entry("http://drop.example/a.bin", "url",
                       threat_type="payload_delivery", malware_printable="Cobalt Strike")
        assert self._classify(entry) == ThreatType.MALWARE

    def test_unnamed_payload_delivery_is_malware(self):
        entry = _entry("drop.example", "domain",
                       threat_type="payload_delivery", malware_printable=None)
        assert self._classify(entry) == ThreatType.MALWARE

    def test_phishing_kit_family(self):
        entry = _entry("kit.example", "domain", malware_printable="PhishKit Generic")
        assert self._classify(entry) == ThreatType.PHISHING
