"""
Tests for the IngestionOrchestrator.

Covers: partial and total feed failure, snapshot preservation, the
single-active-run guard, run deadline, cancellation, listener events,
retention, scheduling and audit logging.
"""

import json
import threading

import pytest

from phishnet_intel.core.audit_log import AuditLogger
from phishnet_intel.intel.classifier import Classifier
from phishnet_intel.intel.exceptions import (
    AlreadyRunning,
    FeedUnavailable,
    RunCancelled,
    RunFailed,
    UpsertConflict,
)
from phishnet_intel.intel.models import (
    RawThreat,
    RunState,
    ThreatType,
)
from phishnet_intel.intel.orchestrator import (
    INGESTION_JOB_ID,
    RETENTION_JOB_ID,
    IngestionOrchestrator,
)
from phishnet_intel.intel.provider import FeedProvider
from phishnet_intel.intel.store import to_timestamp


# ============================================================================
# Stub providers
# ============================================================================


class StubProvider(FeedProvider):
    """Provider returning canned records or raising a canned error."""

    def __init__(self, name, records=None, error=None):
        super().__init__(name)
        self.records = list(records or [])
        self.error = error
        self.calls = 0

    def configure(self, **kwargs):
        pass

    def fetch_threats(self, cancel_event=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.records)


class BlockingProvider(FeedProvider):
    """Provider that waits for the run's cancel event (or a gate)."""

    def __init__(self, name="slow", gate=None, records=None):
        super().__init__(name)
        self.started = threading.Event()
        self.gate = gate
        self.records = list(records or [])

    def configure(self, **kwargs):
        pass

    def fetch_threats(self, cancel_event=None):
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
            return list(self.records)
        cancel_event.wait(10)
        raise FeedUnavailable(self.name, "cancelled")


def _raw(value, source, threat_type="phishing", confidence=80):
    return RawThreat(
        source=source,
        indicator=value,
        threat_type=threat_type,
        confidence=confidence,
    )


@pytest.fixture
def orch(store):
    return IngestionOrchestrator(store)


# ============================================================================
# Run outcomes
# ============================================================================


class TestRunOutcome:
    def test_partial_failure_completes(self, orch, store):
        orch.register(StubProvider("feed-a", [
            _raw("evil-a.example", "feed-a"),
            _raw("http://evil-b.example/x", "feed-a", "malware_download"),
        ]))
        orch.register(StubProvider("feed-b", [_raw("evil-c.example", "feed-b")]))
        orch.register(StubProvider("feed-c", error=FeedUnavailable("feed-c", "HTTP 503")))

        report = orch.run_now()

        assert report.state == RunState.COMPLETED
        assert orch.state == RunState.COMPLETED
        assert report.sources == ["feed-a", "feed-b"]
        assert report.failures == {"feed-c": "HTTP 503"}
        assert report.total_fetched == 3
        assert report.created == 3
        assert report.analysis.total_threats == 3
        assert report.analysis.active_sources == 2
        assert store.load_analysis() == report.analysis

    def test_records_classified_before_upsert(self, orch, store):
        orch.register(StubProvider("openphish", [
            _raw("http://x.example/login", "openphish", "phishing", 90),
            _raw("1.2.3.4", "openphish", "botnet_cc", 50),
        ]))
        orch.run_now()

        phish = store.get_by_key("http://x.example/login")
        assert phish.threat_type == ThreatType.PHISHING
        assert phish.confidence == 100  # 0.7*90 + 0.3*90 + 15
        assert store.get_by_key("1.2.3.4").threat_type == ThreatType.MALWARE

    def test_second_run_merges(self, orch, store):
        orch.register(StubProvider("feed-a", [_raw("a.example", "feed-a"),
                                              _raw("b.example", "feed-a")]))
        orch.run_now()
        report = orch.run_now()

        assert report.created == 0
        assert report.merged == 2
        assert store.count() == 2

    def test_unnormalizable_records_dropped(self, orch, store):
        orch.register(StubProvider("feed-a", [
            RawThreat(source="feed-a", indicator="  ", url=None, domain=""),
            _raw("ok.example", "feed-a"),
        ]))
        report = orch.run_now()
        assert report.dropped == 1
        assert report.created == 1

    def test_upsert_conflict_counted(self, orch, store, monkeypatch):
        real_upsert = store.upsert

        def flaky_upsert(indicator, now=None):
            if indicator.normalized_indicator == "contended.example":
                raise UpsertConflict(indicator.normalized_indicator, 3)
            return real_upsert(indicator, now=now)

        monkeypatch.setattr(store, "upsert", flaky_upsert)
        orch.register(StubProvider("feed-a", [
            _raw("contended.example", "feed-a"), _raw("fine.example", "feed-a"),
        ]))
        report = orch.run_now()

        assert report.state == RunState.COMPLETED
        assert report.conflicts == 1
        assert report.dropped == 1
        assert report.created == 1

    def test_empty_feed_is_usable(self, orch, store):
        orch.register(StubProvider("quiet"))
        report = orch.run_now()
        assert report.state == RunState.COMPLETED
        assert report.sources == ["quiet"]
        assert store.load_analysis().total_threats == 0

    def test_daily_statistics_recorded(self, orch, store, clock):
        orch.register(StubProvider("feed-a", [_raw("a.example", "feed-a")]))
        orch.run_now()
        rows = store.daily_statistics(clock.now.date())
        assert rows == [{
            "day": "2025-03-10", "source": "feed-a",
            "threat_type": "phishing", "indicator_count": 1,
        }]


class TestRunFailure:
    def test_all_providers_failing_keeps_snapshot(self, orch, store, clock):
        a = StubProvider("feed-a", [_raw("a.example", "feed-a")])
        b = StubProvider("feed-b", [_raw("b.example", "feed-b")])
        orch.register(a)
        orch.register(b)
        first = orch.run_now()
        snapshot = store.load_analysis()

        clock.advance(hours=2)
        a.error = FeedUnavailable("feed-a", "HTTP 500")
        b.error = RuntimeError("boom")

        with pytest.raises(RunFailed) as exc_info:
            orch.run_now()

        assert exc_info.value.reason == "all 2 providers failed"
        failed = exc_info.value.report
        assert failed.failures == {"feed-a": "HTTP 500", "feed-b": "RuntimeError: boom"}
        assert orch.state == RunState.FAILED
        assert orch.last_report is failed
        assert store.load_analysis() == snapshot
        assert store.load_analysis().computed_at == first.analysis.computed_at

    def test_no_providers(self, orch):
        with pytest.raises(RunFailed, match="no providers configured"):
            orch.run_now()
        assert orch.state == RunState.FAILED

    def test_unexpected_error_wrapped(self, orch, store, monkeypatch):
        def broken(now=None):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(orch._analyzer, "compute_analysis", broken)
        orch.register(StubProvider("feed-a", [_raw("a.example", "feed-a")]))

        with pytest.raises(RunFailed, match="unexpected error: disk on fire"):
            orch.run_now()
        assert orch.state == RunState.FAILED
        assert store.load_analysis() is None

    def test_failed_run_does_not_notify(self, orch):
        events = []
        orch.add_listener(events.append)
        orch.register(StubProvider("feed-a", error=FeedUnavailable("feed-a", "HTTP 500")))
        with pytest.raises(RunFailed):
            orch.run_now()
        assert events == []


# ============================================================================
# Concurrency guard, deadline & cancellation
# ============================================================================


class TestSingleActiveRun:
    def test_second_trigger_rejected(self, orch):
        gate = threading.Event()
        provider = BlockingProvider("gated", gate=gate, records=[_raw("a.example", "gated")])
        orch.register(provider)

        run_id = orch.trigger()
        assert orch.state == RunState.RUNNING
        assert orch.active_run_id == run_id

        with pytest.raises(AlreadyRunning):
            orch.run_now()
        with pytest.raises(AlreadyRunning):
            orch.trigger()

        gate.set()
        assert orch.wait_for_background(5)
        assert orch.state == RunState.COMPLETED
        assert orch.last_report.run_id == run_id
        assert orch.active_run_id is None

    def test_scheduled_run_skips_when_busy(self, orch):
        gate = threading.Event()
        orch.register(BlockingProvider("gated", gate=gate))
        orch.trigger()

        orch._scheduled_run()  # must not raise

        gate.set()
        orch.wait_for_background(5)

    def test_scheduled_run_swallows_failure(self, orch):
        orch._scheduled_run()
        assert orch.state == RunState.FAILED


class TestDeadline:
    def test_straggler_marked_timeout(self, store):
        orch = IngestionOrchestrator(store, run_deadline_seconds=0.3)
        slow = BlockingProvider("slow")
        orch.register(StubProvider("fast", [_raw("a.example", "fast")]))
        orch.register(slow)

        report = orch.run_now()

        assert report.state == RunState.COMPLETED
        assert report.sources == ["fast"]
        assert report.failures == {"slow": "timeout"}
        assert store.count() == 1

    def test_all_timing_out_fails(self, store):
        orch = IngestionOrchestrator(store, run_deadline_seconds=0.2)
        orch.register(BlockingProvider("slow"))
        with pytest.raises(RunFailed, match="all 1 providers failed"):
            orch.run_now()


class TestCancel:
    def test_cancel_without_run(self, orch):
        assert orch.cancel() is False

    def test_cancel_during_fetch(self, orch, store):
        provider = BlockingProvider("slow")
        orch.register(provider)

        orch.trigger()
        assert provider.started.wait(5)
        assert orch.cancel() is True
        assert orch.wait_for_background(5)

        report = orch.last_report
        assert report.state == RunState.FAILED
        assert report.error == "cancelled"
        assert orch.state == RunState.FAILED
        assert orch.cancel() is False
        assert store.load_analysis() is None

    def test_cancel_during_ingest_keeps_written_rows(self, store):
        class CancellingClassifier(Classifier):
            orchestrator = None

            def classify(self, raw, source=None):
                self.orchestrator.cancel()
                return super().classify(raw, source)

        classifier = CancellingClassifier()
        orch = IngestionOrchestrator(store, classifier=classifier)
        classifier.orchestrator = orch
        orch.register(StubProvider("feed-a", [
            _raw("one.example", "feed-a"),
            _raw("two.example", "feed-a"),
            _raw("three.example", "feed-a"),
        ]))

        with pytest.raises(RunCancelled) as exc_info:
            orch.run_now()

        assert exc_info.value.report.created == 1
        assert store.count() == 1
        assert store.get_by_key("one.example") is not None
        assert store.load_analysis() is None


# ============================================================================
# Listeners
# ============================================================================


class TestListeners:
    def test_ingestion_finished_event(self, orch):
        events = []
        orch.add_listener(events.append)
        orch.register(StubProvider("feed-a", [_raw("a.example", "feed-a")]))
        orch.register(StubProvider("feed-b", error=FeedUnavailable("feed-b", "HTTP 429")))

        report = orch.run_now()

        assert len(events) == 1
        event = events[0]
        assert event.run_id == report.run_id
        assert event.new_count == 1
        assert event.merged_count == 0
        assert event.dropped_count == 0
        assert event.sources == ["feed-a"]
        assert event.failures == {"feed-b": "HTTP 429"}
        assert event.finished_at == report.finished

    def test_run_timestamps_follow_engine_clock(self, orch, store, clock):
        events = []
        orch.add_listener(events.append)
        orch.register(StubProvider("feed-a", [_raw("a.example", "feed-a")]))

        report = orch.run_now()

        stamp = to_timestamp(clock.now)
        assert report.started == stamp
        assert report.finished == stamp
        assert events[0].finished_at == stamp
        assert store.get_by_key("a.example").first_seen == stamp

    def test_listener_error_does_not_fail_run(self, orch):
        received = []

        def broken(event):
            raise RuntimeError("notifier down")

        orch.add_listener(broken)
        orch.add_listener(received.append)
        orch.register(StubProvider("feed-a", [_raw("a.example", "feed-a")]))

        report = orch.run_now()
        assert report.state == RunState.COMPLETED
        assert len(received) == 1

    def test_remove_listener(self, orch):
        events = []
        orch.add_listener(events.append)
        orch.remove_listener(events.append)
        orch.register(StubProvider("feed-a"))
        orch.run_now()
        assert events == []


# ============================================================================
# Retention, scheduling, status & audit
# ============================================================================


class TestRetention:
    def test_apply_retention(self, orch, store, clock):
        orch.register(StubProvider("feed-a", [_raw("a.example", "feed-a")]))
        orch.run_now()
        clock.advance(days=31)
        assert orch.apply_retention() == 1
        assert store.count(active_only=True) == 0


class TestScheduler:
    def test_start_and_stop(self, orch):
        orch.start(interval_hours=1)
        try:
            assert orch.is_running
            assert orch.interval_hours == 1
            assert orch._scheduler.get_job(INGESTION_JOB_ID) is not None
            assert orch._scheduler.get_job(RETENTION_JOB_ID) is not None
            assert orch.next_run_time() is not None
            status = orch.status()
            assert status["scheduler_running"] is True
            assert status["next_run_time"] == orch.next_run_time()
        finally:
            orch.stop()
        assert not orch.is_running
        assert orch.next_run_time() is None

    def test_invalid_interval(self, orch):
        with pytest.raises(ValueError):
            orch.start(interval_hours=0)
        assert not orch.is_running

    def test_stop_when_not_started(self, orch):
        orch.stop()
        assert not orch.is_running


class TestStatus:
    def test_status_before_and_after_run(self, orch):
        orch.register(StubProvider("feed-a", [_raw("a.example", "feed-a")]))
        status = orch.status()
        assert status["state"] == "idle"
        assert status["providers"] == ["feed-a"]
        assert status["last_report"] is None

        orch.run_now()
        status = orch.status()
        assert status["state"] == "completed"
        assert status["last_report"]["created"] == 1
        assert status["provider_stats"][0]["name"] == "feed-a"


class TestAudit:
    def test_run_events_written(self, store, tmp_path):
        audit = AuditLogger(log_dir=tmp_path / "audit")
        orch = IngestionOrchestrator(store, audit=audit)
        orch.register(StubProvider("feed-a", [_raw("a.example", "feed-a")]))
        orch.register(StubProvider("feed-b", error=FeedUnavailable("feed-b", "HTTP 503")))

        orch.run_now()

        lines = audit.log_file.read_text(encoding="utf-8").splitlines()
        types = [json.loads(line)["event_type"] for line in lines if line.strip()]
        assert types == ["ingestion.started", "feed.unavailable", "ingestion.completed"]

    def test_rejection_audited(self, store, tmp_path):
        audit = AuditLogger(log_dir=tmp_path / "audit")
        orch = IngestionOrchestrator(store, audit=audit)
        gate = threading.Event()
        orch.register(BlockingProvider("gated", gate=gate))
        orch.trigger()
        with pytest.raises(AlreadyRunning):
            orch.run_now()
        gate.set()
        orch.wait_for_background(5)

        text = audit.log_file.read_text(encoding="utf-8")
        assert "ingestion.rejected" in text
