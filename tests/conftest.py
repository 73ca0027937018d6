"""
Shared pytest fixtures for the PhishNet Intel test suite.

Autouse fixtures below isolate tests from live data:
  - Audit logger   -> temp directory  (no test events in ./audit_logs)
  - API singletons -> reset per test  (service and admin token)
"""

from datetime import datetime, timedelta

import pytest


class FakeClock:
    """Controllable naive-UTC clock for stores and orchestrators."""

    def __init__(self, start: datetime = datetime(2025, 3, 10, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path, monkeypatch):
    """Redirect the global AuditLogger to a temp directory for every test.

    Without this, any test that (directly or indirectly) calls
    ``get_audit_logger().log_event(...)`` writes into the real
    ``./audit_logs/`` directory.
    """
    import phishnet_intel.core.audit_log as audit_mod

    # Reset the singleton so the next get_audit_logger() call creates a
    # fresh instance pointing at the temp directory.
    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = None

    orig_init = audit_mod.AuditLogger.__init__

    def patched_init(self, log_dir=None):
        orig_init(self, log_dir=log_dir or tmp_path / "audit_logs")

    monkeypatch.setattr(audit_mod.AuditLogger, "__init__", patched_init)

    yield

    audit_mod._audit_logger = old_logger


@pytest.fixture(autouse=True)
def _isolate_api_singletons():
    """Reset the router's service singleton and the admin token."""
    import phishnet_intel.api.routes as routes_mod
    import phishnet_intel.api.security as security_mod

    old_service = routes_mod._service
    old_token = security_mod._ADMIN_TOKEN
    routes_mod._service = None
    security_mod._ADMIN_TOKEN = None

    yield

    routes_mod._service = old_service
    security_mod._ADMIN_TOKEN = old_token


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    from phishnet_intel.intel.store import IndicatorStore

    s = IndicatorStore(":memory:", clock=clock)
    yield s
    s.close()
