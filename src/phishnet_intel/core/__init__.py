# Core Module - Shared Utilities
#
# Configuration, SQLite connection helper and the audit trail shared by
# the intel engine, the API and the CLI.

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    configure_audit_logger,
    get_audit_logger,
)
from .config import IntelSettings, load_settings
from .db import connect

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "configure_audit_logger",
    # Configuration
    "IntelSettings",
    "load_settings",
    # Database
    "connect",
]
