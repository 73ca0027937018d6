# PhishNet Intel - Main Package
#
# Threat intelligence ingestion and aggregation engine: pulls IOC feeds,
# normalizes and deduplicates them into one indicator store, classifies
# confidence and threat type, and keeps a dashboard snapshot current.

__version__ = "1.0.0"
__author__ = "PhishNet Team"
__description__ = "Threat intelligence ingestion and aggregation engine"

from .core import (
    EventSeverity,
    EventType,
    IntelSettings,
    get_audit_logger,
    load_settings,
)

__all__ = [
    "__version__",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "IntelSettings",
    "load_settings",
]
