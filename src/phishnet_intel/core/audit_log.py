# Core Module - Ingestion Audit Trail
#
# Append-only audit log for ingestion lifecycle events.  Every run start,
# completion, failure and cancellation, every unavailable feed and every
# retention pass is written as one JSON line (structlog) into a daily
# file, so operators can reconstruct what the engine did and when.

import logging
import os
import socket
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog

from .config import DEFAULT_AUDIT_DIR

AUDIT_LOGGER_NAME = "phishnet_intel.audit"


class EventType(str, Enum):
    """Types of engine events that are audited."""

    INGESTION_STARTED = "ingestion.started"
    INGESTION_COMPLETED = "ingestion.completed"
    INGESTION_FAILED = "ingestion.failed"
    INGESTION_CANCELLED = "ingestion.cancelled"
    INGESTION_REJECTED = "ingestion.rejected"

    FEED_UNAVAILABLE = "feed.unavailable"

    RETENTION_APPLIED = "retention.applied"

    SYSTEM_START = "system.start"
    SYSTEM_STOP = "system.stop"


class EventSeverity(str, Enum):
    """Severity levels for audited events.

    - INFO: normal activity
    - INVESTIGATE: degraded but recovered (a feed was unavailable)
    - ALERT: a run failed, dashboards keep the previous snapshot
    - CRITICAL: the engine itself could not operate
    """

    INFO = "info"
    INVESTIGATE = "investigate"
    ALERT = "alert"
    CRITICAL = "critical"


class AuditLogger:
    """Append-only structured audit logger.

    Each event carries a generated event ID, timestamp, event type,
    severity, message, free-form details and host context.
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./audit_logs)
        """
        self.log_dir = Path(log_dir or DEFAULT_AUDIT_DIR)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=False,
        )

        self.log_file = self._setup_file_handler()
        self.logger = structlog.get_logger(AUDIT_LOGGER_NAME)

    def _setup_file_handler(self) -> Path:
        """Attach a handler for today's audit file to the audit logger."""
        today = datetime.now().strftime("%Y-%m-%d")
        log_file = self.log_dir / f"audit_{today}.log"

        std_logger = logging.getLogger(AUDIT_LOGGER_NAME)
        # Drop handlers from an earlier instance so events are not duplicated
        for handler in list(std_logger.handlers):
            if getattr(handler, "_phishnet_audit", False):
                std_logger.removeHandler(handler)
                handler.close()

        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        file_handler._phishnet_audit = True

        std_logger.addHandler(file_handler)
        std_logger.setLevel(logging.INFO)
        return log_file

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Append one event to the audit log.

        Args:
            event_type: Type of event (from EventType enum)
            severity: Severity level (from EventSeverity enum)
            message: Human-readable event description
            details: Additional event details (counts, feed names)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())
        self.logger.info(
            "intel_event",
            event_id=event_id,
            event_type=event_type.value,
            severity=severity.value,
            message=message,
            timestamp=datetime.utcnow().isoformat(),
            details=details or {},
            context=self._get_context(),
        )
        return event_id

    def _get_context(self) -> Dict[str, Any]:
        return {
            "os_user": os.getenv("USERNAME") or os.getenv("USER"),
            "hostname": socket.gethostname(),
            "platform": sys.platform,
            "pid": os.getpid(),
        }


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def configure_audit_logger(log_dir: Path) -> AuditLogger:
    """Replace the global audit logger with one writing under ``log_dir``."""
    global _audit_logger
    _audit_logger = AuditLogger(log_dir=log_dir)
    return _audit_logger
