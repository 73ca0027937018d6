# Core Module - Engine Configuration
#
# Settings are read from environment variables.  A ``.env`` file in the
# working directory (or an explicit path) is loaded first with
# python-dotenv; real environment variables always win over the file.

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv

DEFAULT_DB_PATH = "./data/threat_intel.db"
DEFAULT_AUDIT_DIR = "./audit_logs"

ALL_FEEDS = (
    "alienvault-otx",
    "abuse.ch-urlhaus",
    "abuse.ch-threatfox",
    "openphish",
    "phishing-database",
)


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be > 0, got {value}")
    return value


def _env_list(env: Mapping[str, str], name: str, default: List[str]) -> List[str]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_weights(env: Mapping[str, str], name: str) -> Dict[str, int]:
    """Parse ``feed=weight,feed=weight`` into a dict (weights clamped to 0-100)."""
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return {}
    weights: Dict[str, int] = {}
    for pair in raw.split(","):
        if not pair.strip():
            continue
        source, sep, value = pair.partition("=")
        if not sep:
            raise ValueError(f"{name} entries must look like feed=weight, got {pair!r}")
        try:
            weights[source.strip()] = max(0, min(100, int(value)))
        except ValueError:
            raise ValueError(
                f"{name} weight for {source.strip()!r} must be an integer"
            ) from None
    return weights


@dataclass
class IntelSettings:
    """Runtime configuration for the ingestion engine."""

    db_path: str = DEFAULT_DB_PATH
    audit_dir: str = DEFAULT_AUDIT_DIR
    admin_token: Optional[str] = None

    otx_api_key: Optional[str] = None
    threatfox_api_key: Optional[str] = None
    enabled_feeds: List[str] = field(default_factory=lambda: list(ALL_FEEDS))
    max_records_per_feed: int = 1000
    http_timeout_seconds: float = 30.0

    ingest_interval_hours: float = 2.0
    run_deadline_seconds: float = 120.0
    retention_days: int = 30
    recent_limit: int = 10
    top_types_limit: int = 5

    source_reputation: Dict[str, int] = field(default_factory=dict)

    def feed_enabled(self, name: str) -> bool:
        return name in self.enabled_feeds


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[Path] = None,
) -> IntelSettings:
    """Build ``IntelSettings`` from the environment.

    Args:
        env: Mapping to read instead of ``os.environ`` (tests).  When
             given, no ``.env`` file is loaded.
        dotenv_path: Explicit ``.env`` file to load before reading
                     ``os.environ``.

    Raises:
        ValueError: if a numeric variable is malformed or out of range.
    """
    if env is None:
        load_dotenv(dotenv_path=dotenv_path, override=False)
        env = os.environ

    enabled = _env_list(env, "INTEL_ENABLED_FEEDS", list(ALL_FEEDS))
    unknown = [name for name in enabled if name not in ALL_FEEDS]
    if unknown:
        raise ValueError(f"INTEL_ENABLED_FEEDS has unknown feeds: {', '.join(unknown)}")

    return IntelSettings(
        db_path=env.get("PHISHNET_INTEL_DB") or DEFAULT_DB_PATH,
        audit_dir=env.get("PHISHNET_INTEL_AUDIT_DIR") or DEFAULT_AUDIT_DIR,
        admin_token=env.get("PHISHNET_ADMIN_TOKEN") or None,
        otx_api_key=env.get("OTX_API_KEY") or None,
        threatfox_api_key=env.get("THREATFOX_API_KEY") or None,
        enabled_feeds=enabled,
        max_records_per_feed=_env_int(env, "INTEL_MAX_RECORDS_PER_FEED", 1000, minimum=1),
        http_timeout_seconds=_env_float(env, "INTEL_HTTP_TIMEOUT_SECONDS", 30.0),
        ingest_interval_hours=_env_float(env, "INTEL_INGEST_INTERVAL_HOURS", 2.0),
        run_deadline_seconds=_env_float(env, "INTEL_RUN_DEADLINE_SECONDS", 120.0),
        retention_days=_env_int(env, "INTEL_RETENTION_DAYS", 30, minimum=1),
        recent_limit=_env_int(env, "INTEL_RECENT_LIMIT", 10, minimum=1),
        top_types_limit=_env_int(env, "INTEL_TOP_TYPES_LIMIT", 5, minimum=1),
        source_reputation=_env_weights(env, "INTEL_SOURCE_REPUTATION"),
    )
