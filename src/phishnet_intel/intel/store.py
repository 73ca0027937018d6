# Intel Module - Indicator Store (SQLite)
#
# Persistent storage for canonical indicators, the dashboard snapshot and
# daily statistics.  The ``indicators`` table is the only shared mutable
# resource of the engine and is written exclusively through ``upsert()``:
#
#   - one row per non-null normalized_indicator (partial unique index)
#   - each upsert is one BEGIN IMMEDIATE read-modify-write transaction
#   - a lost insert race (IntegrityError) is retried with a fresh read
#   - rows are never deleted, only deactivated by the aging policy

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from ..core.config import DEFAULT_DB_PATH
from ..core.db import IN_MEMORY
from ..core.db import connect as db_connect
from .exceptions import UpsertConflict
from .models import (
    Indicator,
    IndicatorType,
    ThreatAnalysis,
    ThreatType,
    UpsertOutcome,
    merge_tags,
)

logger = logging.getLogger(__name__)

MAX_UPSERT_ATTEMPTS = 3

# Columns filled from a later sighting only while still empty
_FILL_IF_EMPTY = (
    "description",
    "url",
    "domain",
    "malware_family",
    "campaign_name",
    "reported_first_seen",
    "raw_data",
)

# Added after the first schema version; backfilled by ALTER TABLE
_ADDED_COLUMNS = (
    ("campaign_name", "TEXT"),
    ("reported_first_seen", "TEXT"),
    ("raw_data", "TEXT"),
)


def to_timestamp(value: datetime) -> str:
    """Engine timestamps are naive UTC, ISO 8601 with microseconds."""
    return value.isoformat(timespec="microseconds")


def _dump_raw_data(raw_data: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(raw_data, sort_keys=True) if raw_data else None


def _fill_values(ind: Indicator) -> Dict[str, Any]:
    """Incoming values for the fill-if-empty columns, as stored."""
    values = {column: getattr(ind, column) for column in _FILL_IF_EMPTY}
    values["raw_data"] = _dump_raw_data(ind.raw_data)
    return values


class IndicatorStore:
    """SQLite-backed store for deduplicated threat indicators.

    Thread-safe: the connection is guarded by a reentrant lock and every
    write runs inside ``BEGIN IMMEDIATE`` so that other connections to the
    same database file wait for the writer instead of interleaving.
    """

    SCHEMA_VERSION = 2

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db_path = str(db_path)
        self.clock = clock
        self._lock = threading.RLock()
        if self.db_path != IN_MEMORY:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = db_connect(self.db_path, check_same_thread=False, row_factory=True)
        # Transactions are managed explicitly (BEGIN IMMEDIATE ... COMMIT)
        self._conn.isolation_level = None
        self._create_tables()

    def _create_tables(self) -> None:
        """Create the schema if it doesn't already exist."""
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS indicators (
                    id                   TEXT    PRIMARY KEY,
                    indicator            TEXT    NOT NULL,
                    normalized_indicator TEXT,
                    indicator_type       TEXT    NOT NULL,
                    threat_type          TEXT    NOT NULL DEFAULT 'other',
                    source               TEXT    NOT NULL,
                    confidence           INTEGER NOT NULL DEFAULT 50
                        CHECK (confidence BETWEEN 0 AND 100),
                    is_active            INTEGER NOT NULL DEFAULT 1,
                    first_seen           TEXT    NOT NULL,
                    last_seen            TEXT    NOT NULL,
                    tags                 TEXT    NOT NULL DEFAULT '[]',
                    description          TEXT,
                    url                  TEXT,
                    domain               TEXT,
                    malware_family       TEXT,
                    campaign_name        TEXT,
                    reported_first_seen  TEXT,
                    raw_data             TEXT,
                    created_at           TEXT    NOT NULL,
                    updated_at           TEXT    NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_indicators_normalized
                    ON indicators(normalized_indicator)
                    WHERE normalized_indicator IS NOT NULL;
                CREATE INDEX IF NOT EXISTS idx_indicators_first_seen
                    ON indicators(first_seen DESC);
                CREATE INDEX IF NOT EXISTS idx_indicators_active
                    ON indicators(is_active);
                CREATE INDEX IF NOT EXISTS idx_indicators_source
                    ON indicators(source);
                CREATE INDEX IF NOT EXISTS idx_indicators_threat_type
                    ON indicators(threat_type);

                CREATE TABLE IF NOT EXISTS threat_analysis (
                    id          INTEGER PRIMARY KEY CHECK (id = 1),
                    payload     TEXT    NOT NULL,
                    computed_at TEXT    NOT NULL
                );

                CREATE TABLE IF NOT EXISTS threat_statistics (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    day             TEXT    NOT NULL,
                    source          TEXT    NOT NULL,
                    threat_type     TEXT    NOT NULL,
                    indicator_count INTEGER NOT NULL DEFAULT 0,
                    updated_at      TEXT    NOT NULL,
                    UNIQUE (day, source, threat_type)
                );

                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER NOT NULL
                );
                """
            )
            row = self._conn.execute(
                "SELECT version FROM schema_version LIMIT 1"
            ).fetchone()
            if row is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )
            elif row["version"] < self.SCHEMA_VERSION:
                self._migrate()

    def _migrate(self) -> None:
        """Bring a version 1 database up to the current schema."""
        existing = {
            r["name"] for r in self._conn.execute("PRAGMA table_info(indicators)")
        }
        for column, decl in _ADDED_COLUMNS:
            if column not in existing:
                self._conn.execute(f"ALTER TABLE indicators ADD COLUMN {column} {decl}")
        self._conn.execute("UPDATE schema_version SET version = ?", (self.SCHEMA_VERSION,))
        logger.info("Indicator store migrated to schema version %d", self.SCHEMA_VERSION)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """``BEGIN IMMEDIATE`` transaction, rolled back on any exception."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def _now(self, now: Optional[datetime]) -> str:
        return to_timestamp(now or self.clock())

    # ------------------------------------------------------------------
    # Upsert
    # ------------------------------------------------------------------

    def upsert(self, indicator: Indicator, now: Optional[datetime] = None) -> UpsertOutcome:
        """Insert or merge ``indicator`` keyed by its normalized value.

        New key: inserted with ``first_seen = last_seen = now``.
        Existing key: ``last_seen`` advances, confidence takes the max,
        tags are unioned, the row is reactivated and empty descriptive
        columns are filled.  Source, threat type, indicator type, raw
        indicator and ``first_seen`` keep the first writer's values.

        Raises:
            ValueError: if the indicator has no normalized key.
            UpsertConflict: if the insert race is lost on every attempt.
        """
        key = indicator.normalized_indicator
        if not key:
            raise ValueError("indicator has no normalized_indicator")
        ts = self._now(now)

        for attempt in range(1, MAX_UPSERT_ATTEMPTS + 1):
            try:
                with self._transaction() as conn:
                    row = self._select_by_key(conn, key)
                    if row is None:
                        self._insert_row(conn, indicator, ts)
                        return UpsertOutcome.CREATED
                    self._merge_row(conn, row, indicator, ts)
                    return UpsertOutcome.MERGED
            except sqlite3.IntegrityError as exc:
                logger.debug(
                    "Upsert of %r lost insert race (%s), attempt %d/%d",
                    key, exc, attempt, MAX_UPSERT_ATTEMPTS,
                )

        raise UpsertConflict(key, MAX_UPSERT_ATTEMPTS)

    def _select_by_key(self, conn: sqlite3.Connection, key: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT * FROM indicators WHERE normalized_indicator = ?", (key,)
        ).fetchone()

    def _insert_row(self, conn: sqlite3.Connection, ind: Indicator, ts: str) -> None:
        conn.execute(
            """
            INSERT INTO indicators
                (id, indicator, normalized_indicator, indicator_type,
                 threat_type, source, confidence, is_active, first_seen,
                 last_seen, tags, description, url, domain, malware_family,
                 campaign_name, reported_first_seen, raw_data,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                uuid.uuid4().hex,
                ind.indicator,
                ind.normalized_indicator,
                ind.indicator_type.value,
                ind.threat_type.value,
                ind.source,
                max(0, min(100, int(ind.confidence))),
                ts,
                ts,
                json.dumps(merge_tags([], ind.tags)),
                ind.description,
                ind.url,
                ind.domain,
                ind.malware_family,
                ind.campaign_name,
                ind.reported_first_seen,
                _dump_raw_data(ind.raw_data),
                ts,
                ts,
            ),
        )

    def _merge_row(
        self, conn: sqlite3.Connection, row: sqlite3.Row, ind: Indicator, ts: str
    ) -> None:
        old_tags = json.loads(row["tags"]) if row["tags"] else []
        fills: Dict[str, Any] = {}
        incoming = _fill_values(ind)
        for column in _FILL_IF_EMPTY:
            fills[column] = row[column] or incoming[column] or None

        conn.execute(
            """
            UPDATE indicators
               SET last_seen = ?,
                   confidence = ?,
                   tags = ?,
                   is_active = 1,
                   description = ?,
                   url = ?,
                   domain = ?,
                   malware_family = ?,
                   campaign_name = ?,
                   reported_first_seen = ?,
                   raw_data = ?,
                   updated_at = ?
             WHERE id = ?
            """,
            (
                max(row["last_seen"], ts),
                max(int(row["confidence"]), max(0, min(100, int(ind.confidence)))),
                json.dumps(merge_tags(old_tags, ind.tags)),
                fills["description"],
                fills["url"],
                fills["domain"],
                fills["malware_family"],
                fills["campaign_name"],
                fills["reported_first_seen"],
                fills["raw_data"],
                ts,
                row["id"],
            ),
        )

    # ------------------------------------------------------------------
    # Point reads
    # ------------------------------------------------------------------

    def get_by_key(self, normalized_indicator: str) -> Optional[Indicator]:
        with self._lock:
            row = self._select_by_key(self._conn, normalized_indicator)
        return Indicator.from_row(row) if row else None

    def get_by_id(self, indicator_id: str) -> Optional[Indicator]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM indicators WHERE id = ?", (indicator_id,)
            ).fetchone()
        return Indicator.from_row(row) if row else None

    def get_row(self, normalized_indicator: str) -> Optional[Dict[str, Any]]:
        """Raw column dict, including created_at / updated_at."""
        with self._lock:
            row = self._select_by_key(self._conn, normalized_indicator)
        return dict(row) if row else None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def count(
        self,
        active_only: bool = False,
        threat_type: Optional[ThreatType] = None,
        source: Optional[str] = None,
    ) -> int:
        """Count indicators with optional filters."""
        clauses: List[str] = []
        params: List[Any] = []
        if active_only:
            clauses.append("is_active = 1")
        if threat_type is not None:
            clauses.append("threat_type = ?")
            params.append(threat_type.value)
        if source is not None:
            clauses.append("source = ?")
            params.append(source)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        with self._lock:
            row = self._conn.execute(
                f"SELECT COUNT(*) FROM indicators{where}", params
            ).fetchone()
        return row[0]

    def recent(
        self,
        limit: int = 10,
        threat_type: Optional[ThreatType] = None,
        active_only: bool = True,
    ) -> List[Indicator]:
        """Most recently first-seen indicators, newest first."""
        clauses: List[str] = []
        params: List[Any] = []
        if active_only:
            clauses.append("is_active = 1")
        if threat_type is not None:
            clauses.append("threat_type = ?")
            params.append(threat_type.value)
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        sql = (
            f"SELECT * FROM indicators{where} "
            "ORDER BY first_seen DESC, normalized_indicator ASC LIMIT ?"
        )
        params.append(max(0, int(limit)))
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [Indicator.from_row(r) for r in rows]

    def search(self, query: str, limit: int = 20) -> List[Indicator]:
        """Case-insensitive substring search over active indicators.

        Matches indicator, url, domain, threat type, malware family,
        campaign name and description; strongest confidence first, then newest.
        """
        needle = (query or "").strip().lower()
        if not needle:
            return []
        columns = (
            "indicator", "url", "domain", "threat_type",
            "malware_family", "campaign_name", "description",
        )
        match = " OR ".join(
            f"instr(lower(COALESCE({c}, '')), ?) > 0" for c in columns
        )
        sql = (
            f"SELECT * FROM indicators WHERE is_active = 1 AND ({match}) "
            "ORDER BY confidence DESC, first_seen DESC LIMIT ?"
        )
        params: List[Any] = [needle] * len(columns) + [max(0, int(limit))]
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [Indicator.from_row(r) for r in rows]

    def count_first_seen_between(self, start: datetime, end: datetime) -> int:
        """Indicators whose first sighting falls in ``[start, end)``."""
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM indicators WHERE first_seen >= ? AND first_seen < ?",
                (to_timestamp(start), to_timestamp(end)),
            ).fetchone()
        return row[0]

    def active_source_count(self) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(DISTINCT source) FROM indicators WHERE is_active = 1"
            ).fetchone()
        return row[0]

    def threat_type_counts(self) -> List[Tuple[str, int]]:
        """``(threat_type, count)`` over active rows, count desc, type asc."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT threat_type, COUNT(*) AS n
                  FROM indicators
                 WHERE is_active = 1
                 GROUP BY threat_type
                 ORDER BY n DESC, threat_type ASC
                """
            ).fetchall()
        return [(r["threat_type"], r["n"]) for r in rows]

    def trend_counts(self, since: datetime) -> List[Tuple[str, str, int]]:
        """``(day, threat_type, count)`` for active rows first seen since ``since``."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT substr(first_seen, 1, 10) AS day, threat_type, COUNT(*) AS n
                  FROM indicators
                 WHERE is_active = 1 AND first_seen >= ?
                 GROUP BY day, threat_type
                 ORDER BY day DESC, threat_type ASC
                """,
                (to_timestamp(since),),
            ).fetchall()
        return [(r["day"], r["threat_type"], r["n"]) for r in rows]

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def save_analysis(self, analysis: ThreatAnalysis) -> None:
        """Replace the persisted snapshot in one transaction."""
        payload = json.dumps(analysis.to_dict())
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO threat_analysis (id, payload, computed_at)
                VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    payload = excluded.payload,
                    computed_at = excluded.computed_at
                """,
                (payload, analysis.computed_at or self._now(None)),
            )

    def load_analysis(self) -> Optional[ThreatAnalysis]:
        with self._lock:
            row = self._conn.execute(
                "SELECT payload FROM threat_analysis WHERE id = 1"
            ).fetchone()
        if row is None:
            return None
        return ThreatAnalysis.from_dict(json.loads(row["payload"]))

    # ------------------------------------------------------------------
    # Daily statistics
    # ------------------------------------------------------------------

    def record_daily_statistics(self, day: date, now: Optional[datetime] = None) -> int:
        """Upsert per source / threat type counts of rows first seen on ``day``.

        Returns the number of statistic rows written.
        """
        start = datetime(day.year, day.month, day.day)
        end = start + timedelta(days=1)
        ts = self._now(now)
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT source, threat_type, COUNT(*) AS n
                  FROM indicators
                 WHERE first_seen >= ? AND first_seen < ?
                 GROUP BY source, threat_type
                """,
                (to_timestamp(start), to_timestamp(end)),
            ).fetchall()
            for r in rows:
                conn.execute(
                    """
                    INSERT INTO threat_statistics
                        (day, source, threat_type, indicator_count, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(day, source, threat_type) DO UPDATE SET
                        indicator_count = excluded.indicator_count,
                        updated_at = excluded.updated_at
                    """,
                    (day.isoformat(), r["source"], r["threat_type"], r["n"], ts),
                )
        return len(rows)

    def daily_statistics(self, day: date) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT day, source, threat_type, indicator_count
                  FROM threat_statistics
                 WHERE day = ?
                 ORDER BY source ASC, threat_type ASC
                """,
                (day.isoformat(),),
            ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Aging
    # ------------------------------------------------------------------

    def deactivate_stale(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Deactivate active rows not seen within ``retention_days``.

        Returns the number of rows deactivated.
        """
        current = now or self.clock()
        cutoff = to_timestamp(current - timedelta(days=retention_days))
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE indicators
                   SET is_active = 0, updated_at = ?
                 WHERE is_active = 1 AND last_seen < ?
                """,
                (to_timestamp(current), cutoff),
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Statistics & lifecycle
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Return summary statistics for the indicator store."""
        by_type = {t.value: self.count(active_only=True, threat_type=t) for t in ThreatType}
        with self._lock:
            rows = self._conn.execute(
                "SELECT indicator_type, COUNT(*) AS n FROM indicators GROUP BY indicator_type"
            ).fetchall()
            sources = self._conn.execute(
                "SELECT source, COUNT(*) AS n FROM indicators GROUP BY source ORDER BY source"
            ).fetchall()
        by_indicator_type = {t.value: 0 for t in IndicatorType}
        for r in rows:
            by_indicator_type[r["indicator_type"]] = r["n"]
        return {
            "total": self.count(),
            "active": self.count(active_only=True),
            "by_threat_type": by_type,
            "by_indicator_type": by_indicator_type,
            "by_source": {r["source"]: r["n"] for r in sources},
            "db_path": self.db_path,
        }

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
