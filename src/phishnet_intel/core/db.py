# Core Module - Central SQLite Connection Helper
#
# Every PhishNet Intel SQLite database is opened through `connect()` so
# that all connections share the same PRAGMAs:
#
#   - WAL journal mode (dashboard readers never block the ingestion writer)
#   - busy_timeout so a second writer waits instead of failing with
#     SQLITE_BUSY while another connection holds BEGIN IMMEDIATE
#   - foreign_keys enforcement on every connection

import sqlite3
from pathlib import Path
from typing import Union

IN_MEMORY = ":memory:"


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
    busy_timeout_ms: int = 5000,
) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and safe PRAGMAs.

    Args:
        db_path: Path to the database file, or ``":memory:"``.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
        check_same_thread: Passed to sqlite3.connect().
        busy_timeout_ms: How long a writer waits for a competing lock.

    Returns:
        sqlite3.Connection with WAL mode, busy_timeout, and foreign_keys.
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=check_same_thread)
    if str(db_path) != IN_MEMORY:
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    conn.execute("PRAGMA foreign_keys=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn
