"""
storage/database.py

SQLite connection and schema initialisation for the Bastion audit sink.

Design decisions:
  - WAL journal mode for concurrent readers + one writer without blocking.
  - check_same_thread=False: verdicts are recorded from the event loop
    thread and from the ASGI middleware; every write goes through
    Database.write_lock so the connection never sees two writers.
  - busy_timeout=5000ms: instead of raising SQLITE_BUSY immediately, SQLite
    will spin-wait up to 5 seconds, allowing WAL readers to finish.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time

logger = logging.getLogger(__name__)

_CURRENT_SCHEMA_VERSION = 1


class Database:
    """
    Thin wrapper around a sqlite3 connection.

    Usage:
        db = Database("data/verdicts.db")
        db.init_schema()
        repo = VerdictRepository(db)
        db.close()
    """

    def __init__(self, db_path: str = "data/verdicts.db") -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row  # rows behave like dicts
        self.write_lock = threading.RLock()
        self._configure()
        logger.info("Database opened — path=%r", db_path)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _configure(self) -> None:
        """Apply performance and safety PRAGMAs."""
        cur = self.conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA busy_timeout=5000")
        cur.execute("PRAGMA synchronous=NORMAL")  # safe with WAL
        self.conn.commit()

    # ------------------------------------------------------------------
    # Schema initialisation
    # ------------------------------------------------------------------

    def init_schema(self) -> None:
        """Create all tables and indexes if they don't already exist."""
        cur = self.conn.cursor()

        cur.executescript("""
            CREATE TABLE IF NOT EXISTS verdicts (
                event_id          TEXT PRIMARY KEY,
                timestamp         REAL NOT NULL,
                kind              TEXT NOT NULL,
                subject_key       TEXT NOT NULL,
                source_ip         TEXT,
                risk_score        INTEGER NOT NULL,
                classification    TEXT NOT NULL,
                action            TEXT NOT NULL,
                escalated         INTEGER NOT NULL DEFAULT 0,
                quarantined       INTEGER NOT NULL DEFAULT 0,
                status_code       INTEGER NOT NULL,
                reason            TEXT NOT NULL,
                matched_rules     TEXT NOT NULL,
                matched_iocs      TEXT NOT NULL,
                layers            TEXT NOT NULL,
                correlation_bonus INTEGER NOT NULL DEFAULT 0,
                trust_score       INTEGER,
                fast_path         INTEGER NOT NULL DEFAULT 0,
                degraded          INTEGER NOT NULL DEFAULT 0,
                incomplete        INTEGER NOT NULL DEFAULT 0,
                latency_ms        REAL NOT NULL,
                created_at        REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS schema_version (
                version    INTEGER PRIMARY KEY,
                applied_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_verdicts_timestamp
                ON verdicts(timestamp DESC);
            CREATE INDEX IF NOT EXISTS idx_verdicts_subject
                ON verdicts(subject_key);
            CREATE INDEX IF NOT EXISTS idx_verdicts_action
                ON verdicts(action);
            CREATE INDEX IF NOT EXISTS idx_verdicts_classification
                ON verdicts(classification);
        """)

        # Record schema version (ignore if already present)
        cur.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (_CURRENT_SCHEMA_VERSION, time.time()),
        )
        self.conn.commit()
        logger.info("Schema initialised (version=%d)", _CURRENT_SCHEMA_VERSION)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Flush and close the SQLite connection."""
        try:
            self.conn.commit()
            self.conn.close()
            logger.info("Database closed — path=%r", self.db_path)
        except sqlite3.Error as exc:
            logger.warning("Error closing database: %s", exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute a single parameterized statement."""
        return self.conn.execute(sql, params)

    def commit(self) -> None:
        self.conn.commit()
