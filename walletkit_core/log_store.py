"""
SQLite-backed append-only store for diagnostic log lines.

Keeps the most recent ``max_entries`` lines so a user can export recent
wallet activity for support.  Retention is enforced lazily: every
``CLEANUP_INTERVAL`` writes, and only once the table has grown past
``max_entries + CLEANUP_BUFFER`` rows.

Usage:
    store = LogStore("data/logs.db")
    store.append("[2024-01-01T00:00:00Z] [walletkit.sync] [INFO]: synced")
    lines = store.query()
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Iterable

logger = logging.getLogger("walletkit.log_store")

MAX_LOGS = 5000
CLEANUP_INTERVAL = 100
CLEANUP_BUFFER = 100


class LogStore:
    """Thin SQLite wrapper with bounded retention."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/logs.db", max_entries: int = MAX_LOGS):
        self.db_path = db_path
        self.max_entries = max_entries
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # Log records may be emitted from executor threads.
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._lock = threading.Lock()
        self._conn.execute("PRAGMA busy_timeout = 5000")
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._writes_since_cleanup = 0
        self._create_tables()
        self._ensure_schema_version()

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS logs (
                id   INTEGER PRIMARY KEY AUTOINCREMENT,
                line TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row[0] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Log store schema v{row[0]} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION})."
            )

    # ── writes ───────────────────────────────────────────────────

    def append(self, line: str) -> None:
        self.append_many([line])

    def append_many(self, lines: Iterable[str]) -> None:
        batch = [(line,) for line in lines]
        if not batch:
            return
        with self._lock:
            self._conn.executemany("INSERT INTO logs (line) VALUES (?)", batch)
            self._conn.commit()
            self._writes_since_cleanup += len(batch)
            if self._writes_since_cleanup >= CLEANUP_INTERVAL:
                self._writes_since_cleanup = 0
                self._enforce_retention()

    def _enforce_retention(self) -> None:
        count = self._conn.execute("SELECT COUNT(*) FROM logs").fetchone()[0]
        if count <= self.max_entries + CLEANUP_BUFFER:
            return
        to_delete = count - self.max_entries
        self._conn.execute(
            "DELETE FROM logs WHERE id IN "
            "(SELECT id FROM logs ORDER BY id ASC LIMIT ?)",
            (to_delete,),
        )
        self._conn.commit()

    def clear(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM logs")
            self._conn.commit()

    # ── reads ────────────────────────────────────────────────────

    def query(self) -> list[str]:
        """All retained lines, oldest first."""
        with self._lock:
            rows = self._conn.execute("SELECT line FROM logs ORDER BY id ASC").fetchall()
        return [r[0] for r in rows]

    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM logs").fetchone()[0]

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
