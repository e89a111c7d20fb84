"""
Replay Guard - the set of payment transactions already consumed.

compare_and_insert() is the only way to mark a transaction used. It is a
single atomic step: of several concurrent callers presenting the same hash,
exactly one gets True.
"""

import time
import sqlite3
import logging
import threading
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger("ReplayGuard")


def normalize_tx_hash(tx_hash):
    value = tx_hash.strip().lower()
    if not value.startswith("0x"):
        value = "0x" + value
    return value


class InMemoryReplayGuard:
    def __init__(self):
        self._used = {}
        self._lock = threading.Lock()

    def contains(self, tx_hash):
        return normalize_tx_hash(tx_hash) in self._used

    def compare_and_insert(self, tx_hash, context=None):
        key = normalize_tx_hash(tx_hash)
        with self._lock:
            if key in self._used:
                return False
            self._used[key] = {"used_at": time.time(), "context": context}
            return True

    def __len__(self):
        return len(self._used)


class SQLiteReplayGuard:
    """Persistent replay guard (SQLite WAL), safe across threads and processes."""

    def __init__(self, db_path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_db(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        """One short-lived connection: commit on success, always closed."""
        conn = self._get_db()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS used_payments (
                    tx_hash  TEXT PRIMARY KEY,
                    used_at  REAL NOT NULL,
                    context  TEXT
                )
            """)

    def contains(self, tx_hash):
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM used_payments WHERE tx_hash = ?", (normalize_tx_hash(tx_hash),)
            ).fetchone()
            return row is not None

    def compare_and_insert(self, tx_hash, context=None):
        key = normalize_tx_hash(tx_hash)
        with self._connection() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO used_payments (tx_hash, used_at, context) VALUES (?, ?, ?)",
                (key, time.time(), context),
            )
            inserted = cursor.rowcount == 1
        if not inserted:
            logger.warning(f"🛑 [Replay] {key[:12]}... already consumed")
        return inserted

    def __len__(self):
        with self._connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM used_payments").fetchone()[0]


def open_replay_guard(db_path):
    if not db_path or db_path == ":memory:":
        return InMemoryReplayGuard()
    return SQLiteReplayGuard(db_path)
