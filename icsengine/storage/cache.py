"""SQLite extraction cache: key/value with per-entry TTL and periodic sweep."""

import json
import logging
import sqlite3
import threading
from pathlib import Path

from icsengine.core.clock import Clock, epoch, utc_now
from icsengine.core.errors import StorageCorrupted

logger = logging.getLogger(__name__)

# ── Schema DDL ───────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cache (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,      -- JSON
    expires_at  REAL NOT NULL,      -- POSIX seconds
    created_at  REAL NOT NULL,
    updated_at  REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cache_expires_at ON cache(expires_at);
"""


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a SQLite connection tuned for several processes sharing the file."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=5.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=5000")
    except sqlite3.DatabaseError as exc:
        conn.close()
        raise StorageCorrupted(f"cannot open {db_path}: {exc}") from exc
    return conn


# ── ExtractionCache ──────────────────────────────────────────────────


class ExtractionCache:
    """Fingerprint-keyed store of extraction results.

    Expired entries are absent to ``get`` even before the sweep deletes
    them. One connection per instance; a lock serialises its use across
    threads, and other processes are handled by SQLite's own locking.
    """

    def __init__(self, db_path: Path, clock: Clock = utc_now):
        self.db_path = Path(db_path)
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = connect(self.db_path)
        try:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except sqlite3.DatabaseError as exc:
            raise StorageCorrupted(f"cache store unreadable: {exc}") from exc

    def get(self, key: str):
        """Return the stored JSON value, or ``None`` when absent or expired."""
        now = epoch(self._clock)
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM cache WHERE key = ? AND expires_at > ?",
                (key, now),
            ).fetchone()
            if row is None:
                return None

            try:
                return json.loads(row["value"])
            except json.JSONDecodeError:
                logger.warning("Cache entry %s is corrupted; deleting it", key[:12])
                # Only the bad value; a concurrent refresh of the key survives.
                self._conn.execute(
                    "DELETE FROM cache WHERE key = ? AND value = ?", (key, row["value"])
                )
                self._conn.commit()
                return None

    def set(self, key: str, value, ttl_seconds: int) -> None:
        """Upsert ``value``; ``created_at`` survives a refresh of a live entry."""
        now = epoch(self._clock)
        with self._lock:
            self._conn.execute(
                """INSERT INTO cache (key, value, expires_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       value = excluded.value,
                       expires_at = excluded.expires_at,
                       updated_at = excluded.updated_at,
                       created_at = CASE
                           WHEN cache.expires_at <= excluded.updated_at
                           THEN excluded.created_at
                           ELSE cache.created_at
                       END""",
                (key, json.dumps(value, sort_keys=True), now + ttl_seconds, now, now),
            )
            self._conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM cache WHERE key = ?", (key,))
            self._conn.commit()

    def expires_at(self, key: str) -> float | None:
        """POSIX expiry of a live entry, ``None`` if absent or expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT expires_at FROM cache WHERE key = ? AND expires_at > ?",
                (key, epoch(self._clock)),
            ).fetchone()
        return row["expires_at"] if row else None

    def sweep_expired(self) -> int:
        """Delete every expired entry. Returns the number removed.

        The expiry test runs inside the DELETE itself, so a row refreshed by
        a concurrent ``set`` is never removed.
        """
        now = epoch(self._clock)
        with self._lock:
            cur = self._conn.execute("DELETE FROM cache WHERE expires_at <= ?", (now,))
            self._conn.commit()
        if cur.rowcount:
            logger.info("Cache sweep removed %d expired entries", cur.rowcount)
        return cur.rowcount

    def stats(self) -> dict:
        now = epoch(self._clock)
        with self._lock:
            total = self._conn.execute("SELECT COUNT(*) FROM cache").fetchone()[0]
            expired = self._conn.execute(
                "SELECT COUNT(*) FROM cache WHERE expires_at <= ?", (now,)
            ).fetchone()[0]
        return {"total": total, "expired": expired}

    def close(self) -> None:
        self._conn.close()
