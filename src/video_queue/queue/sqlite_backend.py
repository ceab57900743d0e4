"""SQLite implementation of DurableStore.

This module provides the local-first, crash-safe store using:
- sqlite-utils for schema management and simple row access
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic pops and moves
- Exponential backoff retry for database lock handling
"""

import functools
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import structlog
from sqlite_utils import Database

from .backends import DurableStore
from .errors import StoreUnavailable

logger = structlog.get_logger(__name__)

LOCK_RETRIES = 4

SCHEMA_SQL = """
-- Scalar values with optional expiry (job records)
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL
);

CREATE INDEX IF NOT EXISTS idx_kv_expires ON kv(expires_at);

-- Sorted collections (priority queue, delayed retries, dead letters)
CREATE TABLE IF NOT EXISTS zsets (
    name TEXT NOT NULL,
    member TEXT NOT NULL,
    score REAL NOT NULL,
    tiebreak REAL NOT NULL DEFAULT 0,
    PRIMARY KEY (name, member)
);

CREATE INDEX IF NOT EXISTS idx_zsets_order ON zsets(name, score DESC, tiebreak ASC);

-- Sets (processing set)
CREATE TABLE IF NOT EXISTS sets (
    name TEXT NOT NULL,
    member TEXT NOT NULL,
    PRIMARY KEY (name, member)
);

-- Counters
CREATE TABLE IF NOT EXISTS counters (
    name TEXT PRIMARY KEY,
    value INTEGER NOT NULL DEFAULT 0
);
"""


def _store_operation(fn):
    """Retry on lock contention and translate sqlite errors.

    Exponential backoff: 100ms, 200ms, 400ms between attempts, then StoreUnavailable.
    """

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        for attempt in range(LOCK_RETRIES):
            try:
                return fn(self, *args, **kwargs)
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < LOCK_RETRIES - 1:
                    logger.debug("store_locked_retrying", operation=fn.__name__, attempt=attempt)
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise StoreUnavailable(f"{fn.__name__} failed: {e}") from e
            except sqlite3.Error as e:
                raise StoreUnavailable(f"{fn.__name__} failed: {e}") from e

    return wrapper


class SQLiteStore(DurableStore):
    """SQLite-based durable store with atomic pops and moves.

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so two
      processes sharing the file never pop the same member
    - Single-statement operations are atomic on their own
    """

    def __init__(self, db_path: str):
        """Open (and create if needed) the store database.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        if db_path == ":memory:":
            self.db_path = None
            self.db = Database(memory=True)
        else:
            self.db_path = Path(db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.db = Database(str(self.db_path))

            # Enable WAL mode for better concurrent performance
            self.db.conn.execute("PRAGMA journal_mode=WAL")
            self.db.conn.execute("PRAGMA synchronous=NORMAL")
            self.db.conn.commit()

        self.db.executescript(SCHEMA_SQL)

    @contextmanager
    def _transaction(self):
        """Write transaction holding the database lock from the start."""
        with self.db.conn:
            self.db.conn.execute("BEGIN IMMEDIATE")
            yield self.db.conn

    def close(self) -> None:
        self.db.conn.close()

    # Scalars

    @_store_operation
    def get(self, key: str) -> Optional[str]:
        rows = list(
            self.db["kv"].rows_where(
                "key = ? AND (expires_at IS NULL OR expires_at > ?)", [key, time.time()]
            )
        )
        if not rows:
            return None
        return rows[0]["value"]

    @_store_operation
    def set(self, key: str, value: str, expires_at: Optional[float] = None) -> None:
        self.db["kv"].insert(
            {"key": key, "value": value, "expires_at": expires_at}, pk="key", replace=True
        )

    @_store_operation
    def delete(self, key: str) -> bool:
        with self.db.conn:
            cursor = self.db.conn.execute("DELETE FROM kv WHERE key = ?", (key,))
        return cursor.rowcount > 0

    @_store_operation
    def scan_keys(self, prefix: str) -> Iterator[str]:
        rows = self.db.conn.execute(
            """
            SELECT key FROM kv
            WHERE substr(key, 1, ?) = ?
              AND (expires_at IS NULL OR expires_at > ?)
            ORDER BY key
            """,
            (len(prefix), prefix, time.time()),
        ).fetchall()
        return iter([row[0] for row in rows])

    @_store_operation
    def purge_expired(self) -> int:
        with self.db.conn:
            cursor = self.db.conn.execute(
                "DELETE FROM kv WHERE expires_at IS NOT NULL AND expires_at <= ?", (time.time(),)
            )
        return cursor.rowcount

    # Sorted collections

    @_store_operation
    def zadd(self, name: str, member: str, score: float, tiebreak: float = 0.0) -> None:
        with self.db.conn:
            self.db.conn.execute(
                "INSERT OR REPLACE INTO zsets (name, member, score, tiebreak) VALUES (?, ?, ?, ?)",
                (name, member, score, tiebreak),
            )

    @_store_operation
    def zrem(self, name: str, member: str) -> bool:
        with self.db.conn:
            cursor = self.db.conn.execute(
                "DELETE FROM zsets WHERE name = ? AND member = ?", (name, member)
            )
        return cursor.rowcount > 0

    @_store_operation
    def zcard(self, name: str) -> int:
        return self.db["zsets"].count_where("name = ?", [name])

    @_store_operation
    def zscore(self, name: str, member: str) -> Optional[float]:
        row = self.db.conn.execute(
            "SELECT score FROM zsets WHERE name = ? AND member = ?", (name, member)
        ).fetchone()
        return row[0] if row else None

    @_store_operation
    def zrange(
        self, name: str, start: int = 0, stop: int = -1, desc: bool = False
    ) -> List[Tuple[str, float]]:
        if start < 0 or stop < 0:
            count = self.db["zsets"].count_where("name = ?", [name])
            start = max(count + start, 0) if start < 0 else start
            stop = count + stop if stop < 0 else stop
        limit = stop - start + 1
        if limit <= 0:
            return []

        direction = "DESC" if desc else "ASC"
        rows = self.db.conn.execute(
            f"""
            SELECT member, score FROM zsets
            WHERE name = ?
            ORDER BY score {direction}, tiebreak ASC
            LIMIT ? OFFSET ?
            """,
            (name, limit, start),
        ).fetchall()
        return [(row[0], row[1]) for row in rows]

    @_store_operation
    def zrangebyscore(
        self, name: str, max_score: float, limit: Optional[int] = None
    ) -> List[Tuple[str, float]]:
        rows = self.db.conn.execute(
            """
            SELECT member, score FROM zsets
            WHERE name = ? AND score <= ?
            ORDER BY score ASC, tiebreak ASC
            LIMIT ?
            """,
            (name, max_score, -1 if limit is None else limit),
        ).fetchall()
        return [(row[0], row[1]) for row in rows]

    @_store_operation
    def zpopmax(self, name: str, move_to: Optional[str] = None) -> Optional[Tuple[str, float]]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                DELETE FROM zsets
                WHERE rowid = (
                    SELECT rowid FROM zsets
                    WHERE name = ?
                    ORDER BY score DESC, tiebreak ASC, rowid ASC
                    LIMIT 1
                )
                RETURNING member, score
                """,
                (name,),
            ).fetchall()

            if not rows:
                return None

            member, score = rows[0]
            if move_to is not None:
                conn.execute(
                    "INSERT OR IGNORE INTO sets (name, member) VALUES (?, ?)", (move_to, member)
                )
            return member, score

    @_store_operation
    def zmove(
        self,
        src: str,
        dst: str,
        member: str,
        score: float,
        tiebreak: float = 0.0,
        require_member: bool = True,
    ) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM zsets WHERE name = ? AND member = ?", (src, member)
            )
            if require_member and cursor.rowcount == 0:
                return False
            conn.execute(
                "INSERT OR REPLACE INTO zsets (name, member, score, tiebreak) VALUES (?, ?, ?, ?)",
                (dst, member, score, tiebreak),
            )
            return True

    # Sets

    @_store_operation
    def sadd(self, name: str, member: str) -> bool:
        with self.db.conn:
            cursor = self.db.conn.execute(
                "INSERT OR IGNORE INTO sets (name, member) VALUES (?, ?)", (name, member)
            )
        return cursor.rowcount > 0

    @_store_operation
    def srem(self, name: str, member: str) -> bool:
        with self.db.conn:
            cursor = self.db.conn.execute(
                "DELETE FROM sets WHERE name = ? AND member = ?", (name, member)
            )
        return cursor.rowcount > 0

    @_store_operation
    def smembers(self, name: str) -> List[str]:
        return [row["member"] for row in self.db["sets"].rows_where("name = ?", [name])]

    @_store_operation
    def scard(self, name: str) -> int:
        return self.db["sets"].count_where("name = ?", [name])

    @_store_operation
    def sismember(self, name: str, member: str) -> bool:
        row = self.db.conn.execute(
            "SELECT 1 FROM sets WHERE name = ? AND member = ?", (name, member)
        ).fetchone()
        return row is not None

    @_store_operation
    def smove_to_zset(
        self, src: str, dst: str, member: str, score: float, tiebreak: float = 0.0
    ) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM sets WHERE name = ? AND member = ?", (src, member))
            conn.execute(
                "INSERT OR REPLACE INTO zsets (name, member, score, tiebreak) VALUES (?, ?, ?, ?)",
                (dst, member, score, tiebreak),
            )
            return cursor.rowcount > 0

    # Counters

    @_store_operation
    def incr(self, name: str, amount: int = 1) -> int:
        with self.db.conn:
            rows = self.db.conn.execute(
                """
                INSERT INTO counters (name, value) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET value = value + excluded.value
                RETURNING value
                """,
                (name, amount),
            ).fetchall()
        return rows[0][0]

    @_store_operation
    def get_counter(self, name: str) -> int:
        row = self.db.conn.execute("SELECT value FROM counters WHERE name = ?", (name,)).fetchone()
        return row[0] if row else 0
