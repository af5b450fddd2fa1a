"""
Low-level SQL query executor for the history store.

The executor never commits; transaction boundaries belong to the store.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

HISTORY_TABLE = "env_history"

# SQLite treats a negative LIMIT as "no limit".
NO_LIMIT = -1


def _now_with_tz() -> datetime:
    """Get current datetime in UTC."""
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    """Get current datetime as an ISO-8601 string with offset."""
    return to_iso(_now_with_tz())


def to_iso(value: datetime) -> str:
    """Normalize a datetime to the UTC ISO-8601 form stored in env_history."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside BEGIN IMMEDIATE ... COMMIT, rolling back on any error.

    The connection must be in autocommit mode (``isolation_level=None``).
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def _limit(limit: Optional[int]) -> int:
    return NO_LIMIT if limit is None else limit


class HistoryQueryExecutor:
    """Executes SQL queries against env_history."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    # ─────────────────────────────────────────────────────────────────
    # Row Reads
    # ─────────────────────────────────────────────────────────────────

    def get_row(self, row_id: int) -> Optional[sqlite3.Row]:
        """Get a single row by id."""
        cursor = self._conn.execute(
            f"SELECT * FROM {HISTORY_TABLE} WHERE id = ?", (row_id,)
        )
        return cursor.fetchone()

    def get_history_by_key(
        self, key: str, limit: Optional[int], by_version: bool
    ) -> List[sqlite3.Row]:
        """Get rows for a key, newest first."""
        if by_version:
            order = "version IS NULL, version DESC, timestamp DESC, id DESC"
        else:
            order = "timestamp DESC, id DESC"
        cursor = self._conn.execute(
            f"""
            SELECT * FROM {HISTORY_TABLE}
            WHERE key = ?
            ORDER BY {order}
            LIMIT ?
            """,
            (key, _limit(limit)),
        )
        return cursor.fetchall()

    def get_latest_by_key(self, key: str) -> Optional[sqlite3.Row]:
        """Get the most recently written row for a key."""
        cursor = self._conn.execute(
            f"""
            SELECT * FROM {HISTORY_TABLE}
            WHERE key = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT 1
            """,
            (key,),
        )
        return cursor.fetchone()

    def get_all_history(self, limit: Optional[int]) -> List[sqlite3.Row]:
        """Get rows across all keys, newest first."""
        cursor = self._conn.execute(
            f"SELECT * FROM {HISTORY_TABLE} ORDER BY timestamp DESC, id DESC LIMIT ?",
            (_limit(limit),),
        )
        return cursor.fetchall()

    def get_history_by_tag(self, tag: str, limit: Optional[int]) -> List[sqlite3.Row]:
        """Get rows under a tag, newest first."""
        cursor = self._conn.execute(
            f"""
            SELECT * FROM {HISTORY_TABLE}
            WHERE tag = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT ?
            """,
            (tag, _limit(limit)),
        )
        return cursor.fetchall()

    def get_tag_variables(self, tag: str) -> List[sqlite3.Row]:
        """Get key/value pairs under a tag, by key then newest first."""
        cursor = self._conn.execute(
            f"""
            SELECT key, value FROM {HISTORY_TABLE}
            WHERE tag = ?
            ORDER BY key ASC, timestamp DESC, id DESC
            """,
            (tag,),
        )
        return cursor.fetchall()

    def get_all_tags(self) -> List[str]:
        """Get distinct non-null tags in lexicographic order."""
        cursor = self._conn.execute(
            f"SELECT DISTINCT tag FROM {HISTORY_TABLE} WHERE tag IS NOT NULL ORDER BY tag ASC"
        )
        return [row["tag"] for row in cursor.fetchall()]

    def get_tags_with_prefix(self, prefix: str) -> List[str]:
        """Get distinct tags starting with a literal prefix."""
        cursor = self._conn.execute(
            f"SELECT DISTINCT tag FROM {HISTORY_TABLE} WHERE substr(tag, 1, ?) = ?",
            (len(prefix), prefix),
        )
        return [row["tag"] for row in cursor.fetchall()]

    # ─────────────────────────────────────────────────────────────────
    # Versioned Reads
    # ─────────────────────────────────────────────────────────────────

    def get_max_version(self, key: str) -> int:
        """Get the highest version for a key, 0 when none exists."""
        cursor = self._conn.execute(
            f"SELECT COALESCE(MAX(version), 0) AS max_version FROM {HISTORY_TABLE} WHERE key = ?",
            (key,),
        )
        return int(cursor.fetchone()["max_version"])

    def get_latest_versioned(self, key: str) -> Optional[sqlite3.Row]:
        """Get the row holding the highest non-null version for a key."""
        cursor = self._conn.execute(
            f"""
            SELECT * FROM {HISTORY_TABLE}
            WHERE key = ? AND version IS NOT NULL
            ORDER BY version DESC
            LIMIT 1
            """,
            (key,),
        )
        return cursor.fetchone()

    # ─────────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────────

    def insert_versioned(
        self,
        key: str,
        value: str,
        timestamp: str,
        action: str,
        source: str,
        tag: Optional[str],
        version: Optional[int],
    ) -> int:
        """Insert a row into a versioned table, returns its id."""
        cursor = self._conn.execute(
            f"""
            INSERT INTO {HISTORY_TABLE}
                (key, value, timestamp, action, source, tag, version)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (key, value, timestamp, action, source, tag, version),
        )
        return int(cursor.lastrowid)

    def upsert_tagged(
        self, key: str, value: str, tag: str, timestamp: str, source: str
    ) -> None:
        """Insert or overwrite the single (key, tag) row of a tagged table."""
        self._conn.execute(
            f"""
            INSERT INTO {HISTORY_TABLE} (key, value, timestamp, source, tag)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(key, tag) DO UPDATE SET
                value = excluded.value,
                timestamp = excluded.timestamp,
                source = excluded.source
            """,
            (key, value, timestamp, source, tag),
        )

    def update_tagged(
        self, key: str, tag: str, value: str, timestamp: str, source: str
    ) -> int:
        """Overwrite rows matching (key, tag) in a versioned table, returns rowcount."""
        cursor = self._conn.execute(
            f"""
            UPDATE {HISTORY_TABLE}
            SET value = ?, timestamp = ?, action = 'updated', source = ?
            WHERE key = ? AND tag = ?
            """,
            (value, timestamp, source, key, tag),
        )
        return cursor.rowcount

    def update_row(self, row_id: int, value: str, timestamp: str, source: str) -> int:
        """Overwrite a versioned row in place, returns rowcount."""
        cursor = self._conn.execute(
            f"""
            UPDATE {HISTORY_TABLE}
            SET value = ?, timestamp = ?, action = 'updated', source = ?
            WHERE id = ?
            """,
            (value, timestamp, source, row_id),
        )
        return cursor.rowcount

    def delete_older_than(self, cutoff_iso: str) -> int:
        """Delete rows written before cutoff, returns rowcount."""
        cursor = self._conn.execute(
            f"DELETE FROM {HISTORY_TABLE} WHERE timestamp < ?", (cutoff_iso,)
        )
        return cursor.rowcount

    # ─────────────────────────────────────────────────────────────────
    # Statistics
    # ─────────────────────────────────────────────────────────────────

    def get_aggregate_stats(self, tag: Optional[str] = None) -> sqlite3.Row:
        """Get aggregate statistics for the whole table or one tag."""
        where, params = ("WHERE tag = ?", (tag,)) if tag is not None else ("", ())
        cursor = self._conn.execute(
            f"""
            SELECT
                COUNT(*) AS total_records,
                COUNT(DISTINCT key) AS unique_keys,
                MIN(timestamp) AS oldest_timestamp,
                MAX(timestamp) AS newest_timestamp
            FROM {HISTORY_TABLE}
            {where}
            """,
            params,
        )
        return cursor.fetchone()

    def get_all_tag_stats(self) -> List[sqlite3.Row]:
        """Get per-tag aggregates, most recently updated first."""
        cursor = self._conn.execute(
            f"""
            SELECT
                tag,
                COUNT(*) AS total_records,
                COUNT(DISTINCT key) AS unique_keys,
                MIN(timestamp) AS oldest_timestamp,
                MAX(timestamp) AS newest_timestamp
            FROM {HISTORY_TABLE}
            WHERE tag IS NOT NULL
            GROUP BY tag
            ORDER BY newest_timestamp DESC, tag ASC
            """
        )
        return cursor.fetchall()

    def get_version_stats(self) -> List[sqlite3.Row]:
        """Get per-version aggregates across keys."""
        cursor = self._conn.execute(
            f"""
            SELECT
                version,
                COUNT(*) AS total_records,
                COUNT(DISTINCT key) AS unique_keys,
                MIN(timestamp) AS oldest_timestamp,
                MAX(timestamp) AS newest_timestamp
            FROM {HISTORY_TABLE}
            WHERE version IS NOT NULL
            GROUP BY version
            ORDER BY version ASC
            """
        )
        return cursor.fetchall()
