"""
Environment variable history store implementation.

SQLite-based storage for the history of environment variable values,
grouped into tags and, for the versioned engine, per-key versions.
"""

import logging
import re
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import ClassVar, Iterable, Iterator, List, Mapping, Optional

from envx.core.config import EnvxConfig, StorageConfig, load_config

from .models import (
    ACTIONS,
    ClosedStoreError,
    ConstraintViolationError,
    EngineKind,
    HistoryRecord,
    HistoryStats,
    HistoryStoreError,
    InitializationError,
    MigrationError,
    NewRecord,
    TaggedVariable,
    TagStats,
    VersionStats,
)
from .queries import HistoryQueryExecutor, _now_iso, _now_with_tz, to_iso, transaction
from .schema import ensure_schema

logger = logging.getLogger(__name__)

AUTO_TAG_PREFIX = "auto-"
# Longer digit runs are treated as malformed tags.
AUTO_TAG_PATTERN = re.compile(r"auto-([0-9]{1,18})")

_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}


def _store_error(message: str, error: sqlite3.Error) -> HistoryStoreError:
    """Wrap a storage-engine error with operation context."""
    if isinstance(error, sqlite3.IntegrityError):
        return ConstraintViolationError(f"{message}: {error}")
    return HistoryStoreError(f"{message}: {error}")


def _row_to_record(row: sqlite3.Row) -> HistoryRecord:
    columns = row.keys()
    return HistoryRecord(
        id=row["id"],
        key=row["key"],
        value=row["value"],
        timestamp=row["timestamp"],
        source=row["source"],
        tag=row["tag"] if "tag" in columns else None,
        version=row["version"] if "version" in columns else None,
        action=row["action"] if "action" in columns else None,
    )


def _stats_from_row(row: sqlite3.Row) -> HistoryStats:
    return HistoryStats(
        total_records=row["total_records"],
        unique_keys=row["unique_keys"],
        oldest_timestamp=row["oldest_timestamp"],
        newest_timestamp=row["newest_timestamp"],
    )


def _validate_key(key: str) -> None:
    if not isinstance(key, str) or not key:
        raise ValueError(f"Key must be a non-empty string, got {key!r}")


def _validate_tag(tag: str) -> None:
    if not isinstance(tag, str) or not tag.strip():
        raise ValueError(f"Tag must be a non-empty string, got {tag!r}")


def _validate_action(action: str) -> None:
    if action not in ACTIONS:
        raise ValueError(f"Unknown action {action!r}, expected one of {', '.join(ACTIONS)}")


def _timestamp_str(timestamp: Optional[datetime | str]) -> str:
    """Normalize a caller timestamp to the stored UTC form.

    Stored timestamps are compared as text, so every offset is folded to UTC.
    """
    if timestamp is None:
        return _now_iso()
    if isinstance(timestamp, str):
        text = timestamp[:-1] + "+00:00" if timestamp.endswith("Z") else timestamp
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValueError(f"Invalid ISO-8601 timestamp: {timestamp!r}") from e
    else:
        parsed = timestamp
    if parsed.tzinfo is None or parsed.utcoffset() is None:
        raise ValueError(f"Timestamp must carry a timezone offset, got {timestamp!r}")
    return to_iso(parsed)


def next_auto_tag_name(existing_tags: Iterable[str]) -> str:
    """Return ``auto-<N>`` one past the highest well-formed auto tag."""
    highest = 0
    for tag in existing_tags:
        match = AUTO_TAG_PATTERN.fullmatch(tag)
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{AUTO_TAG_PREFIX}{highest + 1}"


class HistoryStore(ABC):
    """
    SQLite-backed environment variable history.

    Holds the shared lifecycle, query and tag-scoped write operations.
    Use :class:`TaggedHistoryStore` or :class:`VersionedHistoryStore`
    (or :func:`create_history_store`) rather than this class directly.
    """

    engine: ClassVar[EngineKind]

    def __init__(
        self,
        db_path: Path | str,
        *,
        journal_mode: str = "WAL",
        busy_timeout_ms: int = 5000,
        retention_days: int = 30,
    ):
        if journal_mode.upper() not in _JOURNAL_MODES:
            raise ValueError(f"Unsupported journal mode: {journal_mode}")
        self._db_path = Path(db_path)
        self._journal_mode = journal_mode.upper()
        self._busy_timeout_ms = int(busy_timeout_ms)
        self._retention_days = retention_days
        self._conn: Optional[sqlite3.Connection] = None
        self._query: Optional[HistoryQueryExecutor] = None
        self._initialized = False
        self._closed = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def is_ready(self) -> bool:
        return self._initialized and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._closed:
            raise ClosedStoreError(f"History store {self._db_path} is closed")
        if self._conn is None:
            try:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise InitializationError(
                    f"Failed to create store directory {self._db_path.parent}: {e}"
                ) from e

            conn: Optional[sqlite3.Connection] = None
            try:
                conn = sqlite3.connect(str(self._db_path), isolation_level=None)
                conn.row_factory = sqlite3.Row
                conn.execute(f"PRAGMA journal_mode={self._journal_mode};")
                conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms};")
            except sqlite3.Error as e:
                if conn is not None:
                    conn.close()
                raise InitializationError(
                    f"Failed to open history store {self._db_path}: {e}"
                ) from e
            self._conn = conn
            self._query = HistoryQueryExecutor(conn)
        return self._conn

    def initialize(self) -> None:
        """Open the database file and bring its schema up to date."""
        if self._initialized:
            if self._closed:
                raise ClosedStoreError(f"History store {self._db_path} is closed")
            return
        conn = self._get_connection()
        try:
            version = ensure_schema(conn, self.engine)
        except MigrationError:
            self._release()
            raise
        self._initialized = True
        logger.info(
            f"Initialized {self.engine.value} history store: {self._db_path} "
            f"(schema v{version})"
        )

    def _ensure_query(self) -> HistoryQueryExecutor:
        """Ensure query executor is available."""
        self.initialize()
        assert self._query is not None
        return self._query

    # ─────────────────────────────────────────────────────────────────
    # Tag-scoped Writes
    # ─────────────────────────────────────────────────────────────────

    @abstractmethod
    def _write_tagged_value(
        self,
        query: HistoryQueryExecutor,
        key: str,
        value: str,
        tag: str,
        timestamp: str,
        source: str,
    ) -> None:
        """Write one (key, tag) value inside the caller's transaction."""
        pass

    def next_auto_tag(self) -> str:
        """Return the tag name the next untagged batch would receive."""
        try:
            return next_auto_tag_name(self._ensure_query().get_tags_with_prefix(AUTO_TAG_PREFIX))
        except sqlite3.Error as e:
            raise _store_error("Failed to compute next auto tag", e) from e

    def batch_upsert_tagged_values(
        self,
        values: Mapping[str, Optional[str]],
        tag: Optional[str] = None,
        source: str = "set",
    ) -> str:
        """
        Write a snapshot of values under one tag, all or nothing.

        Pairs whose value is None are skipped. Existing (key, tag) rows
        are overwritten in place.

        Args:
            values: Mapping of key to value.
            tag: Target tag; an ``auto-<N>`` tag is generated when omitted.
            source: Caller label stored with each row.

        Returns:
            The tag the values were written under.
        """
        if tag is not None:
            _validate_tag(tag)
        pairs = [(key, value) for key, value in values.items() if value is not None]
        for key, _ in pairs:
            _validate_key(key)

        query = self._ensure_query()
        assert self._conn is not None
        try:
            with transaction(self._conn):
                resolved = tag if tag is not None else next_auto_tag_name(
                    query.get_tags_with_prefix(AUTO_TAG_PREFIX)
                )
                now = _now_iso()
                for key, value in pairs:
                    self._write_tagged_value(query, key, value, resolved, now, source)
        except sqlite3.Error as e:
            raise _store_error(
                f"Failed to upsert {len(pairs)} values under tag '{tag or AUTO_TAG_PREFIX + '*'}'", e
            ) from e
        logger.debug(f"Upserted {len(pairs)} values under tag {resolved}")
        return resolved

    def upsert_tagged_value(
        self, key: str, value: str, tag: str, source: str = "pull"
    ) -> None:
        """Overwrite the value of key under tag, creating the row if absent."""
        _validate_key(key)
        _validate_tag(tag)
        query = self._ensure_query()
        assert self._conn is not None
        try:
            with transaction(self._conn):
                self._write_tagged_value(query, key, value, tag, _now_iso(), source)
        except sqlite3.Error as e:
            raise _store_error(f"Failed to upsert key '{key}' under tag '{tag}'", e) from e

    def get_tagged_values(self, tag: str) -> dict[str, str]:
        """Get the key to value mapping recorded under a tag."""
        try:
            rows = self._ensure_query().get_tag_variables(tag)
        except sqlite3.Error as e:
            raise _store_error(f"Failed to get values for tag '{tag}'", e) from e
        values: dict[str, str] = {}
        for row in rows:
            # Rows arrive newest first per key.
            values.setdefault(row["key"], row["value"])
        return values

    # ─────────────────────────────────────────────────────────────────
    # History Queries
    # ─────────────────────────────────────────────────────────────────

    def get_history_by_key(self, key: str, limit: Optional[int] = 50) -> List[HistoryRecord]:
        """Get rows for a key, newest first. ``limit=None`` returns all."""
        try:
            rows = self._ensure_query().get_history_by_key(
                key, limit, by_version=self.engine == EngineKind.VERSIONED
            )
            return [_row_to_record(row) for row in rows]
        except sqlite3.Error as e:
            raise _store_error(f"Failed to get history for key '{key}'", e) from e

    def get_latest_value(self, key: str) -> Optional[HistoryRecord]:
        """Get the most recently written row for a key."""
        try:
            row = self._ensure_query().get_latest_by_key(key)
            return _row_to_record(row) if row is not None else None
        except sqlite3.Error as e:
            raise _store_error(f"Failed to get latest value for key '{key}'", e) from e

    def get_all_history(self, limit: Optional[int] = 100) -> List[HistoryRecord]:
        """Get rows across all keys, newest first. ``limit=None`` returns all."""
        try:
            return [_row_to_record(row) for row in self._ensure_query().get_all_history(limit)]
        except sqlite3.Error as e:
            raise _store_error("Failed to get history", e) from e

    def get_history_by_tag(self, tag: str, limit: Optional[int] = None) -> List[HistoryRecord]:
        """Get rows recorded under a tag, newest first."""
        try:
            rows = self._ensure_query().get_history_by_tag(tag, limit)
            return [_row_to_record(row) for row in rows]
        except sqlite3.Error as e:
            raise _store_error(f"Failed to get history for tag '{tag}'", e) from e

    def get_all_tags(self) -> List[str]:
        """Get all tag names in lexicographic order."""
        try:
            return self._ensure_query().get_all_tags()
        except sqlite3.Error as e:
            raise _store_error("Failed to list tags", e) from e

    # ─────────────────────────────────────────────────────────────────
    # Statistics
    # ─────────────────────────────────────────────────────────────────

    def get_stats(self) -> HistoryStats:
        """Get row counts and timestamp bounds for the whole store."""
        try:
            return _stats_from_row(self._ensure_query().get_aggregate_stats())
        except sqlite3.Error as e:
            raise _store_error("Failed to get stats", e) from e

    def get_tag_stats(self, tag: str) -> TagStats:
        """Get aggregates for one tag plus the key/value pairs under it."""
        try:
            query = self._ensure_query()
            stats = _stats_from_row(query.get_aggregate_stats(tag))
            rows = query.get_tag_variables(tag)
        except sqlite3.Error as e:
            raise _store_error(f"Failed to get stats for tag '{tag}'", e) from e
        variables: List[TaggedVariable] = []
        seen: set[str] = set()
        for row in rows:
            if row["key"] not in seen:
                seen.add(row["key"])
                variables.append(TaggedVariable(key=row["key"], value=row["value"]))
        return TagStats(
            total_records=stats.total_records,
            unique_keys=stats.unique_keys,
            oldest_timestamp=stats.oldest_timestamp,
            newest_timestamp=stats.newest_timestamp,
            tag=tag,
            variables=variables,
        )

    def get_all_tags_stats(self) -> List[TagStats]:
        """Get aggregates for every tag, most recently updated first."""
        try:
            rows = self._ensure_query().get_all_tag_stats()
        except sqlite3.Error as e:
            raise _store_error("Failed to get tag stats", e) from e
        return [
            TagStats(
                total_records=row["total_records"],
                unique_keys=row["unique_keys"],
                oldest_timestamp=row["oldest_timestamp"],
                newest_timestamp=row["newest_timestamp"],
                tag=row["tag"],
            )
            for row in rows
        ]

    # ─────────────────────────────────────────────────────────────────
    # Retention / Lifecycle
    # ─────────────────────────────────────────────────────────────────

    def cleanup_old_records(self, days_to_keep: Optional[int] = None) -> int:
        """Delete rows older than the retention window. Returns count deleted."""
        days = self._retention_days if days_to_keep is None else days_to_keep
        if days < 0:
            raise ValueError(f"days_to_keep must not be negative, got {days}")
        cutoff = to_iso(_now_with_tz() - timedelta(days=days))
        query = self._ensure_query()
        assert self._conn is not None
        try:
            with transaction(self._conn):
                deleted = query.delete_older_than(cutoff)
        except sqlite3.Error as e:
            raise _store_error(f"Failed to clean up records older than {days} days", e) from e
        if deleted:
            logger.info(f"Removed {deleted} history records older than {cutoff}")
        return deleted

    def _release(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None
                self._query = None

    def close(self) -> None:
        """Close the database connection. Further operations raise ClosedStoreError."""
        self._release()
        self._closed = True

    def __enter__(self) -> "HistoryStore":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class TaggedHistoryStore(HistoryStore):
    """
    Upsert engine: at most one row per (key, tag).

    Every write resolves to a tag; writing the same (key, tag) again
    overwrites value, timestamp and source in place.
    """

    engine = EngineKind.TAGGED

    def _write_tagged_value(self, query, key, value, tag, timestamp, source) -> None:
        query.upsert_tagged(key, value, tag, timestamp, source)


class VersionedHistoryStore(HistoryStore):
    """
    Append-only engine with per-key versions.

    Every versioned write adds a row with ``version = max + 1`` for its key.
    Tag rows carry ``version = None`` and leave the counter untouched.
    """

    engine = EngineKind.VERSIONED

    def _write_tagged_value(self, query, key, value, tag, timestamp, source) -> None:
        if query.update_tagged(key, tag, value, timestamp, source) == 0:
            query.insert_versioned(key, value, timestamp, "updated", source, tag, None)

    def _append(self, query: HistoryQueryExecutor, record: NewRecord) -> HistoryRecord:
        _validate_key(record.key)
        _validate_action(record.action)
        version = query.get_max_version(record.key) + 1
        timestamp = _timestamp_str(record.timestamp)
        row_id = query.insert_versioned(
            record.key, record.value, timestamp, record.action, record.source, None, version
        )
        return HistoryRecord(
            id=row_id,
            key=record.key,
            value=record.value,
            timestamp=timestamp,
            source=record.source,
            version=version,
            action=record.action,
        )

    def add_record(
        self,
        key: str,
        value: str,
        timestamp: Optional[datetime | str] = None,
        action: str = "updated",
        source: str = "set",
    ) -> HistoryRecord:
        """Append a new version of key. Returns the stored record."""
        return self.add_records(
            [NewRecord(key=key, value=value, action=action, source=source, timestamp=timestamp)]
        )[0]

    def add_records(self, records: Iterable[NewRecord]) -> List[HistoryRecord]:
        """Append several records in one transaction.

        Versions are computed in order, so a key written twice in one
        batch receives consecutive versions.
        """
        records = list(records)
        for record in records:
            _validate_key(record.key)
            _validate_action(record.action)
            if record.timestamp is not None:
                _timestamp_str(record.timestamp)
        query = self._ensure_query()
        assert self._conn is not None
        try:
            with transaction(self._conn):
                stored = [self._append(query, record) for record in records]
        except sqlite3.Error as e:
            keys = ", ".join(sorted({record.key for record in records}))
            raise _store_error(f"Failed to add records for keys [{keys}]", e) from e
        logger.debug(f"Appended {len(stored)} history records")
        return stored

    def get_latest_version(self, key: str) -> Optional[HistoryRecord]:
        """Get the highest versioned row for a key, None if there is none."""
        try:
            row = self._ensure_query().get_latest_versioned(key)
            return _row_to_record(row) if row is not None else None
        except sqlite3.Error as e:
            raise _store_error(f"Failed to get latest version for key '{key}'", e) from e

    def create_tagged_version(
        self, key: str, value: str, tag: str, source: str = "tag"
    ) -> HistoryRecord:
        """Record value under tag as a new unversioned row."""
        _validate_key(key)
        _validate_tag(tag)
        query = self._ensure_query()
        assert self._conn is not None
        timestamp = _now_iso()
        try:
            with transaction(self._conn):
                row_id = query.insert_versioned(key, value, timestamp, "updated", source, tag, None)
        except sqlite3.Error as e:
            raise _store_error(f"Failed to tag key '{key}' as '{tag}'", e) from e
        return HistoryRecord(
            id=row_id,
            key=key,
            value=value,
            timestamp=timestamp,
            source=source,
            tag=tag,
            action="updated",
        )

    def upsert_latest_versioned_value(
        self, key: str, value: str, source: str = "pull"
    ) -> HistoryRecord:
        """Overwrite the latest version of key in place, or create version 1."""
        _validate_key(key)
        query = self._ensure_query()
        assert self._conn is not None
        try:
            with transaction(self._conn):
                latest = query.get_latest_versioned(key)
                if latest is not None:
                    query.update_row(latest["id"], value, _now_iso(), source)
                    row_id = latest["id"]
                else:
                    row_id = self._append(
                        query, NewRecord(key=key, value=value, source=source)
                    ).id
                row = query.get_row(row_id)
        except sqlite3.Error as e:
            raise _store_error(f"Failed to upsert latest version of key '{key}'", e) from e
        return _row_to_record(row)

    def get_version_stats(self) -> List[VersionStats]:
        """Get aggregates grouped by version number."""
        try:
            rows = self._ensure_query().get_version_stats()
        except sqlite3.Error as e:
            raise _store_error("Failed to get version stats", e) from e
        return [
            VersionStats(
                total_records=row["total_records"],
                unique_keys=row["unique_keys"],
                oldest_timestamp=row["oldest_timestamp"],
                newest_timestamp=row["newest_timestamp"],
                version=row["version"],
            )
            for row in rows
        ]


_ENGINE_CLASSES = {
    EngineKind.TAGGED: TaggedHistoryStore,
    EngineKind.VERSIONED: VersionedHistoryStore,
}


def resolve_db_path(project_root: Path | str, storage: Optional[StorageConfig] = None) -> Path:
    """Return ``<project_root>/<dir_name>/<db_name>``."""
    storage = storage or StorageConfig()
    return Path(project_root) / storage.dir_name / storage.db_name


def create_history_store(
    project_root: Path | str,
    engine: Optional[EngineKind | str] = None,
    config: Optional[EnvxConfig] = None,
) -> HistoryStore:
    """
    Open the history store of a project, ready for reads and writes.

    Args:
        project_root: Directory holding the ``.envx`` folder.
        engine: Write engine; defaults to ``storage.engine`` from config.
        config: Loaded configuration; ``load_config()`` when omitted.

    Raises:
        InitializationError: If the store file cannot be created or opened.
        MigrationError: If the existing file cannot be migrated.
    """
    config = config or load_config()
    kind = EngineKind(engine or config.storage.engine)
    store = _ENGINE_CLASSES[kind](
        resolve_db_path(project_root, config.storage),
        journal_mode=config.storage.journal_mode,
        busy_timeout_ms=config.storage.busy_timeout_ms,
        retention_days=config.history.retention_days,
    )
    store.initialize()
    return store


@contextmanager
def open_history_store(
    project_root: Path | str,
    engine: Optional[EngineKind | str] = None,
    config: Optional[EnvxConfig] = None,
) -> Iterator[HistoryStore]:
    """Context manager around :func:`create_history_store` that always closes."""
    store = create_history_store(project_root, engine=engine, config=config)
    try:
        yield store
    finally:
        store.close()
