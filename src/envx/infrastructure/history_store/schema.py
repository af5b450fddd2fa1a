"""
History store schema definitions and migrations.

Every store file carries a single-row ``envx_schema`` marker naming the
engine it was built for and its schema version. Files written before the
marker existed are recognised once by their column shape and then moved
forward through the engine's ordered migration steps.
"""

import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

from .models import EngineKind, MigrationError
from .queries import HISTORY_TABLE, _now_iso, transaction

logger = logging.getLogger(__name__)

MARKER_TABLE = "envx_schema"
REBUILD_TABLE = f"{HISTORY_TABLE}_new"

MARKER_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {MARKER_TABLE} (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    engine TEXT NOT NULL,
    schema_version INTEGER NOT NULL,
    updated_at TEXT NOT NULL
)
"""

# Append-only table: tag-only rows carry version NULL.
VERSIONED_TABLE = """
CREATE TABLE {table} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    action TEXT NOT NULL,
    source TEXT NOT NULL,
    tag TEXT,
    version INTEGER
)
"""

# Audit log without versions, the intermediate shape on the way to tagged.
AUDIT_TABLE = """
CREATE TABLE {table} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    action TEXT NOT NULL,
    source TEXT NOT NULL,
    tag TEXT
)
"""

# Upsert table: one row per (key, tag); NULL tags only survive from legacy files.
TAGGED_TABLE = """
CREATE TABLE {table} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    action TEXT,
    source TEXT NOT NULL,
    tag TEXT
)
"""

COMMON_INDEXES = (
    f"CREATE INDEX IF NOT EXISTS idx_env_history_key ON {HISTORY_TABLE}(key)",
    f"CREATE INDEX IF NOT EXISTS idx_env_history_timestamp ON {HISTORY_TABLE}(timestamp)",
    f"CREATE INDEX IF NOT EXISTS idx_env_history_tag ON {HISTORY_TABLE}(tag)",
)

AUDIT_INDEXES = COMMON_INDEXES + (
    f"CREATE INDEX IF NOT EXISTS idx_env_history_action ON {HISTORY_TABLE}(action)",
)

VERSIONED_INDEXES = AUDIT_INDEXES + (
    f"CREATE UNIQUE INDEX IF NOT EXISTS idx_env_history_key_version "
    f"ON {HISTORY_TABLE}(key, version) WHERE version IS NOT NULL",
)

TAGGED_INDEXES = COMMON_INDEXES + (
    f"CREATE UNIQUE INDEX IF NOT EXISTS idx_env_history_key_tag ON {HISTORY_TABLE}(key, tag)",
)

# Target columns with the expression used when a legacy table lacks them.
_VERSIONED_COLUMNS = (
    ("id", None),
    ("key", None),
    ("value", None),
    ("timestamp", None),
    ("action", "'updated'"),
    ("source", "'legacy'"),
    ("tag", "NULL"),
    ("version", "NULL"),
)
_AUDIT_COLUMNS = _VERSIONED_COLUMNS[:-1]


class LegacyShape(str, Enum):
    """Column shapes of env_history files that predate the schema marker."""

    VERSIONED_STRICT = "versioned_strict"
    VERSIONED_STRICT_TAGGED = "versioned_strict_tagged"
    VERSIONED = "versioned"
    AUDIT = "audit"
    TAGGED = "tagged"


@dataclass(frozen=True)
class Migration:
    """A schema step upgrading ``version - 1`` to ``version``."""
    version: int
    description: str
    apply: Callable[[sqlite3.Connection], None]


@dataclass(frozen=True)
class SchemaPlan:
    """Fresh-store DDL and ordered migrations for one engine."""
    engine: EngineKind
    table_sql: str
    indexes: Sequence[str]
    migrations: Sequence[Migration]

    @property
    def target_version(self) -> int:
        return self.migrations[-1].version if self.migrations else 0


# ─────────────────────────────────────────────────────────────────
# Introspection
# ─────────────────────────────────────────────────────────────────


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,)
    )
    return cursor.fetchone() is not None


def _table_columns(conn: sqlite3.Connection, name: str) -> dict[str, bool]:
    """Map column name to its NOT NULL flag."""
    cursor = conn.execute(f"PRAGMA table_info({name})")
    return {row[1]: bool(row[3]) for row in cursor.fetchall()}


def _has_unique_index(conn: sqlite3.Connection, columns: Sequence[str]) -> bool:
    for index in conn.execute(f"PRAGMA index_list({HISTORY_TABLE})").fetchall():
        if not index[2]:
            continue
        indexed = [row[2] for row in conn.execute(f"PRAGMA index_info({index[1]})").fetchall()]
        if indexed == list(columns):
            return True
    return False


def detect_legacy_shape(conn: sqlite3.Connection) -> Optional[LegacyShape]:
    """Classify an unmarked env_history table, None when there is no table."""
    if not _table_exists(conn, HISTORY_TABLE):
        return None
    columns = _table_columns(conn, HISTORY_TABLE)
    if "version" in columns:
        if not columns["version"]:
            return LegacyShape.VERSIONED
        if "tag" in columns:
            return LegacyShape.VERSIONED_STRICT_TAGGED
        return LegacyShape.VERSIONED_STRICT
    if _has_unique_index(conn, ("key", "tag")):
        return LegacyShape.TAGGED
    return LegacyShape.AUDIT


def read_marker(conn: sqlite3.Connection) -> Optional[tuple[EngineKind, int]]:
    """Return (engine, schema_version) from the marker table, if stamped."""
    if not _table_exists(conn, MARKER_TABLE):
        return None
    row = conn.execute(
        f"SELECT engine, schema_version FROM {MARKER_TABLE} WHERE id = 1"
    ).fetchone()
    if row is None:
        return None
    try:
        engine = EngineKind(row[0])
    except ValueError as e:
        raise MigrationError(f"Store marker names an unknown engine: {row[0]!r}") from e
    return engine, int(row[1])


def _stamp_marker(conn: sqlite3.Connection, engine: EngineKind, version: int) -> None:
    conn.execute(MARKER_SCHEMA)
    conn.execute(
        f"""
        INSERT INTO {MARKER_TABLE} (id, engine, schema_version, updated_at)
        VALUES (1, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            engine = excluded.engine,
            schema_version = excluded.schema_version,
            updated_at = excluded.updated_at
        """,
        (engine.value, version, _now_iso()),
    )


# ─────────────────────────────────────────────────────────────────
# Table Rebuild
# ─────────────────────────────────────────────────────────────────


def _sequence_value(conn: sqlite3.Connection) -> int:
    if not _table_exists(conn, "sqlite_sequence"):
        return 0
    row = conn.execute(
        "SELECT seq FROM sqlite_sequence WHERE name = ?", (HISTORY_TABLE,)
    ).fetchone()
    return int(row[0]) if row else 0


def _row_count(conn: sqlite3.Connection, table: str) -> int:
    return int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])


def _rebuild_table(
    conn: sqlite3.Connection,
    table_sql: str,
    columns: Sequence[tuple[str, Optional[str]]],
    indexes: Sequence[str],
) -> None:
    """Copy env_history into a new table shape, preserving ids.

    Must run inside the caller's transaction.
    """
    existing = _table_columns(conn, HISTORY_TABLE)
    old_sequence = _sequence_value(conn)
    old_count = _row_count(conn, HISTORY_TABLE)

    names = ", ".join(name for name, _ in columns)
    select_list = ", ".join(
        name if name in existing or fallback is None else fallback
        for name, fallback in columns
    )
    conn.execute(table_sql.format(table=REBUILD_TABLE))
    conn.execute(
        f"INSERT INTO {REBUILD_TABLE} ({names}) "
        f"SELECT {select_list} FROM {HISTORY_TABLE} ORDER BY id"
    )
    new_count = _row_count(conn, REBUILD_TABLE)
    if new_count != old_count:
        raise MigrationError(
            f"Row count mismatch while rebuilding {HISTORY_TABLE}: "
            f"copied {new_count} of {old_count} rows"
        )

    conn.execute(f"DROP TABLE {HISTORY_TABLE}")
    conn.execute(f"ALTER TABLE {REBUILD_TABLE} RENAME TO {HISTORY_TABLE}")

    # Ids handed out before the rebuild stay retired.
    sequence = max(old_sequence, _sequence_value(conn))
    conn.execute("DELETE FROM sqlite_sequence WHERE name = ?", (HISTORY_TABLE,))
    if sequence:
        conn.execute(
            "INSERT INTO sqlite_sequence (name, seq) VALUES (?, ?)",
            (HISTORY_TABLE, sequence),
        )

    for statement in indexes:
        conn.execute(statement)


# ─────────────────────────────────────────────────────────────────
# Migration Steps
# ─────────────────────────────────────────────────────────────────


def _add_tag_column(conn: sqlite3.Connection) -> None:
    if "tag" not in _table_columns(conn, HISTORY_TABLE):
        conn.execute(f"ALTER TABLE {HISTORY_TABLE} ADD COLUMN tag TEXT")


def _relax_version(conn: sqlite3.Connection) -> None:
    _rebuild_table(conn, VERSIONED_TABLE, _VERSIONED_COLUMNS, VERSIONED_INDEXES)


def _drop_version(conn: sqlite3.Connection) -> None:
    _rebuild_table(conn, AUDIT_TABLE, _AUDIT_COLUMNS, AUDIT_INDEXES)


def _enforce_unique_key_tag(conn: sqlite3.Connection) -> None:
    cursor = conn.execute(
        f"""
        UPDATE {HISTORY_TABLE} SET tag = NULL
        WHERE tag IS NOT NULL AND id NOT IN (
            SELECT MAX(id) FROM {HISTORY_TABLE}
            WHERE tag IS NOT NULL
            GROUP BY key, tag
        )
        """
    )
    if cursor.rowcount > 0:
        logger.warning(
            f"Demoted {cursor.rowcount} duplicate (key, tag) rows to untagged history"
        )
    _rebuild_table(conn, TAGGED_TABLE, _AUDIT_COLUMNS, TAGGED_INDEXES)


VERSIONED_PLAN = SchemaPlan(
    engine=EngineKind.VERSIONED,
    table_sql=VERSIONED_TABLE,
    indexes=VERSIONED_INDEXES,
    migrations=(
        Migration(1, "add nullable tag column", _add_tag_column),
        Migration(2, "allow tag-only rows with NULL version", _relax_version),
    ),
)

TAGGED_PLAN = SchemaPlan(
    engine=EngineKind.TAGGED,
    table_sql=TAGGED_TABLE,
    indexes=TAGGED_INDEXES,
    migrations=(
        Migration(1, "drop per-key version column", _drop_version),
        Migration(2, "enforce one row per (key, tag)", _enforce_unique_key_tag),
    ),
)

PLANS = {
    EngineKind.VERSIONED: VERSIONED_PLAN,
    EngineKind.TAGGED: TAGGED_PLAN,
}

# Starting schema version of each legacy shape, per engine. Missing
# entries cannot be opened by that engine.
_LEGACY_START = {
    EngineKind.VERSIONED: {
        LegacyShape.VERSIONED_STRICT: 0,
        LegacyShape.VERSIONED_STRICT_TAGGED: 1,
        LegacyShape.VERSIONED: 2,
    },
    EngineKind.TAGGED: {
        LegacyShape.VERSIONED_STRICT: 0,
        LegacyShape.VERSIONED_STRICT_TAGGED: 0,
        LegacyShape.VERSIONED: 0,
        LegacyShape.AUDIT: 1,
        # Unmarked tagged files still carry a NOT NULL action column.
        LegacyShape.TAGGED: 1,
    },
}


def _starting_version(conn: sqlite3.Connection, engine: EngineKind) -> Optional[int]:
    """Resolve the schema version to migrate from, None for a fresh file."""
    plan = PLANS[engine]
    marker = read_marker(conn)
    if marker is not None:
        marked_engine, version = marker
        if marked_engine == engine:
            if version > plan.target_version:
                raise MigrationError(
                    f"Store schema v{version} is newer than supported "
                    f"{engine.value} schema v{plan.target_version}"
                )
            return version
        if marked_engine == EngineKind.VERSIONED and engine == EngineKind.TAGGED:
            return 0
        raise MigrationError(
            f"Store was created for the {marked_engine.value} engine "
            f"and cannot be opened by the {engine.value} engine"
        )

    shape = detect_legacy_shape(conn)
    if shape is None:
        return None
    start = _LEGACY_START[engine].get(shape)
    if start is None:
        raise MigrationError(
            f"Legacy {shape.value} store cannot be opened by the {engine.value} engine"
        )
    logger.info(f"Detected legacy {shape.value} store, migrating from v{start}")
    return start


def initialize_schema(conn: sqlite3.Connection, engine: EngineKind) -> None:
    """Create the engine's table, indexes and marker on a fresh file."""
    plan = PLANS[engine]
    with transaction(conn):
        conn.execute(plan.table_sql.format(table=HISTORY_TABLE))
        for statement in plan.indexes:
            conn.execute(statement)
        _stamp_marker(conn, engine, plan.target_version)


def migrate_schema(conn: sqlite3.Connection, engine: EngineKind, current: int) -> int:
    """Apply every pending migration step after ``current``, returns the final version.

    All steps share one transaction: a failing step leaves the file exactly
    as it was before the first step.
    """
    plan = PLANS[engine]
    marker = read_marker(conn)
    pending = [m for m in plan.migrations if m.version > current]
    if not pending and marker == (engine, current):
        return current

    with transaction(conn):
        for migration in pending:
            migration.apply(conn)
            _stamp_marker(conn, engine, migration.version)
            current = migration.version
            logger.info(
                f"Applied {engine.value} schema migration v{migration.version}: "
                f"{migration.description}"
            )
        if not pending:
            _stamp_marker(conn, engine, current)
    return current


def ensure_schema(conn: sqlite3.Connection, engine: EngineKind | str) -> int:
    """Bring a store file to the engine's current schema.

    Idempotent. Returns the schema version now in place.

    Raises:
        MigrationError: If the file cannot be brought to the current schema.
            The file is left in its pre-migration state.
    """
    engine = EngineKind(engine)
    plan = PLANS[engine]
    try:
        current = _starting_version(conn, engine)
        if current is None:
            initialize_schema(conn, engine)
            logger.info(f"Created {engine.value} history schema v{plan.target_version}")
            return plan.target_version
        version = migrate_schema(conn, engine, current)
        with transaction(conn):
            for statement in plan.indexes:
                conn.execute(statement)
        return version
    except sqlite3.Error as e:
        logger.error(f"Schema migration failed for {engine.value} engine: {e}")
        raise MigrationError(f"Failed to migrate {engine.value} schema: {e}") from e
