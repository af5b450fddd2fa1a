"""
History Store module for envx.

SQLite-based storage for environment variable history, tags and versions.
"""

from .models import (
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
from .queries import HistoryQueryExecutor, transaction
from .schema import LegacyShape, detect_legacy_shape, ensure_schema, read_marker
from .store import (
    HistoryStore,
    TaggedHistoryStore,
    VersionedHistoryStore,
    create_history_store,
    next_auto_tag_name,
    open_history_store,
    resolve_db_path,
)

__all__ = [
    # Main classes
    "HistoryStore",
    "TaggedHistoryStore",
    "VersionedHistoryStore",
    "EngineKind",
    "HistoryRecord",
    "NewRecord",
    "TaggedVariable",
    "HistoryStats",
    "TagStats",
    "VersionStats",
    # Errors
    "HistoryStoreError",
    "InitializationError",
    "MigrationError",
    "ConstraintViolationError",
    "ClosedStoreError",
    # Query executor
    "HistoryQueryExecutor",
    "transaction",
    # Schema
    "LegacyShape",
    "detect_legacy_shape",
    "ensure_schema",
    "read_marker",
    # Factory
    "create_history_store",
    "open_history_store",
    "resolve_db_path",
    "next_auto_tag_name",
]
