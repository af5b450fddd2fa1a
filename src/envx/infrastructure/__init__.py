"""
Infrastructure Layer - Persistent history storage.
"""

from envx.infrastructure.history_store import (
    ClosedStoreError,
    ConstraintViolationError,
    EngineKind,
    HistoryRecord,
    HistoryStore,
    HistoryStoreError,
    InitializationError,
    MigrationError,
    TaggedHistoryStore,
    VersionedHistoryStore,
    create_history_store,
    open_history_store,
)

__all__ = [
    # History store
    "HistoryStore",
    "TaggedHistoryStore",
    "VersionedHistoryStore",
    "EngineKind",
    "HistoryRecord",
    "create_history_store",
    "open_history_store",
    # Errors
    "HistoryStoreError",
    "InitializationError",
    "MigrationError",
    "ConstraintViolationError",
    "ClosedStoreError",
]
