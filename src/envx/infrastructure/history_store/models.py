"""
Data models and error taxonomy for the history store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

ACTIONS = ("created", "updated", "deleted")


class EngineKind(str, Enum):
    """Write engine a store file is created for."""

    TAGGED = "tagged"
    VERSIONED = "versioned"


class HistoryStoreError(Exception):
    """Base exception for history store errors."""
    pass


class InitializationError(HistoryStoreError):
    """The backing directory or database file cannot be created or opened."""
    pass


class MigrationError(HistoryStoreError):
    """A schema migration failed or the store file is incompatible."""
    pass


class ConstraintViolationError(HistoryStoreError):
    """A write violated a NOT NULL or uniqueness constraint."""
    pass


class ClosedStoreError(HistoryStoreError):
    """An operation was invoked after close()."""
    pass


@dataclass(frozen=True)
class HistoryRecord:
    """A single row of env_history."""
    id: int
    key: str
    value: str
    timestamp: str
    source: str
    tag: Optional[str] = None
    version: Optional[int] = None
    action: Optional[str] = None


@dataclass(frozen=True)
class NewRecord:
    """A pending append-only write.

    ``timestamp`` defaults to the time of insertion.
    """
    key: str
    value: str
    action: str = "updated"
    source: str = "set"
    timestamp: Optional[datetime | str] = None


@dataclass(frozen=True)
class TaggedVariable:
    key: str
    value: str


@dataclass
class HistoryStats:
    """Aggregate statistics over a set of rows."""
    total_records: int
    unique_keys: int
    oldest_timestamp: Optional[str]
    newest_timestamp: Optional[str]


@dataclass
class TagStats(HistoryStats):
    """Aggregate statistics for one tag.

    ``variables`` is only populated by the single-tag query.
    """
    tag: str = ""
    variables: list[TaggedVariable] = field(default_factory=list)


@dataclass
class VersionStats(HistoryStats):
    """Aggregate statistics for one version number across keys."""
    version: int = 0
