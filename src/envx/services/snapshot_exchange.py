"""
Snapshot exchange for push/pull transports.

Maps the JSON envelope ``{tag, timestamp, items: [{key, value}]}`` onto the
tag-scoped read and write paths of a history store. The transport itself
(HTTP or otherwise) stays outside this module.
"""

import logging
from datetime import datetime, timezone

from pydantic import BaseModel, ValidationError, field_validator

from envx.infrastructure.history_store import HistoryStore
from envx.infrastructure.history_store.queries import to_iso

logger = logging.getLogger(__name__)


class SnapshotFormatError(ValueError):
    """Raised when a snapshot payload cannot be parsed."""
    pass


class SnapshotItem(BaseModel):
    key: str
    value: str

    @field_validator("key")
    @classmethod
    def _key_not_empty(cls, key: str) -> str:
        if not key:
            raise ValueError("key must not be empty")
        return key


class SnapshotEnvelope(BaseModel):
    """A tagged set of key/value pairs as exchanged with a remote."""

    tag: str
    timestamp: str
    items: list[SnapshotItem]

    def to_mapping(self) -> dict[str, str]:
        """Flatten items to a mapping; later duplicates win."""
        return {item.key: item.value for item in self.items}

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, payload: str | bytes) -> "SnapshotEnvelope":
        try:
            return cls.model_validate_json(payload)
        except ValidationError as e:
            raise SnapshotFormatError(f"Invalid snapshot payload: {e}") from e


def export_snapshot(store: HistoryStore, tag: str) -> SnapshotEnvelope:
    """Build an envelope from the values recorded under tag."""
    values = store.get_tagged_values(tag)
    envelope = SnapshotEnvelope(
        tag=tag,
        timestamp=to_iso(datetime.now(timezone.utc)),
        items=[SnapshotItem(key=key, value=value) for key, value in sorted(values.items())],
    )
    logger.debug(f"Exported {len(envelope.items)} values for tag {tag}")
    return envelope


def import_snapshot(
    store: HistoryStore, envelope: SnapshotEnvelope, source: str = "pull"
) -> str:
    """Write an envelope into the store under its tag. Returns the tag written."""
    tag = store.batch_upsert_tagged_values(envelope.to_mapping(), envelope.tag, source=source)
    logger.info(f"Imported {len(envelope.items)} values into tag {tag}")
    return tag
