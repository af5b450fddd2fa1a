"""
Services Layer - Snapshot exchange built on the history store.
"""

from envx.services.snapshot_exchange import (
    SnapshotEnvelope,
    SnapshotFormatError,
    SnapshotItem,
    export_snapshot,
    import_snapshot,
)

__all__ = [
    "SnapshotEnvelope",
    "SnapshotItem",
    "SnapshotFormatError",
    "export_snapshot",
    "import_snapshot",
]
