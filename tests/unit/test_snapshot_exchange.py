import json
from pathlib import Path

import pytest

from envx.infrastructure.history_store import TaggedHistoryStore, VersionedHistoryStore
from envx.services import (
    SnapshotEnvelope,
    SnapshotFormatError,
    export_snapshot,
    import_snapshot,
)


@pytest.fixture(params=[TaggedHistoryStore, VersionedHistoryStore])
def store(request, tmp_path: Path):
    store = request.param(tmp_path / "envx.db")
    store.initialize()
    yield store
    store.close()


def test_export_sorts_items_by_key(store) -> None:
    store.batch_upsert_tagged_values({"B": "2", "A": "1"}, "prod")

    envelope = export_snapshot(store, "prod")

    assert envelope.tag == "prod"
    assert [(item.key, item.value) for item in envelope.items] == [("A", "1"), ("B", "2")]


def test_export_unknown_tag_is_empty(store) -> None:
    assert export_snapshot(store, "missing").items == []


def test_import_overwrites_existing_tag(store) -> None:
    store.batch_upsert_tagged_values({"A": "old", "C": "keep"}, "prod")
    payload = json.dumps(
        {
            "tag": "prod",
            "timestamp": "2024-05-01T00:00:00+00:00",
            "items": [{"key": "A", "value": "new"}, {"key": "B", "value": ""}],
        }
    )

    tag = import_snapshot(store, SnapshotEnvelope.from_json(payload))

    assert tag == "prod"
    assert store.get_tagged_values("prod") == {"A": "new", "B": "", "C": "keep"}
    assert {r.source for r in store.get_history_by_tag("prod") if r.key != "C"} == {"pull"}


def test_envelope_json_round_trip(store) -> None:
    store.batch_upsert_tagged_values({"A": "1"}, "prod")
    envelope = export_snapshot(store, "prod")

    assert SnapshotEnvelope.from_json(envelope.to_json()) == envelope


def test_later_duplicate_items_win() -> None:
    envelope = SnapshotEnvelope.from_json(
        '{"tag": "t", "timestamp": "x", "items": '
        '[{"key": "A", "value": "1"}, {"key": "A", "value": "2"}]}'
    )

    assert envelope.to_mapping() == {"A": "2"}


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        '{"tag": "t", "timestamp": "x"}',
        '{"tag": "t", "timestamp": "x", "items": [{"key": "", "value": "1"}]}',
        '{"tag": "t", "timestamp": "x", "items": [{"key": "A"}]}',
    ],
)
def test_malformed_payload(payload: str) -> None:
    with pytest.raises(SnapshotFormatError):
        SnapshotEnvelope.from_json(payload)
