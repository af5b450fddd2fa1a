from pathlib import Path

import pytest

from envx.infrastructure.history_store import (
    HistoryStoreError,
    TaggedHistoryStore,
    next_auto_tag_name,
)


@pytest.fixture
def store(tmp_path: Path):
    store = TaggedHistoryStore(tmp_path / ".envx" / "envx.db")
    store.initialize()
    yield store
    store.close()


def test_overwrite_under_same_tag_keeps_other_keys(store: TaggedHistoryStore) -> None:
    store.batch_upsert_tagged_values({"A": "x", "B": "y"}, "v1")
    store.batch_upsert_tagged_values({"A": "z"}, "v1")

    assert store.get_tagged_values("v1") == {"A": "z", "B": "y"}
    assert store.get_tag_stats("v1").total_records == 2


def test_none_values_are_skipped(store: TaggedHistoryStore) -> None:
    tag = store.batch_upsert_tagged_values({"A": "1", "B": None}, "v1")

    assert tag == "v1"
    assert store.get_tagged_values("v1") == {"A": "1"}


def test_empty_string_value_is_stored(store: TaggedHistoryStore) -> None:
    store.batch_upsert_tagged_values({"EMPTY": ""}, "v1")

    assert store.get_tagged_values("v1") == {"EMPTY": ""}


def test_auto_tag_numbering_ignores_malformed_tags(store: TaggedHistoryStore) -> None:
    store.batch_upsert_tagged_values({"A": "1"}, "auto-x")
    store.batch_upsert_tagged_values({"A": "1"}, "auto-7b")
    store.batch_upsert_tagged_values({"A": "1"}, "auto-")

    assert store.batch_upsert_tagged_values({"A": "2"}) == "auto-1"
    store.batch_upsert_tagged_values({"A": "3"}, "auto-9")
    assert store.next_auto_tag() == "auto-10"
    assert store.batch_upsert_tagged_values({"A": "4"}) == "auto-10"


def test_next_auto_tag_name() -> None:
    assert next_auto_tag_name([]) == "auto-1"
    assert next_auto_tag_name(["auto-2", "auto-10", "release", "auto-3x"]) == "auto-11"


def test_empty_key_rejected_before_writing(store: TaggedHistoryStore) -> None:
    with pytest.raises(ValueError):
        store.batch_upsert_tagged_values({"A": "1", "": "2"}, "v1")

    assert store.get_stats().total_records == 0


def test_batch_is_all_or_nothing(store: TaggedHistoryStore) -> None:
    store.batch_upsert_tagged_values({"A": "old"}, "v1")

    # The second pair cannot be bound, after the first has been written.
    with pytest.raises(HistoryStoreError, match="tag 'v1'"):
        store.batch_upsert_tagged_values({"A": "new", "B": ["not", "a", "string"]}, "v1")

    assert store.get_tagged_values("v1") == {"A": "old"}
    assert store.get_stats().total_records == 1


def test_upsert_tagged_value_overwrites(store: TaggedHistoryStore) -> None:
    store.upsert_tagged_value("A", "1", "prod")
    store.upsert_tagged_value("A", "2", "prod", source="pull")

    history = store.get_history_by_tag("prod")
    assert len(history) == 1
    assert history[0].value == "2"
    assert history[0].source == "pull"
    assert history[0].version is None
    assert history[0].action is None


def test_tag_queries(store: TaggedHistoryStore) -> None:
    store.batch_upsert_tagged_values({"B": "2", "A": "1"}, "beta")
    store.batch_upsert_tagged_values({"A": "3"}, "alpha")

    assert store.get_all_tags() == ["alpha", "beta"]

    stats = store.get_tag_stats("beta")
    assert stats.tag == "beta"
    assert stats.unique_keys == 2
    assert [(v.key, v.value) for v in stats.variables] == [("A", "1"), ("B", "2")]

    summaries = store.get_all_tags_stats()
    assert [s.tag for s in summaries] == ["alpha", "beta"]
    assert all(s.variables == [] for s in summaries)


def test_history_by_key_newest_first(store: TaggedHistoryStore) -> None:
    store.batch_upsert_tagged_values({"A": "1"}, "t1")
    store.batch_upsert_tagged_values({"A": "2"}, "t2")
    store.batch_upsert_tagged_values({"A": "3"}, "t3")

    history = store.get_history_by_key("A")
    assert [r.value for r in history] == ["3", "2", "1"]
    assert [r.value for r in store.get_history_by_key("A", limit=2)] == ["3", "2"]

    latest = store.get_latest_value("A")
    assert latest is not None
    assert latest.tag == "t3"


def test_missing_key_and_tag_are_empty(store: TaggedHistoryStore) -> None:
    assert store.get_history_by_key("MISSING") == []
    assert store.get_latest_value("MISSING") is None
    assert store.get_tagged_values("missing") == {}
    assert store.get_history_by_tag("missing") == []
    stats = store.get_tag_stats("missing")
    assert stats.total_records == 0
    assert stats.variables == []


def test_empty_store_stats(store: TaggedHistoryStore) -> None:
    stats = store.get_stats()

    assert stats.total_records == 0
    assert stats.unique_keys == 0
    assert stats.oldest_timestamp is None
    assert stats.newest_timestamp is None


def test_stats_cover_all_rows(store: TaggedHistoryStore) -> None:
    store.batch_upsert_tagged_values({"A": "1", "B": "2"}, "t1")
    store.batch_upsert_tagged_values({"A": "3"}, "t2")

    stats = store.get_stats()
    assert stats.total_records == 3
    assert stats.unique_keys == 2
    assert stats.oldest_timestamp <= stats.newest_timestamp


def test_invalid_tag_rejected(store: TaggedHistoryStore) -> None:
    with pytest.raises(ValueError):
        store.batch_upsert_tagged_values({"A": "1"}, "  ")


def test_oversized_auto_tag_numbers_are_ignored(store: TaggedHistoryStore) -> None:
    huge = "auto-" + "9" * 5000
    assert next_auto_tag_name([huge, "auto-2"]) == "auto-3"

    store.batch_upsert_tagged_values({"A": "1"}, huge)
    assert store.batch_upsert_tagged_values({"A": "2"}) == "auto-1"
