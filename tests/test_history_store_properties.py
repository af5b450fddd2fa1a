"""
Property-based tests for the history store engines.

Covers snapshot round-trip, upsert idempotence, auto-tag numbering,
per-key version monotonicity and data preservation across migrations.
"""

import tempfile
from pathlib import Path

from hypothesis import given, settings, strategies as st

from envx.infrastructure.history_store import (
    TaggedHistoryStore,
    VersionedHistoryStore,
)
from envx.infrastructure.history_store.store import AUTO_TAG_PATTERN
from tests.support.history_store_strategies import (
    create_legacy_audit_store,
    create_legacy_strict_store,
    env_mapping_strategy,
    key_strategy,
    read_triples,
    tag_strategy,
    value_strategy,
)


@given(values=env_mapping_strategy, tag=tag_strategy)
@settings(max_examples=50, deadline=None)
def test_batch_upsert_round_trip(values: dict[str, str], tag: str):
    """
    *For any* non-empty mapping M and tag T, writing M under T and reading
    T back returns exactly M.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        store = TaggedHistoryStore(Path(tmpdir) / "envx.db")
        try:
            store.batch_upsert_tagged_values(values, tag)
            assert store.get_tagged_values(tag) == values
        finally:
            store.close()


@given(values=env_mapping_strategy, tag=tag_strategy)
@settings(max_examples=50, deadline=None)
def test_batch_upsert_is_idempotent(values: dict[str, str], tag: str):
    """
    *For any* mapping M, writing it twice under the same tag leaves exactly
    |M| rows under that tag.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        store = TaggedHistoryStore(Path(tmpdir) / "envx.db")
        try:
            store.batch_upsert_tagged_values(values, tag)
            store.batch_upsert_tagged_values(values, tag)

            assert store.get_tagged_values(tag) == values
            assert store.get_tag_stats(tag).total_records == len(values)
            assert store.get_stats().total_records == len(values)
        finally:
            store.close()


@given(
    batches=st.lists(env_mapping_strategy, min_size=1, max_size=6),
    engine=st.sampled_from([TaggedHistoryStore, VersionedHistoryStore]),
)
@settings(max_examples=30, deadline=None)
def test_auto_tags_are_distinct_and_increasing(batches, engine):
    """
    *For any* N untagged batch writes, N distinct auto-<k> tags are produced
    with strictly increasing k.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        store = engine(Path(tmpdir) / "envx.db")
        try:
            tags = [store.batch_upsert_tagged_values(values) for values in batches]

            numbers = []
            for tag in tags:
                match = AUTO_TAG_PATTERN.fullmatch(tag)
                assert match is not None, tag
                numbers.append(int(match.group(1)))
            assert numbers == sorted(set(numbers))
            assert len(set(tags)) == len(batches)
            for tag, values in zip(tags, batches):
                assert store.get_tagged_values(tag) == values
        finally:
            store.close()


@given(
    writes=st.lists(
        st.tuples(st.sampled_from(["A", "B", "C"]), value_strategy), min_size=1, max_size=20
    )
)
@settings(max_examples=50, deadline=None)
def test_versions_increase_per_key(writes):
    """
    *For any* sequence of appends, each key sees versions 1, 2, 3, ... in
    call order and get_latest_version returns the highest.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        store = VersionedHistoryStore(Path(tmpdir) / "envx.db")
        try:
            expected: dict[str, list[int]] = {}
            last_value: dict[str, str] = {}
            for key, value in writes:
                record = store.add_record(key, value)
                expected.setdefault(key, []).append(record.version)
                last_value[key] = value

            for key, versions in expected.items():
                assert versions == list(range(1, len(versions) + 1))
                latest = store.get_latest_version(key)
                assert latest is not None
                assert latest.version == len(versions)
                assert latest.value == last_value[key]
        finally:
            store.close()


@given(
    keys=st.lists(st.sampled_from(["A", "B", "C"]), min_size=1, max_size=10),
    engine=st.sampled_from([TaggedHistoryStore, VersionedHistoryStore]),
)
@settings(max_examples=30, deadline=None)
def test_strict_legacy_migration_preserves_rows(keys, engine):
    """
    *For any* legacy store with NOT NULL versions, migrating to either
    engine keeps every (id, key, value, timestamp) row.
    """
    counters: dict[str, int] = {}
    rows = []
    for index, key in enumerate(keys):
        counters[key] = counters.get(key, 0) + 1
        rows.append((key, f"value-{index}", counters[key]))

    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "envx.db"
        create_legacy_strict_store(db_path, rows)
        before = read_triples(db_path)

        store = engine(db_path)
        try:
            history = store.get_all_history(limit=None)
            assert len(history) == len(rows)
            assert sorted((r.id, r.key, r.value, r.timestamp) for r in history) == before
        finally:
            store.close()


@given(
    rows=st.lists(
        st.tuples(
            st.sampled_from(["A", "B"]),
            value_strategy,
            st.one_of(st.none(), st.sampled_from(["v1", "v2"])),
        ),
        min_size=1,
        max_size=12,
    )
)
@settings(max_examples=30, deadline=None)
def test_audit_migration_preserves_rows_and_deduplicates_tags(rows):
    """
    *For any* legacy audit log, migrating to the tagged engine keeps every
    row while leaving at most one row per (key, tag), holding the newest value.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "envx.db"
        create_legacy_audit_store(db_path, rows)
        before = read_triples(db_path)

        newest: dict[str, dict[str, str]] = {}
        for key, value, tag in rows:
            if tag is not None:
                newest.setdefault(tag, {})[key] = value

        store = TaggedHistoryStore(db_path)
        try:
            store.initialize()
            assert read_triples(db_path) == before
            for tag, values in newest.items():
                assert store.get_tagged_values(tag) == values
                assert store.get_tag_stats(tag).total_records == len(values)
        finally:
            store.close()


@given(key=key_strategy, values=st.lists(value_strategy, min_size=1, max_size=5))
@settings(max_examples=30, deadline=None)
def test_upsert_latest_versioned_value_never_adds_versions(key, values):
    """
    *For any* sequence of corrections, upsert_latest_versioned_value keeps a
    single version 1 row holding the last value.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        store = VersionedHistoryStore(Path(tmpdir) / "envx.db")
        try:
            for value in values:
                store.upsert_latest_versioned_value(key, value)

            history = store.get_history_by_key(key, limit=None)
            assert [r.version for r in history] == [1]
            assert history[0].value == values[-1]
        finally:
            store.close()
