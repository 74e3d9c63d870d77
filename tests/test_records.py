"""
Tests for the SQLite vector record table.
"""

import sqlite3

import numpy as np
import pytest

from sqlitehnsw import DimensionMismatch, StorageUnavailable
from sqlitehnsw.records import VectorRecordStore, is_range_filter


@pytest.fixture
def cursor():
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    cur = conn.cursor()
    VectorRecordStore(3).init_tables(cur)
    yield cur
    conn.close()


@pytest.fixture
def records():
    return VectorRecordStore(3)


class TestVectorRecordStore:
    def test_put_and_get(self, cursor, records):
        vid = records.put(cursor, "doc1", [1.0, 2.0, 3.0])
        record = records.get(cursor, vid)

        assert record.id == vid
        assert record.document_id == "doc1"
        assert record.dimension == 3
        assert record.vector.dtype == np.float32
        np.testing.assert_array_equal(record.vector, [1.0, 2.0, 3.0])

    def test_get_missing(self, cursor, records):
        assert records.get(cursor, 123) is None
        assert records.get_by_document(cursor, "nope") is None
        assert records.id_for_document(cursor, "nope") is None

    def test_put_overwrites_document(self, cursor, records):
        vid1 = records.put(cursor, "doc1", [1.0, 0.0, 0.0])
        vid2 = records.put(cursor, "doc1", [0.0, 1.0, 0.0])

        assert vid1 == vid2
        assert records.count(cursor) == 1
        np.testing.assert_array_equal(records.get(cursor, vid1).vector, [0.0, 1.0, 0.0])

    def test_ids_are_not_reused(self, cursor, records):
        vid1 = records.put(cursor, "doc1", [1.0, 0.0, 0.0])
        records.delete(cursor, vid1)
        vid2 = records.put(cursor, "doc2", [1.0, 0.0, 0.0])
        assert vid2 > vid1

    def test_dimension_mismatch(self, cursor, records):
        with pytest.raises(DimensionMismatch):
            records.put(cursor, "doc1", [1.0, 2.0])
        assert records.count(cursor) == 0

    def test_delete(self, cursor, records):
        vid = records.put(cursor, "doc1", [1.0, 0.0, 0.0])
        assert records.delete(cursor, vid) is True
        assert records.delete(cursor, vid) is False
        assert records.count(cursor) == 0

    def test_iter_records_in_id_order(self, cursor, records):
        for i in range(25):
            records.put(cursor, f"doc{i}", [float(i), 0.0, 0.0])

        seen = list(records.iter_records(cursor, batch_size=7))
        assert [r.document_id for r in seen] == [f"doc{i}" for i in range(25)]
        assert [r.id for r in seen] == records.ids(cursor)

    def test_resolve_beyond_chunk_size(self, cursor, records):
        ids = [records.put(cursor, f"doc{i}", [1.0, 0.0, 0.0]) for i in range(1000)]

        mapping = records.resolve(cursor, ids + [999999])
        assert len(mapping) == 1000
        assert mapping[ids[0]] == ("doc0", None)
        assert mapping[ids[-1]] == ("doc999", None)

    def test_resolve_with_filter_beyond_chunk_size(self, cursor, records):
        ids = [
            records.put(cursor, f"doc{i}", [1.0, 0.0, 0.0], {"even": i % 2 == 0, "n": i})
            for i in range(1000)
        ]

        mapping = records.resolve(cursor, ids, {"even": True, "n": [(">=", 900)]})
        assert sorted(mapping) == ids[900::2]
        assert mapping[ids[900]] == ("doc900", {"even": True, "n": 900})

    def test_metadata_round_trip(self, cursor, records):
        metadata = {"category": "news", "tags": ["a", "b"], "price": 12.5}
        vid = records.put(cursor, "doc1", [1.0, 0.0, 0.0], metadata)

        assert records.get(cursor, vid).metadata == metadata
        assert records.get_by_document(cursor, "doc1").metadata == metadata

    def test_overwrite_without_metadata_clears_it(self, cursor, records):
        vid = records.put(cursor, "doc1", [1.0, 0.0, 0.0], {"category": "news"})
        records.put(cursor, "doc1", [0.0, 1.0, 0.0])
        assert records.get(cursor, vid).metadata is None

    def test_match_ids(self, cursor, records):
        a = records.put(cursor, "a", [1.0, 0.0, 0.0], {"category": "news", "price": 5})
        b = records.put(cursor, "b", [1.0, 0.0, 0.0], {"category": "blog", "price": 50})
        c = records.put(cursor, "c", [1.0, 0.0, 0.0], {"category": "news", "price": 500})
        d = records.put(cursor, "d", [1.0, 0.0, 0.0])

        assert records.match_ids(cursor, {"category": "news"}) == [a, c]
        assert records.match_ids(cursor, {"category": ["blog", "news"]}) == [a, b, c]
        assert records.match_ids(cursor, {"category": None}) == [d]
        assert records.match_ids(cursor, {"price": [(">", 5), ("<=", 500)]}) == [b, c]
        assert records.match_ids(cursor, {"category": "news", "price": [("<", 100)]}) == [a]
        assert records.match_ids(cursor, {"category": []}) == []
        assert records.match_ids(cursor, {}) == [a, b, c, d]

    def test_invalid_filters(self, cursor, records):
        with pytest.raises(ValueError):
            records.match_ids(cursor, {"category": {"nested": 1}})
        with pytest.raises(ValueError):
            records.match_ids(cursor, {"price": [(">=", [1, 2])]})
        with pytest.raises(ValueError):
            records.match_ids(cursor, {'bad"field': 1})

    def test_is_range_filter(self):
        assert is_range_filter([(">=", 1)])
        assert is_range_filter([(">=", 1), ("<", 5)])
        assert not is_range_filter(["news", "blog"])
        assert not is_range_filter([])
        assert not is_range_filter("news")

    def test_invalid_metadata_json(self, cursor, records):
        vid = records.put(cursor, "doc1", [1.0, 0.0, 0.0], {"a": 1})
        cursor.execute("UPDATE vectors SET metadata = ? WHERE id = ?", ("{not json", vid))
        with pytest.raises(StorageUnavailable):
            records.get(cursor, vid)

    def test_clear(self, cursor, records):
        records.put(cursor, "doc1", [1.0, 0.0, 0.0])
        records.clear(cursor)
        assert records.count(cursor) == 0

    def test_unreadable_record(self, cursor, records):
        vid = records.put(cursor, "doc1", [1.0, 0.0, 0.0])
        cursor.execute("UPDATE vectors SET vector = ? WHERE id = ?", (b"\x00" * 8, vid))
        with pytest.raises(StorageUnavailable):
            records.get(cursor, vid)
