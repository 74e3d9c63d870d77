"""
Tests for the in-memory HNSW graph.
"""

import numpy as np
import pytest

from sqlitehnsw import (
    DimensionMismatch,
    HNSWGraph,
    HNSWParams,
    IndexCorrupted,
)
from sqlitehnsw.serializer import encode


def build_graph(vectors, m=16, ef_construction=100, ef_search=50, metric="cosine", seed=42):
    params = HNSWParams(
        m=m, ef_construction=ef_construction, ef_search=ef_search, distance_metric=metric
    )
    graph = HNSWGraph(vectors.shape[1], params, rng=np.random.default_rng(seed))
    for i, vec in enumerate(vectors):
        graph.insert(i, vec)
    return graph


class TestGraphBasics:
    def test_empty_query(self):
        graph = HNSWGraph(8)
        assert graph.query(np.ones(8), k=5) == []
        assert graph.entry_point is None
        assert graph.layer_count == 0

    def test_three_vector_scenario(self):
        graph = HNSWGraph(3, rng=np.random.default_rng(0))
        graph.insert(1, [1, 0, 0])  # A
        graph.insert(2, [0, 1, 0])  # B
        graph.insert(3, [0.9, 0.1, 0])  # C

        results = graph.query([1, 0, 0], k=2)
        assert [vid for vid, _ in results] == [1, 3]
        assert results[0][1] == 0.0
        assert results[1][1] == pytest.approx(1 - 0.9 / np.sqrt(0.82), abs=1e-5)

    def test_euclidean_scenario(self):
        graph = HNSWGraph(2, HNSWParams(distance_metric="euclidean"), rng=np.random.default_rng(0))
        graph.insert(1, [0, 0])
        graph.insert(2, [3, 4])
        graph.insert(3, [1, 1])

        results = graph.query([0, 0], k=3)
        assert [vid for vid, _ in results] == [1, 3, 2]
        assert results[2][1] == pytest.approx(5.0)

    def test_self_match(self):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((200, 32)).astype(np.float32)
        graph = build_graph(vectors)

        for i in range(0, 200, 10):
            top_id, top_dist = graph.query(vectors[i], k=1, ef=200)[0]
            assert top_id == i
            assert top_dist == 0.0

    def test_result_length_and_order(self):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((50, 16)).astype(np.float32)
        graph = build_graph(vectors)

        for k in [1, 5, 10, 50, 100]:
            results = graph.query(vectors[0], k=k)
            assert len(results) == min(k, 50)
            dists = [d for _, d in results]
            assert dists == sorted(dists)

    def test_ties_broken_by_insertion_order(self):
        graph = HNSWGraph(3, rng=np.random.default_rng(0))
        graph.insert(10, [0.5, 0.5, 0.0])
        graph.insert(5, [0.5, 0.5, 0.0])
        graph.insert(7, [0.0, 0.0, 1.0])

        results = graph.query([0.5, 0.5, 0.0], k=2)
        assert [vid for vid, _ in results] == [10, 5]

    def test_invalid_k(self):
        graph = HNSWGraph(3)
        with pytest.raises(ValueError):
            graph.query([1, 0, 0], k=0)

    def test_invalid_ef(self):
        graph = HNSWGraph(3, rng=np.random.default_rng(0))
        graph.insert(1, [1, 0, 0])
        with pytest.raises(ValueError):
            graph.query([1, 0, 0], k=1, ef=0)
        with pytest.raises(ValueError):
            graph.query([1, 0, 0], k=1, ef=-5)
        assert graph.query([1, 0, 0], k=1, ef=1)[0][0] == 1

    def test_self_distance_is_exactly_zero(self):
        rng = np.random.default_rng(0)
        vectors = rng.standard_normal((200, 64)).astype(np.float32)
        graph = build_graph(vectors, m=8)

        for i in range(200):
            top_id, top_dist = graph.query(vectors[i], k=1, ef=200)[0]
            assert top_id == i
            assert top_dist == 0.0


class TestGraphInsert:
    def test_dimension_mismatch(self):
        graph = HNSWGraph(3)
        graph.insert(1, [1, 0, 0])

        with pytest.raises(DimensionMismatch) as exc_info:
            graph.insert(2, [1, 0])
        assert exc_info.value.expected == 3
        assert exc_info.value.received == 2
        assert len(graph) == 1

        with pytest.raises(DimensionMismatch):
            graph.query([1, 0, 0, 0], k=1)

    def test_explicit_level(self):
        graph = HNSWGraph(3, rng=np.random.default_rng(0))
        graph.insert(1, [1, 0, 0], level=0)
        graph.insert(2, [0, 1, 0], level=3)

        assert graph.node(2).level == 3
        assert graph.entry_point == 2
        assert graph.max_layer == 3
        assert graph.layer_count == 4
        graph.check_integrity()

    def test_upsert_replaces_vector(self):
        graph = HNSWGraph(3, rng=np.random.default_rng(0))
        graph.insert(1, [1, 0, 0])
        graph.insert(2, [0, 1, 0])
        graph.insert(1, [0, 0, 1])

        assert len(graph) == 2
        top_id, top_dist = graph.query([0, 0, 1], k=1)[0]
        assert top_id == 1
        assert top_dist == 0.0

    def test_degree_caps(self):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((300, 8)).astype(np.float32)
        graph = build_graph(vectors, m=4, ef_construction=32)

        for vid in graph.ids():
            node = graph.node(vid)
            assert len(node.neighbors[0]) <= 8
            for layer_nbrs in node.neighbors[1:]:
                assert len(layer_nbrs) <= 4
        graph.check_integrity()

    def test_seeded_builds_are_identical(self):
        rng = np.random.default_rng(7)
        vectors = rng.standard_normal((100, 16)).astype(np.float32)

        graph1 = build_graph(vectors, seed=123)
        graph2 = build_graph(vectors, seed=123)

        assert encode(graph1.export_state()) == encode(graph2.export_state())


class TestGraphDelete:
    def test_delete_absent_is_noop(self):
        graph = HNSWGraph(3)
        assert graph.delete(42) is False

    def test_deleted_ids_never_returned(self):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((100, 16)).astype(np.float32)
        graph = build_graph(vectors)

        deleted = set(range(0, 100, 3))
        for vid in deleted:
            assert graph.delete(vid) is True

        assert len(graph) == 100 - len(deleted)
        graph.check_integrity()
        for i in range(100):
            ids = {vid for vid, _ in graph.query(vectors[i], k=10)}
            assert not ids & deleted

    def test_delete_entry_point_promotes_highest_level(self):
        graph = HNSWGraph(3, rng=np.random.default_rng(0))
        graph.insert(1, [1, 0, 0], level=2)
        graph.insert(2, [0, 1, 0], level=1)
        graph.insert(3, [0, 0, 1], level=0)
        graph.insert(4, [1, 1, 0], level=1)

        graph.delete(1)
        assert graph.entry_point == 2  # level 1, inserted before 4
        assert graph.max_layer == 1
        graph.check_integrity()

        graph.delete(2)
        assert graph.entry_point == 4
        graph.delete(4)
        assert graph.entry_point == 3
        assert graph.max_layer == 0
        graph.delete(3)
        assert graph.entry_point is None
        assert len(graph) == 0
        assert graph.query([1, 0, 0], k=3) == []

    def test_recall_after_deletes(self):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((300, 16)).astype(np.float32)
        graph = build_graph(vectors)

        for vid in range(0, 300, 2):
            graph.delete(vid)
        graph.check_integrity()

        remaining = list(range(1, 300, 2))
        hits = sum(graph.query(vectors[i], k=1, ef=100)[0][0] == i for i in remaining)
        assert hits / len(remaining) >= 0.9

    def test_insert_after_delete_reuses_graph(self):
        graph = HNSWGraph(3, rng=np.random.default_rng(0))
        graph.insert(1, [1, 0, 0])
        graph.delete(1)
        graph.insert(2, [0, 1, 0])
        assert graph.entry_point == 2
        assert graph.query([0, 1, 0], k=1)[0][0] == 2


class TestGraphRecall:
    def test_recall_at_500(self):
        """HNSW should reach high recall@10 on 500 random vectors."""
        rng = np.random.default_rng(42)
        n, dim = 500, 32
        vectors = rng.standard_normal((n, dim)).astype(np.float32)
        graph = build_graph(vectors, m=16, ef_construction=100, ef_search=100)

        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        normed = vectors / norms

        hits = 0
        total = 0
        k = 10
        for qi in rng.choice(n, 30, replace=False):
            q_norm = normed[qi]
            sims = normed @ q_norm
            true_top_k = set(np.argsort(sims)[-k:].tolist())

            result_ids = {vid for vid, _ in graph.query(vectors[qi], k=k)}
            hits += len(true_top_k & result_ids)
            total += k

        recall = hits / total
        assert recall >= 0.8, f"HNSW recall@{k} = {recall:.3f}, expected >= 0.8"


class TestGraphState:
    def test_from_state_reproduces_queries(self):
        rng = np.random.default_rng(42)
        vectors = rng.standard_normal((100, 16)).astype(np.float32)
        graph = build_graph(vectors)

        restored = HNSWGraph.from_state(
            graph.export_state(), {i: v for i, v in enumerate(vectors)}
        )
        restored.check_integrity()

        for i in range(0, 100, 7):
            assert restored.query(vectors[i], k=5) == graph.query(vectors[i], k=5)

    def test_from_state_missing_vector(self):
        graph = HNSWGraph(3, rng=np.random.default_rng(0))
        graph.insert(1, [1, 0, 0])
        graph.insert(2, [0, 1, 0])

        with pytest.raises(IndexCorrupted):
            HNSWGraph.from_state(graph.export_state(), {1: np.array([1, 0, 0])})

    def test_export_state_is_a_copy(self):
        graph = HNSWGraph(3, rng=np.random.default_rng(0))
        graph.insert(1, [1, 0, 0])
        graph.insert(2, [0, 1, 0])

        state = graph.export_state()
        state.nodes[1].neighbors[0].append(99)
        graph.check_integrity()

    def test_check_integrity_detects_dangling_edge(self):
        graph = HNSWGraph(3, rng=np.random.default_rng(0))
        graph.insert(1, [1, 0, 0])
        graph.insert(2, [0, 1, 0])

        graph.node(1).neighbors[0].append(99)
        with pytest.raises(IndexCorrupted):
            graph.check_integrity()

    def test_membership_and_vectors(self):
        graph = HNSWGraph(3, rng=np.random.default_rng(0))
        graph.insert(1, [2, 0, 0])

        assert 1 in graph
        assert 2 not in graph
        assert graph.ids() == [1]
        # Cosine graphs keep the normalized copy
        np.testing.assert_allclose(graph.get_vector(1), [1, 0, 0])
        assert graph.get_vector(2) is None

    def test_clear(self):
        graph = HNSWGraph(3, rng=np.random.default_rng(0))
        graph.insert(1, [1, 0, 0])
        graph.clear()
        assert len(graph) == 0
        assert graph.entry_point is None
        assert graph.query([1, 0, 0], k=1) == []
