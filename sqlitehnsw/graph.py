"""
HNSW (Hierarchical Navigable Small World) graph.

Builds a multi-layer proximity graph for fast approximate nearest neighbor search.
Nodes live in an arena keyed by vector id and edges are plain id lists, so the
bidirectional links never form object reference cycles. Every node remembers
the nodes linking to it, which lets delete() unlink a node without scanning
the whole graph and re-link neighbors that lost too many edges.

The graph keeps a normalized copy of each vector in a contiguous numpy array
for distance computations only. The vectors themselves are owned by the
record store.
"""

import heapq
import logging
import math
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Mapping, Optional

import numpy as np

from sqlitehnsw.config import HNSWParams
from sqlitehnsw.distance import DistanceMetric, distances, pairwise, prepare
from sqlitehnsw.errors import DimensionMismatch, IndexCorrupted

logger = logging.getLogger(__name__)

# (distance, insertion sequence, id): sorts closest first, older first on ties
Candidate = tuple[float, int, int]


@dataclass
class GraphNode:
    """Placement of one vector in the graph."""

    id: int
    level: int
    seq: int
    neighbors: list[list[int]] = field(default_factory=list)


@dataclass
class IndexState:
    """The full, serializable state of an HNSW graph."""

    dimension: int
    params: HNSWParams
    entry_point: Optional[int] = None
    max_layer: int = 0
    next_seq: int = 0
    nodes: dict[int, GraphNode] = field(default_factory=dict)

    @property
    def layer_count(self) -> int:
        return self.max_layer + 1 if self.nodes else 0


def validate_state(state: IndexState, error: type = IndexCorrupted) -> None:
    """Check the structural invariants of a state, raising `error` on the first violation."""
    nodes = state.nodes
    m = state.params.m

    if state.entry_point is None:
        if nodes:
            raise error(f"Entry point is missing but the graph has {len(nodes)} nodes")
        if state.max_layer != 0:
            raise error(f"Empty graph has max_layer {state.max_layer}")
        return

    entry = nodes.get(state.entry_point)
    if entry is None:
        raise error(f"Entry point {state.entry_point} is not in the graph")
    if entry.level != state.max_layer:
        raise error(
            f"Entry point {entry.id} is at layer {entry.level}, "
            f"but the top layer is {state.max_layer}"
        )

    for node_id, node in nodes.items():
        if node.id != node_id:
            raise error(f"Node stored under {node_id} has id {node.id}")
        if node.level < 0 or node.level > state.max_layer:
            raise error(f"Node {node_id} has invalid level {node.level}")
        if node.seq < 0 or node.seq >= state.next_seq:
            raise error(f"Node {node_id} has invalid sequence number {node.seq}")
        if len(node.neighbors) != node.level + 1:
            raise error(
                f"Node {node_id} at level {node.level} has "
                f"{len(node.neighbors)} neighbor lists"
            )
        for layer, neighbors in enumerate(node.neighbors):
            cap = m * 2 if layer == 0 else m
            if len(neighbors) > cap:
                raise error(
                    f"Node {node_id} has {len(neighbors)} neighbors at layer {layer}, "
                    f"cap is {cap}"
                )
            if len(set(neighbors)) != len(neighbors):
                raise error(f"Node {node_id} has duplicate neighbors at layer {layer}")
            for nbr in neighbors:
                if nbr == node_id:
                    raise error(f"Node {node_id} links to itself at layer {layer}")
                other = nodes.get(nbr)
                if other is None:
                    raise error(f"Node {node_id} links to missing node {nbr}")
                if other.level < layer:
                    raise error(
                        f"Node {node_id} links to {nbr} at layer {layer}, "
                        f"but {nbr} only reaches layer {other.level}"
                    )


class HNSWGraph:
    """
    In-memory HNSW index over integer vector ids.

    The random source for layer assignment is injected so graphs can be
    rebuilt reproducibly:

        >>> graph = HNSWGraph(3, HNSWParams(m=8), rng=np.random.default_rng(42))
        >>> graph.insert(1, [1.0, 0.0, 0.0])
        >>> graph.query([1.0, 0.0, 0.0], k=1)
        [(1, 0.0)]
    """

    def __init__(
        self,
        dimension: int,
        params: Optional[HNSWParams] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.dimension = dimension
        self.params = params if params is not None else HNSWParams()
        self.metric: DistanceMetric = self.params.distance_metric
        self._rng = rng if rng is not None else np.random.default_rng()
        self._ml = 1.0 / math.log(self.params.m)

        self._nodes: dict[int, GraphNode] = {}
        # Reverse edges: id -> per-layer set of nodes linking to it
        self._incoming: dict[int, list[set[int]]] = {}
        self._entry_point: Optional[int] = None
        self._max_layer: int = 0
        self._next_seq: int = 0

        # Vector arena (contiguous numpy array, slots reused after delete)
        self._vectors = np.zeros((0, dimension), dtype=np.float32)
        self._slots: dict[int, int] = {}
        self._free_slots: list[int] = []
        self._n_slots: int = 0

    # --- Introspection ---

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, vector_id: int) -> bool:
        return vector_id in self._nodes

    @property
    def entry_point(self) -> Optional[int]:
        return self._entry_point

    @property
    def max_layer(self) -> int:
        return self._max_layer

    @property
    def layer_count(self) -> int:
        return self._max_layer + 1 if self._nodes else 0

    def ids(self) -> list[int]:
        return sorted(self._nodes)

    def node(self, vector_id: int) -> Optional[GraphNode]:
        return self._nodes.get(vector_id)

    def get_vector(self, vector_id: int) -> Optional[np.ndarray]:
        """Return the graph's (metric-prepared) copy of a vector."""
        slot = self._slots.get(vector_id)
        if slot is None:
            return None
        return self._vectors[slot].copy()

    # --- Public operations ---

    def insert(self, vector_id: int, vector, level: Optional[int] = None) -> None:
        """
        Insert a vector under the given id. An existing id is replaced.

        `level` pins the node's top layer; otherwise it is drawn from the
        exponential distribution with decay 1/ln(m).
        """
        vec = self._check_vector(vector)
        if level is None:
            level = self._random_level()
        elif level < 0:
            raise ValueError(f"level must be >= 0, got {level}")

        if vector_id in self._nodes:
            self.delete(vector_id)

        node = GraphNode(
            id=vector_id,
            level=level,
            seq=self._next_seq,
            neighbors=[[] for _ in range(level + 1)],
        )
        self._next_seq += 1
        self._store_vector(vector_id, prepare(vec, self.metric))
        self._nodes[vector_id] = node
        self._incoming[vector_id] = [set() for _ in range(level + 1)]

        if self._entry_point is None:
            self._entry_point = vector_id
            self._max_layer = level
            return

        try:
            self._link(node)
        except Exception:
            self._detach(vector_id)
            raise

        if level > self._max_layer:
            self._max_layer = level
            self._entry_point = vector_id

    def query(self, vector, k: int, ef: Optional[int] = None) -> list[tuple[int, float]]:
        """Approximate k nearest neighbors as (id, distance), closest first."""
        if k < 1:
            raise ValueError(f"k must be >= 1, got {k}")
        if ef is not None and ef < 1:
            raise ValueError(f"ef must be >= 1, got {ef}")
        q_vec = self._check_vector(vector)
        if self._entry_point is None:
            return []

        q_vec = prepare(q_vec, self.metric)

        current = self._entry_point
        for layer in range(self._max_layer, 0, -1):
            current = self._greedy_search(q_vec, current, layer)

        width = max(ef if ef is not None else self.params.ef_search, k)
        results = self._search_layer(q_vec, [current], width, 0)
        return [(vid, dist) for dist, _, vid in results[:k]]

    def delete(self, vector_id: int) -> bool:
        """Remove a node and every edge that references it. Absent ids are a no-op."""
        node = self._nodes.get(vector_id)
        if node is None:
            return False

        referrers = [set(s) for s in self._incoming[vector_id]]
        former = [list(nbrs) for nbrs in node.neighbors]
        self._detach(vector_id)

        if self._entry_point == vector_id:
            self._promote_entry_point()

        # Re-link former neighbors that lost too many edges
        for layer in range(node.level + 1):
            threshold = max(1, self._cap(layer) // 2)
            hints = former[layer] + sorted(referrers[layer])
            for src in sorted(referrers[layer]):
                src_node = self._nodes.get(src)
                if src_node is None:
                    continue
                if len(src_node.neighbors[layer]) < threshold:
                    self._relink(src, layer, hints)

        logger.debug("Deleted node %s (level %d)", vector_id, node.level)
        return True

    def clear(self) -> None:
        self._nodes = {}
        self._incoming = {}
        self._entry_point = None
        self._max_layer = 0
        self._next_seq = 0
        self._vectors = np.zeros((0, self.dimension), dtype=np.float32)
        self._slots = {}
        self._free_slots = []
        self._n_slots = 0

    def check_integrity(self) -> None:
        """Raise IndexCorrupted if the graph violates one of its invariants."""
        validate_state(self._state_view(), IndexCorrupted)
        if self._max_layer != max((n.level for n in self._nodes.values()), default=0):
            raise IndexCorrupted(f"Top layer {self._max_layer} does not match the node levels")
        for vector_id in self._nodes:
            if vector_id not in self._slots:
                raise IndexCorrupted(f"Node {vector_id} has no vector")

    # --- State export / import ---

    def export_state(self) -> IndexState:
        """Return a deep copy of the graph state, safe to serialize later."""
        return deepcopy(self._state_view())

    @classmethod
    def from_state(
        cls,
        state: IndexState,
        vectors: Mapping[int, np.ndarray],
        rng: Optional[np.random.Generator] = None,
    ) -> "HNSWGraph":
        """Rebuild a graph from a decoded state and the raw vectors of its nodes."""
        validate_state(state, IndexCorrupted)
        graph = cls(state.dimension, state.params, rng=rng)

        for vector_id in sorted(state.nodes):
            raw = vectors.get(vector_id)
            if raw is None:
                raise IndexCorrupted(f"Node {vector_id} has no vector record")
            vec = graph._check_vector(raw)
            src = state.nodes[vector_id]
            graph._nodes[vector_id] = GraphNode(
                id=vector_id,
                level=src.level,
                seq=src.seq,
                neighbors=[list(nbrs) for nbrs in src.neighbors],
            )
            graph._incoming[vector_id] = [set() for _ in range(src.level + 1)]
            graph._store_vector(vector_id, prepare(vec, graph.metric))

        for vector_id, node in graph._nodes.items():
            for layer, nbrs in enumerate(node.neighbors):
                for nbr in nbrs:
                    graph._incoming[nbr][layer].add(vector_id)

        graph._entry_point = state.entry_point
        graph._max_layer = state.max_layer
        graph._next_seq = state.next_seq
        return graph

    def _state_view(self) -> IndexState:
        return IndexState(
            dimension=self.dimension,
            params=self.params,
            entry_point=self._entry_point,
            max_layer=self._max_layer,
            next_seq=self._next_seq,
            nodes=self._nodes,
        )

    # --- Vector arena ---

    def _ensure_capacity(self, n: int) -> None:
        capacity = self._vectors.shape[0]
        if capacity >= n:
            return
        new_cap = max(n, int(capacity * 1.5), 1024)
        grown = np.zeros((new_cap, self.dimension), dtype=np.float32)
        grown[:capacity] = self._vectors
        self._vectors = grown

    def _store_vector(self, vector_id: int, vec: np.ndarray) -> None:
        if self._free_slots:
            slot = self._free_slots.pop()
        else:
            slot = self._n_slots
            self._n_slots += 1
            self._ensure_capacity(self._n_slots)
        self._vectors[slot] = vec
        self._slots[vector_id] = slot

    def _matrix(self, ids: list[int]) -> np.ndarray:
        try:
            slots = [self._slots[i] for i in ids]
        except KeyError as exc:
            raise IndexCorrupted(f"Node {exc.args[0]} is linked but has no vector") from None
        return self._vectors[np.array(slots, dtype=np.int64)]

    def _vector(self, vector_id: int) -> np.ndarray:
        slot = self._slots.get(vector_id)
        if slot is None:
            raise IndexCorrupted(f"Node {vector_id} is linked but has no vector")
        return self._vectors[slot]

    def _check_vector(self, vector) -> np.ndarray:
        vec = np.asarray(vector, dtype=np.float32).ravel()
        if vec.shape[0] != self.dimension:
            raise DimensionMismatch(self.dimension, vec.shape[0])
        if not np.all(np.isfinite(vec)):
            raise ValueError("Vector contains NaN or infinite values")
        return vec

    # --- Core HNSW operations ---

    def _random_level(self) -> int:
        return int(-math.log(self._rng.random() + 1e-10) * self._ml)

    def _cap(self, layer: int) -> int:
        return self.params.m_max0 if layer == 0 else self.params.m

    def _get_node(self, vector_id: int) -> GraphNode:
        node = self._nodes.get(vector_id)
        if node is None:
            raise IndexCorrupted(f"Node {vector_id} is linked but not in the graph")
        return node

    def _layer_neighbors(self, vector_id: int, layer: int) -> list[int]:
        node = self._get_node(vector_id)
        if layer > node.level:
            raise IndexCorrupted(f"Node {vector_id} is reached on layer {layer} above its level {node.level}")
        return node.neighbors[layer]

    def _link(self, node: GraphNode) -> None:
        """Connect a freshly stored node into every layer up to its level."""
        q_vec = self._vector(node.id)
        current = self._entry_point

        # Greedy descent through the layers above the node
        for layer in range(self._max_layer, node.level, -1):
            current = self._greedy_search(q_vec, current, layer)

        entries = [current]
        for layer in range(min(node.level, self._max_layer), -1, -1):
            candidates = self._search_layer(q_vec, entries, self.params.ef_construction, layer)
            candidates = [c for c in candidates if c[2] != node.id]
            neighbors = self._select_neighbors(q_vec, candidates, self.params.m)

            self._set_neighbors(node.id, layer, neighbors)
            for nbr in neighbors:
                self._add_edge(nbr, node.id, layer)

            if candidates:
                entries = [vid for _, _, vid in candidates]

    def _greedy_search(self, q_vec: np.ndarray, entry: int, layer: int) -> int:
        """Move to the single best neighbor until no neighbor is closer."""
        current = entry
        current_dist = float(distances(self.metric, q_vec, self._matrix([current]))[0])

        while True:
            neighbors = self._layer_neighbors(current, layer)
            if not neighbors:
                break
            dists = distances(self.metric, q_vec, self._matrix(neighbors))
            best_i = int(np.argmin(dists))
            if dists[best_i] < current_dist:
                current = neighbors[best_i]
                current_dist = float(dists[best_i])
            else:
                break
        return current

    def _search_layer(
        self, q_vec: np.ndarray, entries: list[int], ef: int, layer: int
    ) -> list[Candidate]:
        """Beam search on one layer, returning up to ef candidates closest first."""
        visited: set[int] = set(entries)
        candidates: list[Candidate] = []
        # Max-heap on (distance, seq) via negation
        results: list[tuple[float, int, int]] = []

        entry_dists = distances(self.metric, q_vec, self._matrix(entries))
        for dist, vid in zip(entry_dists.tolist(), entries):
            seq = self._get_node(vid).seq
            heapq.heappush(candidates, (dist, seq, vid))
            heapq.heappush(results, (-dist, -seq, vid))
            if len(results) > ef:
                heapq.heappop(results)

        while candidates:
            dist, _, current = heapq.heappop(candidates)
            if len(results) >= ef and dist > -results[0][0]:
                break

            new_nbrs = [n for n in self._layer_neighbors(current, layer) if n not in visited]
            if not new_nbrs:
                continue
            visited.update(new_nbrs)

            nbr_dists = distances(self.metric, q_vec, self._matrix(new_nbrs))
            for nbr_dist, nbr in zip(nbr_dists.tolist(), new_nbrs):
                if len(results) < ef or nbr_dist < -results[0][0]:
                    seq = self._get_node(nbr).seq
                    heapq.heappush(candidates, (nbr_dist, seq, nbr))
                    heapq.heappush(results, (-nbr_dist, -seq, nbr))
                    if len(results) > ef:
                        heapq.heappop(results)

        return sorted((-d, -s, vid) for d, s, vid in results)

    def _select_neighbors(
        self, q_vec: np.ndarray, candidates: list[Candidate], limit: int
    ) -> list[int]:
        """
        Diversity-aware neighbor selection.

        A candidate is kept only if it is closer to the base vector than to
        every neighbor kept so far. Discarded candidates fill any slots left
        over, closest first. `candidates` must be sorted closest first.
        """
        if len(candidates) <= limit:
            return [vid for _, _, vid in candidates]

        ids = [vid for _, _, vid in candidates]
        mat = self._matrix(ids)
        between = pairwise(self.metric, mat, mat)

        selected: list[int] = []
        discarded: list[int] = []
        for i, (dist, _, _) in enumerate(candidates):
            if len(selected) >= limit:
                break
            if selected and bool((between[i, selected] < dist).any()):
                discarded.append(i)
            else:
                selected.append(i)

        for i in discarded:
            if len(selected) >= limit:
                break
            selected.append(i)

        return [ids[i] for i in selected]

    def _set_neighbors(self, vector_id: int, layer: int, neighbors: list[int]) -> None:
        node = self._get_node(vector_id)
        old = set(node.neighbors[layer])
        new = set(neighbors)
        for removed in old - new:
            incoming = self._incoming.get(removed)
            if incoming is not None:
                incoming[layer].discard(vector_id)
        for added in new - old:
            incoming = self._incoming.get(added)
            if incoming is None or layer >= len(incoming):
                raise IndexCorrupted(f"Cannot link {vector_id} to {added} at layer {layer}")
            incoming[layer].add(vector_id)
        node.neighbors[layer] = list(neighbors)

    def _add_edge(self, src: int, dst: int, layer: int) -> None:
        """Add src -> dst, pruning src's list if it grows past the layer cap."""
        nbrs = self._layer_neighbors(src, layer)
        if dst in nbrs:
            return
        grown = nbrs + [dst]
        cap = self._cap(layer)
        if len(grown) <= cap:
            self._set_neighbors(src, layer, grown)
            return

        src_vec = self._vector(src)
        dists = distances(self.metric, src_vec, self._matrix(grown))
        ranked = sorted(
            (float(d), self._get_node(vid).seq, vid) for d, vid in zip(dists, grown)
        )
        self._set_neighbors(src, layer, self._select_neighbors(src_vec, ranked, cap))

    def _relink(self, vector_id: int, layer: int, hints: list[int]) -> None:
        """Search replacement neighbors for a node that lost edges on one layer."""
        node = self._get_node(vector_id)
        seeds: list[int] = []
        for vid in node.neighbors[layer] + hints:
            other = self._nodes.get(vid)
            if vid != vector_id and other is not None and other.level >= layer and vid not in seeds:
                seeds.append(vid)
        if not seeds:
            if self._entry_point is None or self._entry_point == vector_id:
                return
            seeds = [self._entry_point]

        q_vec = self._vector(vector_id)
        candidates = self._search_layer(q_vec, seeds, self.params.ef_construction, layer)
        candidates = [c for c in candidates if c[2] != vector_id]
        neighbors = self._select_neighbors(q_vec, candidates, self._cap(layer))

        self._set_neighbors(vector_id, layer, neighbors)
        for nbr in neighbors:
            self._add_edge(nbr, vector_id, layer)

    def _detach(self, vector_id: int) -> None:
        """Drop a node, its edges in both directions and its vector."""
        node = self._nodes.pop(vector_id, None)
        incoming = self._incoming.pop(vector_id, None)
        if node is not None:
            for layer, nbrs in enumerate(node.neighbors):
                for nbr in nbrs:
                    nbr_incoming = self._incoming.get(nbr)
                    if nbr_incoming is not None and layer < len(nbr_incoming):
                        nbr_incoming[layer].discard(vector_id)
        if incoming is not None:
            for layer, srcs in enumerate(incoming):
                for src in srcs:
                    src_node = self._nodes.get(src)
                    if src_node is not None and vector_id in src_node.neighbors[layer]:
                        src_node.neighbors[layer].remove(vector_id)
        slot = self._slots.pop(vector_id, None)
        if slot is not None:
            self._free_slots.append(slot)

    def _promote_entry_point(self) -> None:
        if not self._nodes:
            self._entry_point = None
            self._max_layer = 0
            return
        best = min(self._nodes.values(), key=lambda n: (-n.level, n.seq))
        self._entry_point = best.id
        self._max_layer = best.level
