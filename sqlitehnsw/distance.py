"""
Distance metrics used by the HNSW graph.

All metrics are expressed as distances (lower is closer). Cosine vectors
are normalized once when they enter the graph so that cosine distance is a
single matrix-vector product.
"""

from enum import Enum

import numpy as np

# Cosine distances below this are treated as an exact match
COSINE_ZERO_EPS = 1e-6


class DistanceMetric(str, Enum):
    COSINE = "cosine"
    EUCLIDEAN = "euclidean"
    DOT = "dot"


def normalize(vectors: np.ndarray) -> np.ndarray:
    """Scale vectors (1D or 2D) to unit length, leaving zero vectors as is."""
    if vectors.ndim == 1:
        norm = np.linalg.norm(vectors)
        return vectors if norm == 0 else vectors / norm
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1.0, norms)
    return vectors / norms


def prepare(vectors: np.ndarray, metric: DistanceMetric) -> np.ndarray:
    """Convert raw vectors into the form stored in the graph."""
    vectors = np.asarray(vectors, dtype=np.float32)
    if metric == DistanceMetric.COSINE:
        return normalize(vectors).astype(np.float32, copy=False)
    return vectors


def _cosine(similarity: np.ndarray) -> np.ndarray:
    dist = 1.0 - similarity
    # float32 rounding leaves identical unit vectors a few ulps apart
    return np.where(dist < COSINE_ZERO_EPS, 0.0, dist).astype(np.float32, copy=False)


def distances(metric: DistanceMetric, query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Distances from a prepared query to each row of a prepared matrix."""
    if metric == DistanceMetric.COSINE:
        return _cosine(matrix @ query)
    if metric == DistanceMetric.EUCLIDEAN:
        diff = matrix - query
        return np.sqrt(np.einsum("ij,ij->i", diff, diff))
    return -(matrix @ query)


def pairwise(metric: DistanceMetric, a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Distance matrix between the rows of a and the rows of b."""
    if metric == DistanceMetric.COSINE:
        return _cosine(a @ b.T)
    if metric == DistanceMetric.EUCLIDEAN:
        sq = (
            np.einsum("ij,ij->i", a, a)[:, None]
            + np.einsum("ij,ij->i", b, b)[None, :]
            - 2.0 * (a @ b.T)
        )
        return np.sqrt(np.maximum(sq, 0.0))
    return -(a @ b.T)


def to_score(value: float, metric: DistanceMetric) -> float:
    """Convert a distance into a similarity score (higher is closer)."""
    if metric == DistanceMetric.COSINE:
        return 1.0 - value
    if metric == DistanceMetric.EUCLIDEAN:
        return 1.0 / (1.0 + value)
    return -value
