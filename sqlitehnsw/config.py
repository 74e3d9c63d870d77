"""
Configuration recognized when opening a VectorStore.
"""

from dataclasses import dataclass
from typing import Optional, Union

from sqlitehnsw.distance import DistanceMetric
from sqlitehnsw.errors import ConfigError


@dataclass(frozen=True)
class HNSWParams:
    """Graph construction and search parameters."""

    m: int = 16
    ef_construction: int = 200
    ef_search: int = 50
    distance_metric: DistanceMetric = DistanceMetric.COSINE

    def __post_init__(self):
        try:
            metric = DistanceMetric(self.distance_metric)
        except ValueError:
            raise ConfigError(
                f"Unknown distance metric: {self.distance_metric!r}",
                hint="Use one of: " + ", ".join(m.value for m in DistanceMetric),
            ) from None
        object.__setattr__(self, "distance_metric", metric)

        if self.m < 2:
            raise ConfigError(f"m must be >= 2, got {self.m}")
        if self.ef_construction < 1:
            raise ConfigError(f"ef_construction must be >= 1, got {self.ef_construction}")
        if self.ef_search < 1:
            raise ConfigError(f"ef_search must be >= 1, got {self.ef_search}")

    @property
    def m_max0(self) -> int:
        """Max connections at layer 0."""
        return self.m * 2

    def to_dict(self) -> dict:
        return {
            "m": self.m,
            "ef_construction": self.ef_construction,
            "ef_search": self.ef_search,
            "distance_metric": self.distance_metric.value,
        }


@dataclass(frozen=True)
class IndexConfig:
    """
    Everything VectorStore.open() needs.

    - dimension: length of every vector stored in the index
    - db_path: SQLite database file, or ":memory:"
    - distance_metric: "cosine", "euclidean" or "dot"
    - m, ef_construction, ef_search: HNSW parameters
    - auto_save_on_close: write a snapshot when the store is closed
    - autosave_every: also write a snapshot after this many mutations (0 = never)
    - seed: seed for the layer sampler, for reproducible graphs
    """

    dimension: int
    db_path: str = "sqlitehnsw.db"
    distance_metric: Union[DistanceMetric, str] = DistanceMetric.COSINE
    m: int = 16
    ef_construction: int = 200
    ef_search: int = 50
    auto_save_on_close: bool = True
    autosave_every: int = 0
    seed: Optional[int] = None

    def __post_init__(self):
        if self.dimension is None or self.dimension < 1:
            raise ConfigError(f"dimension must be a positive integer, got {self.dimension}")
        if self.autosave_every < 0:
            raise ConfigError(f"autosave_every must be >= 0, got {self.autosave_every}")
        # Validates and normalizes the metric
        object.__setattr__(self, "distance_metric", self.params.distance_metric)

    @property
    def params(self) -> HNSWParams:
        return HNSWParams(
            m=self.m,
            ef_construction=self.ef_construction,
            ef_search=self.ef_search,
            distance_metric=self.distance_metric,
        )
