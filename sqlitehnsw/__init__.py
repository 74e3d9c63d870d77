"""
sqlitehnsw - A tiny, SQLite-backed persistent HNSW vector index for local projects.

sqlitehnsw keeps document vectors in SQLite and searches them with an
in-memory HNSW graph whose snapshot is stored next to the vectors, so an
index survives restarts without rebuilding.
"""

from sqlitehnsw.__version__ import __version__
from sqlitehnsw.config import HNSWParams, IndexConfig
from sqlitehnsw.distance import DistanceMetric
from sqlitehnsw.errors import (
    ConfigError,
    DimensionMismatch,
    IndexCorrupted,
    OpenCancelled,
    OperationCancelled,
    SnapshotCorrupted,
    SqliteHnswError,
    StorageAlreadyOpen,
    StorageUnavailable,
    StoreClosed,
    UnsupportedSnapshotVersion,
)
from sqlitehnsw.graph import GraphNode, HNSWGraph, IndexState
from sqlitehnsw.records import VectorRecord
from sqlitehnsw.store import QueryResult, ReconcileReport, StoreStats, VectorStore

__all__ = [
    "VectorStore",
    "IndexConfig",
    "HNSWParams",
    "HNSWGraph",
    "GraphNode",
    "IndexState",
    "VectorRecord",
    "QueryResult",
    "ReconcileReport",
    "StoreStats",
    "DistanceMetric",
    "SqliteHnswError",
    "ConfigError",
    "DimensionMismatch",
    "IndexCorrupted",
    "SnapshotCorrupted",
    "UnsupportedSnapshotVersion",
    "StorageUnavailable",
    "StorageAlreadyOpen",
    "StoreClosed",
    "OperationCancelled",
    "OpenCancelled",
    "__version__",
]
