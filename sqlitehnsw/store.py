"""
VectorStore - persistent HNSW vector index backed by SQLite.

Keeps the vector records, the in-memory HNSW graph and the serialized graph
snapshot consistent with each other:

- upsert_vector() and upsert_many() write the records, then insert into the
  graph; a failed graph insert rolls the whole batch back.
- delete_vector(), delete_many() and delete_where() remove the graph nodes,
  then the records; reconcile() cleans up records left behind by a failed
  second step.
- save() writes the graph snapshot. On open the snapshot is decoded, records
  written after it are replayed, and a corrupted or incompatible snapshot is
  replaced by a rebuild from the records.
"""

import logging
import pickle
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import numpy as np

from sqlitehnsw import serializer
from sqlitehnsw.config import IndexConfig
from sqlitehnsw.distance import to_score
from sqlitehnsw.errors import (
    DimensionMismatch,
    IndexCorrupted,
    OpenCancelled,
    OperationCancelled,
    SnapshotCorrupted,
    StorageAlreadyOpen,
    StorageUnavailable,
    StoreClosed,
)
from sqlitehnsw.graph import HNSWGraph, IndexState
from sqlitehnsw.locks import ReadWriteLock
from sqlitehnsw.records import VectorRecord, VectorRecordStore

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "hnsw_snapshot"
DIMENSION_KEY = "dimension"

# Open checks the cancel signal every this many replayed records
_CANCEL_CHECK_EVERY = 1000

# Filtered queries search this many times k candidates
FILTER_OVERFETCH = 10


@dataclass(frozen=True)
class QueryResult:
    id: int
    document_id: str
    distance: float
    score: float
    metadata: Optional[dict] = None


@dataclass(frozen=True)
class ReconcileReport:
    orphaned_records: int = 0
    dangling_nodes: int = 0

    @property
    def total(self) -> int:
        return self.orphaned_records + self.dangling_nodes


@dataclass(frozen=True)
class StoreStats:
    records: int
    nodes: int
    layers: int
    dimension: int
    distance_metric: str
    snapshot_bytes: int
    recovered: bool


@contextmanager
def _storage_errors(action: str):
    """Surface SQLite failures as StorageUnavailable."""
    try:
        yield
    except sqlite3.Error as exc:
        raise StorageUnavailable(f"Failed to {action}: {exc}") from exc


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OpenCancelled("Opening the vector store was cancelled")


class VectorStore:
    """
    A persistent approximate nearest neighbor index over document vectors.

    API:
    - VectorStore.open(config, cancel=None) / VectorStore(config)
    - upsert_vector(document_id, vector, metadata=None) -> vector id
    - upsert_many(items) -> list of vector ids
    - delete_vector(vector_id), delete_document(document_id)
    - delete_many(vector_ids), delete_where(filter_dict) -> deleted count
    - query(vector, k=10, ef=None, threshold=None, filter_dict=None) -> list[QueryResult]
    - save(), close(cancel=None), reconcile(), rebuild(), clear()

    Example:
        >>> config = IndexConfig(dimension=3, db_path=":memory:")
        >>> with VectorStore.open(config) as store:
        ...     vid = store.upsert_vector("doc-a", [1.0, 0.0, 0.0])
        ...     [r.document_id for r in store.query([1.0, 0.0, 0.0], k=1)]
        ['doc-a']
    """

    def __init__(self, config: IndexConfig, cancel: Optional[threading.Event] = None):
        self.config = config
        self.recovered = False

        self._lock = ReadWriteLock()
        self._conn_lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._graph: Optional[HNSWGraph] = None
        self._records = VectorRecordStore(config.dimension)
        self._mutations_since_save = 0

        self._open(cancel)

    @classmethod
    def open(cls, config: IndexConfig, cancel: Optional[threading.Event] = None) -> "VectorStore":
        """Open (or create) the store described by `config`."""
        return cls(config, cancel=cancel)

    # --- Lifecycle ---

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.config.db_path,
                timeout=0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Cannot open {self.config.db_path}: {exc}") from exc

        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA locking_mode=EXCLUSIVE")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA cache_size=-64000")
            # Takes the file lock, held until the connection closes
            conn.execute("BEGIN EXCLUSIVE")
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            conn.close()
            if "locked" in str(exc):
                raise StorageAlreadyOpen(
                    f"{self.config.db_path} is already open in another VectorStore",
                    hint="Close the other instance first.",
                ) from exc
            raise StorageUnavailable(f"Cannot open {self.config.db_path}: {exc}") from exc
        return conn

    def _open(self, cancel: Optional[threading.Event]) -> None:
        _check_cancel(cancel)
        self._conn = self._connect()
        try:
            with self._transaction() as cursor:
                self._records.init_tables(cursor)
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS metadata (
                        key TEXT PRIMARY KEY,
                        value BLOB
                    )
                """)
                self._check_dimension(cursor)
            _check_cancel(cancel)
            self._graph = self._load_graph(cancel)
            _check_cancel(cancel)
        except BaseException:
            conn, self._conn = self._conn, None
            self._graph = None
            conn.close()
            raise

        logger.info(
            "Opened %s: %d vectors, %d layers",
            self.config.db_path, len(self._graph), self._graph.layer_count,
        )

    def close(self, cancel: Optional[threading.Event] = None) -> None:
        """
        Save the snapshot (if auto_save_on_close) and release the database.

        The connection is released even when the save fails or is cancelled.
        A cancelled save raises OperationCancelled after the release.
        """
        if self._conn is None:
            return

        cancelled = False
        try:
            if self.config.auto_save_on_close:
                if cancel is not None and cancel.is_set():
                    cancelled = True
                    logger.warning("Close of %s cancelled before saving the snapshot",
                                   self.config.db_path)
                else:
                    self.save()
        finally:
            with self._lock.write_lock():
                conn, self._conn = self._conn, None
                self._graph = None
                if conn is not None:
                    with self._conn_lock:
                        conn.close()

        if cancelled:
            raise OperationCancelled("Snapshot save was cancelled; storage was released")

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def __enter__(self) -> "VectorStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # --- Mutations ---

    def upsert_vector(self, document_id: str, vector, metadata: Optional[dict] = None) -> int:
        """
        Store the vector of a document and index it. Returns the vector id.

        A document has one vector; upserting it again overwrites the record,
        metadata included, and keeps the id.
        """
        return self.upsert_many([(document_id, vector, metadata)])[0]

    def upsert_many(self, items: Iterable[tuple]) -> list[int]:
        """
        Upsert (document_id, vector) or (document_id, vector, metadata) items
        in one transaction. Either every item is stored or none is.
        """
        batch = [self._as_item(item) for item in items]
        if not batch:
            return []

        with self._lock.write_lock():
            self._ensure_open()
            # (vector id, previous record, level of the previous node)
            applied: list[tuple[int, Optional[VectorRecord], Optional[int]]] = []
            vector_ids = []
            try:
                with self._transaction() as cursor:
                    for document_id, vec, metadata in batch:
                        previous = self._records.get_by_document(cursor, document_id)
                        vector_id = self._records.put(cursor, document_id, vec, metadata)
                        node = self._graph.node(vector_id)
                        applied.append((vector_id, previous, node.level if node else None))
                        self._graph.insert(vector_id, vec)
                        vector_ids.append(vector_id)
            except BaseException as exc:
                if applied:
                    self._restore_graph(applied, exc)
                raise

            logger.debug("Upserted %d vectors", len(vector_ids))
            self._after_mutation(len(batch))
            return vector_ids

    def delete_vector(self, vector_id: int) -> bool:
        """Delete a vector by id. Returns False if it did not exist."""
        return self.delete_many([vector_id]) > 0

    def delete_many(self, vector_ids: Iterable[int]) -> int:
        """Delete vectors by id. Returns how many existed."""
        vector_ids = list(dict.fromkeys(vector_ids))
        if not vector_ids:
            return 0
        with self._lock.write_lock():
            self._ensure_open()
            return self._delete_locked(vector_ids)

    def delete_document(self, document_id: str) -> bool:
        """Delete the vector stored for a document. Returns False if there is none."""
        with self._lock.write_lock():
            self._ensure_open()
            with self._conn_lock, _storage_errors("look up a document"):
                vector_id = self._records.id_for_document(self._conn.cursor(), document_id)
            if vector_id is None:
                return False
            return self._delete_locked([vector_id]) > 0

    def delete_where(self, filter_dict: dict[str, Any]) -> int:
        """Delete every vector whose metadata matches the filter. Returns the count."""
        with self._lock.write_lock():
            self._ensure_open()
            with self._conn_lock, _storage_errors("match vector records"):
                vector_ids = self._records.match_ids(self._conn.cursor(), filter_dict)
            if not vector_ids:
                return 0
            return self._delete_locked(vector_ids)

    def _delete_locked(self, vector_ids: list[int]) -> int:
        # Graph first: a failed record delete leaves orphans for reconcile()
        removed = {vid for vid in vector_ids if self._delete_node(vid)}

        with self._transaction() as cursor:
            for vector_id in vector_ids:
                if self._records.delete(cursor, vector_id):
                    removed.add(vector_id)

        if removed:
            logger.debug("Deleted %d vectors", len(removed))
            self._after_mutation(len(removed))
        return len(removed)

    def _delete_node(self, vector_id: int) -> bool:
        try:
            return self._graph.delete(vector_id)
        except IndexCorrupted as exc:
            logger.warning("Graph corrupted while deleting %d (%s); rebuilding from records",
                           vector_id, exc)
            self._graph = self._replay()
            self.recovered = True
            return self._graph.delete(vector_id)

    def clear(self) -> None:
        """Remove every record, the snapshot and the whole graph."""
        with self._lock.write_lock():
            self._ensure_open()
            with self._transaction() as cursor:
                self._records.clear(cursor)
                cursor.execute("DELETE FROM metadata WHERE key = ?", (SNAPSHOT_KEY,))
            self._graph.clear()
            self._mutations_since_save = 0
            logger.info("Cleared %s", self.config.db_path)

    def save(self) -> int:
        """Persist the graph snapshot, replacing the previous one. Returns its size."""
        with self._lock.write_lock():
            self._ensure_open()
            return self._save_locked()

    def _save_locked(self) -> int:
        state = self._graph.export_state()
        snapshot = serializer.encode(state)
        with self._conn_lock, _storage_errors("write the snapshot"):
            self._conn.execute(
                "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                (SNAPSHOT_KEY, snapshot),
            )
        self._mutations_since_save = 0
        logger.info("Saved snapshot of %d nodes (%d bytes)", len(state.nodes), len(snapshot))
        return len(snapshot)

    def _after_mutation(self, count: int = 1) -> None:
        self._mutations_since_save += count
        every = self.config.autosave_every
        if every and self._mutations_since_save >= every:
            try:
                self._save_locked()
            except StorageUnavailable as exc:
                # The mutation itself is durable; the next one retries the save
                logger.warning("Autosave of %s failed: %s", self.config.db_path, exc)

    # --- Queries ---

    def query(
        self,
        vector,
        k: int = 10,
        ef: Optional[int] = None,
        threshold: Optional[float] = None,
        filter_dict: Optional[dict[str, Any]] = None,
    ) -> list[QueryResult]:
        """
        Approximate k nearest documents, closest first.

        `ef` widens the layer-0 beam for this query only. `threshold` drops
        results whose similarity score is below it. `filter_dict` keeps only
        documents whose metadata matches it (see sqlitehnsw.records); the
        graph is searched for FILTER_OVERFETCH * k candidates in that case.
        """
        if k < 1:
            raise ValueError(f"k must be >= 1, got {k}")
        vec = self._as_vector(vector)
        search_k = k * FILTER_OVERFETCH if filter_dict else k

        with self._lock.read_lock():
            self._ensure_open()
            hits = self._graph.query(vec, search_k, ef)
            if not hits:
                return []
            with self._conn_lock, _storage_errors("resolve document ids"):
                resolved = self._records.resolve(
                    self._conn.cursor(), [vid for vid, _ in hits], filter_dict
                )
            metric = self._graph.metric

        results = []
        for vector_id, dist in hits:
            if vector_id not in resolved:
                continue
            score = to_score(dist, metric)
            if threshold is not None and score < threshold:
                continue
            document_id, metadata = resolved[vector_id]
            results.append(QueryResult(
                id=vector_id, document_id=document_id, distance=dist, score=score,
                metadata=metadata,
            ))
            if len(results) == k:
                break
        return results

    def get(self, vector_id: int) -> Optional[VectorRecord]:
        with self._lock.read_lock():
            self._ensure_open()
            with self._conn_lock, _storage_errors(f"read vector record {vector_id}"):
                return self._records.get(self._conn.cursor(), vector_id)

    def get_document(self, document_id: str) -> Optional[VectorRecord]:
        with self._lock.read_lock():
            self._ensure_open()
            with self._conn_lock, _storage_errors("read a vector record"):
                return self._records.get_by_document(self._conn.cursor(), document_id)

    def count(self) -> int:
        """Number of stored vector records."""
        with self._lock.read_lock():
            self._ensure_open()
            with self._conn_lock, _storage_errors("count vector records"):
                return self._records.count(self._conn.cursor())

    def __len__(self) -> int:
        return self.count()

    def stats(self) -> StoreStats:
        with self._lock.read_lock():
            self._ensure_open()
            with self._conn_lock, _storage_errors("read store statistics"):
                cursor = self._conn.cursor()
                records = self._records.count(cursor)
                cursor.execute(
                    "SELECT length(value) AS size FROM metadata WHERE key = ?", (SNAPSHOT_KEY,)
                )
                row = cursor.fetchone()
            return StoreStats(
                records=records,
                nodes=len(self._graph),
                layers=self._graph.layer_count,
                dimension=self.config.dimension,
                distance_metric=self._graph.metric.value,
                snapshot_bytes=row["size"] if row else 0,
                recovered=self.recovered,
            )

    # --- Maintenance ---

    def reconcile(self) -> ReconcileReport:
        """Remove records without a graph node and graph nodes without a record."""
        with self._lock.write_lock():
            self._ensure_open()
            with self._conn_lock, _storage_errors("list vector records"):
                record_ids = set(self._records.ids(self._conn.cursor()))
            graph_ids = set(self._graph.ids())

            orphans = sorted(record_ids - graph_ids)
            dangling = sorted(graph_ids - record_ids)

            for vector_id in dangling:
                self._graph.delete(vector_id)
            if orphans:
                with self._transaction() as cursor:
                    for vector_id in orphans:
                        self._records.delete(cursor, vector_id)

            report = ReconcileReport(orphaned_records=len(orphans), dangling_nodes=len(dangling))
            if report.total:
                logger.warning(
                    "Reconciled %s: removed %d orphaned records and %d dangling nodes",
                    self.config.db_path, report.orphaned_records, report.dangling_nodes,
                )
            return report

    def rebuild(self) -> int:
        """Rebuild the graph from the vector records. Returns the node count."""
        with self._lock.write_lock():
            self._ensure_open()
            self._graph = self._replay()
            return len(self._graph)

    # --- Internal helpers ---

    def _ensure_open(self) -> None:
        if self._conn is None or self._graph is None:
            raise StoreClosed("The vector store is closed")

    def _as_vector(self, vector) -> np.ndarray:
        vec = np.asarray(vector, dtype=np.float32).ravel()
        if vec.shape[0] != self.config.dimension:
            raise DimensionMismatch(self.config.dimension, vec.shape[0])
        if not np.all(np.isfinite(vec)):
            raise ValueError("Vector contains NaN or infinite values")
        return vec

    def _as_item(self, item: tuple) -> tuple[str, np.ndarray, Optional[dict]]:
        if len(item) == 2:
            document_id, vector = item
            metadata = None
        elif len(item) == 3:
            document_id, vector, metadata = item
        else:
            raise ValueError(f"Expected (document_id, vector[, metadata]), got {len(item)} values")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValueError(f"metadata must be a dict, got {type(metadata).__name__}")
        return document_id, self._as_vector(vector), metadata

    @contextmanager
    def _transaction(self):
        """Run statements in one SQLite transaction, rolling back on any error."""
        with self._conn_lock:
            cursor = self._conn.cursor()
            with _storage_errors("begin a transaction"):
                cursor.execute("BEGIN")
            try:
                yield cursor
                cursor.execute("COMMIT")
            except BaseException as exc:
                self._rollback(cursor)
                if isinstance(exc, sqlite3.Error):
                    raise StorageUnavailable(f"Transaction failed: {exc}") from exc
                raise

    @staticmethod
    def _rollback(cursor: sqlite3.Cursor) -> None:
        try:
            cursor.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed")

    def _restore_graph(
        self,
        applied: list[tuple[int, Optional[VectorRecord], Optional[int]]],
        exc: BaseException,
    ) -> None:
        """Undo graph inserts whose record writes were rolled back, newest first."""
        if isinstance(exc, IndexCorrupted):
            logger.warning("Graph corrupted while upserting (%s); rebuilding from records", exc)
            self._graph = self._replay()
            self.recovered = True
            return
        for vector_id, previous, level in reversed(applied):
            self._graph.delete(vector_id)
            # Reinsert at the old level so no random level is drawn
            if previous is not None and level is not None:
                self._graph.insert(previous.id, previous.vector, level=level)

    def _read_meta(self, cursor: sqlite3.Cursor, key: str) -> Optional[bytes]:
        cursor.execute("SELECT value FROM metadata WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row["value"] if row else None

    def _check_dimension(self, cursor: sqlite3.Cursor) -> None:
        stored = self._read_meta(cursor, DIMENSION_KEY)
        if stored is None:
            cursor.execute(
                "INSERT INTO metadata (key, value) VALUES (?, ?)",
                (DIMENSION_KEY, pickle.dumps(self.config.dimension)),
            )
            return
        dimension = pickle.loads(stored)
        if dimension != self.config.dimension:
            raise DimensionMismatch(dimension, self.config.dimension)

    def _new_graph(self) -> HNSWGraph:
        return HNSWGraph(
            self.config.dimension,
            self.config.params,
            rng=np.random.default_rng(self.config.seed),
        )

    def _replay(self, cancel: Optional[threading.Event] = None) -> HNSWGraph:
        """Build a fresh graph by inserting every record in ascending id order."""
        graph = self._new_graph()
        with self._conn_lock, _storage_errors("read vector records"):
            cursor = self._conn.cursor()
            for i, record in enumerate(self._records.iter_records(cursor)):
                if i % _CANCEL_CHECK_EVERY == 0:
                    _check_cancel(cancel)
                graph.insert(record.id, record.vector)
        logger.info("Built HNSW graph from %d vector records", len(graph))
        return graph

    def _compatible(self, state: IndexState) -> bool:
        params = self.config.params
        return (
            state.dimension == self.config.dimension
            and state.params.m == params.m
            and state.params.ef_construction == params.ef_construction
            and state.params.distance_metric == params.distance_metric
        )

    def _load_graph(self, cancel: Optional[threading.Event]) -> HNSWGraph:
        path = self.config.db_path
        with self._conn_lock, _storage_errors("read the snapshot"):
            snapshot = self._read_meta(self._conn.cursor(), SNAPSHOT_KEY)

        if snapshot is None:
            logger.info("No snapshot in %s; building the graph from vector records", path)
            return self._replay(cancel)

        try:
            state = serializer.decode(snapshot)
        except SnapshotCorrupted as exc:
            logger.warning("Snapshot in %s is corrupted (%s); rebuilding from vector records",
                           path, exc)
            self.recovered = True
            return self._replay(cancel)

        if not self._compatible(state):
            logger.info("Snapshot in %s was built with %s; rebuilding with %s",
                        path, state.params, self.config.params)
            return self._replay(cancel)

        with self._conn_lock, _storage_errors("read vector records"):
            vectors = {
                record.id: record.vector
                for record in self._records.iter_records(self._conn.cursor())
            }
        _check_cancel(cancel)

        stale = [vid for vid in state.nodes if vid not in vectors]
        if stale:
            logger.info("Snapshot in %s references %d deleted records; rebuilding",
                        path, len(stale))
            return self._replay(cancel)

        try:
            graph = HNSWGraph.from_state(
                state, vectors, rng=np.random.default_rng(self.config.seed)
            )
            graph.params = self.config.params
            missing = sorted(set(vectors) - set(state.nodes))
            for vector_id in missing:
                graph.insert(vector_id, vectors[vector_id])
        except IndexCorrupted as exc:
            logger.warning("Snapshot in %s does not match the records (%s); rebuilding",
                           path, exc)
            self.recovered = True
            return self._replay(cancel)

        if missing:
            logger.info("Replayed %d records written after the snapshot", len(missing))
        return graph
