"""
VectorRecord store: durable id -> (document id, raw vector, metadata) mapping in SQLite.

The store only issues statements on the cursor it is given. Transactions
and error wrapping belong to the caller (VectorStore).

Metadata is a JSON object per record. Filters are dicts matched against it
with SQLite's JSON functions:

    {"category": "news"}                 equality
    {"category": None}                   field missing or null
    {"category": ["news", "blog"]}       one of the values
    {"price": [(">=", 10), ("<", 20)]}   range conditions, all must hold
"""

import json
import sqlite3
from dataclasses import dataclass
from typing import Any, Iterator, Optional

import numpy as np

from sqlitehnsw.errors import DimensionMismatch, StorageUnavailable

OPERATORS = {"=", "!=", "<", "<=", ">", ">="}

_COLUMNS = "id, document_id, dimension, vector, metadata"
_SCALARS = (str, int, float, bool)


@dataclass(frozen=True)
class VectorRecord:
    id: int
    document_id: str
    vector: np.ndarray
    metadata: Optional[dict] = None

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


def is_range_filter(value: Any) -> bool:
    """True for a list of (operator, value) pairs."""
    if not isinstance(value, (list, tuple)) or not value:
        return False
    return all(
        isinstance(cond, (list, tuple)) and len(cond) == 2 and cond[0] in OPERATORS
        for cond in value
    )


def _json_path(field: str) -> str:
    if not isinstance(field, str) or not field or '"' in field:
        raise ValueError(f"Invalid metadata field name: {field!r}")
    return f'$."{field}"'


def filter_conditions(filter_dict: dict[str, Any]) -> tuple[list[str], list]:
    """Translate a metadata filter into SQL conditions and their parameters."""
    conditions: list[str] = []
    params: list = []

    for field, value in filter_dict.items():
        path = _json_path(field)
        if value is None:
            conditions.append("json_extract(metadata, ?) IS NULL")
            params.append(path)
        elif is_range_filter(value):
            for op, op_value in value:
                if op_value is None:
                    continue
                if not isinstance(op_value, _SCALARS):
                    raise ValueError(f"Unsupported value for {field!r} {op}: {op_value!r}")
                conditions.append(f"json_extract(metadata, ?) {op} ?")
                params.extend((path, op_value))
        elif isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if not values:
                conditions.append("0")
                continue
            if not all(isinstance(v, _SCALARS) for v in values):
                raise ValueError(f"Unsupported values for {field!r}: {value!r}")
            placeholders = ",".join("?" * len(values))
            conditions.append(f"json_extract(metadata, ?) IN ({placeholders})")
            params.append(path)
            params.extend(values)
        elif isinstance(value, _SCALARS):
            conditions.append("json_extract(metadata, ?) = ?")
            params.extend((path, value))
        else:
            raise ValueError(f"Unsupported filter value for {field!r}: {value!r}")

    return conditions, params


class VectorRecordStore:
    """SQLite table of raw float32 vectors keyed by an autoincrement id."""

    def __init__(self, dimension: int):
        self.dimension = dimension

    def init_tables(self, cursor: sqlite3.Cursor) -> None:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS vectors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                document_id TEXT NOT NULL UNIQUE,
                dimension INTEGER NOT NULL,
                vector BLOB NOT NULL,
                metadata TEXT
            )
        """)

    def put(
        self,
        cursor: sqlite3.Cursor,
        document_id: str,
        vector: np.ndarray,
        metadata: Optional[dict] = None,
    ) -> int:
        """Insert or overwrite the record of a document. Returns its vector id."""
        vector = self._check(vector)
        metadata_json = json.dumps(metadata) if metadata is not None else None
        existing = self.id_for_document(cursor, document_id)
        if existing is None:
            cursor.execute(
                "INSERT INTO vectors (document_id, dimension, vector, metadata) "
                "VALUES (?, ?, ?, ?)",
                (document_id, self.dimension, vector.tobytes(), metadata_json),
            )
            return cursor.lastrowid
        cursor.execute(
            "UPDATE vectors SET dimension = ?, vector = ?, metadata = ? WHERE id = ?",
            (self.dimension, vector.tobytes(), metadata_json, existing),
        )
        return existing

    def get(self, cursor: sqlite3.Cursor, vector_id: int) -> Optional[VectorRecord]:
        cursor.execute(f"SELECT {_COLUMNS} FROM vectors WHERE id = ?", (vector_id,))
        row = cursor.fetchone()
        return self._to_record(row) if row else None

    def get_by_document(self, cursor: sqlite3.Cursor, document_id: str) -> Optional[VectorRecord]:
        cursor.execute(f"SELECT {_COLUMNS} FROM vectors WHERE document_id = ?", (document_id,))
        row = cursor.fetchone()
        return self._to_record(row) if row else None

    def id_for_document(self, cursor: sqlite3.Cursor, document_id: str) -> Optional[int]:
        cursor.execute("SELECT id FROM vectors WHERE document_id = ?", (document_id,))
        row = cursor.fetchone()
        return row["id"] if row else None

    def delete(self, cursor: sqlite3.Cursor, vector_id: int) -> bool:
        cursor.execute("DELETE FROM vectors WHERE id = ?", (vector_id,))
        return cursor.rowcount > 0

    def count(self, cursor: sqlite3.Cursor) -> int:
        cursor.execute("SELECT COUNT(*) AS count FROM vectors")
        return cursor.fetchone()["count"]

    def ids(self, cursor: sqlite3.Cursor) -> list[int]:
        cursor.execute("SELECT id FROM vectors ORDER BY id")
        return [row["id"] for row in cursor.fetchall()]

    def match_ids(self, cursor: sqlite3.Cursor, filter_dict: dict[str, Any]) -> list[int]:
        """Ids of every record whose metadata matches the filter, ascending."""
        conditions, params = filter_conditions(filter_dict)
        where_sql = " AND ".join(conditions) if conditions else "1"
        cursor.execute(f"SELECT id FROM vectors WHERE {where_sql} ORDER BY id", params)
        return [row["id"] for row in cursor.fetchall()]

    def iter_records(self, cursor: sqlite3.Cursor, batch_size: int = 1000) -> Iterator[VectorRecord]:
        """Yield every record in ascending id order."""
        cursor.execute(f"SELECT {_COLUMNS} FROM vectors ORDER BY id")
        while True:
            rows = cursor.fetchmany(batch_size)
            if not rows:
                break
            for row in rows:
                yield self._to_record(row)

    def resolve(
        self,
        cursor: sqlite3.Cursor,
        vector_ids: list[int],
        filter_dict: Optional[dict[str, Any]] = None,
    ) -> dict[int, tuple[str, Optional[dict]]]:
        """
        Map vector ids to (document id, metadata).

        Unknown ids, and ids whose metadata does not match `filter_dict`, are left out.
        """
        conditions, params = filter_conditions(filter_dict or {})
        where_sql = "".join(f" AND {cond}" for cond in conditions)
        rows = self._chunked_in_query(
            cursor,
            "SELECT id, document_id, metadata FROM vectors "
            "WHERE id IN ({placeholders})" + where_sql,
            list(vector_ids),
            params,
            chunk_size=max(1, 900 - len(params)),
        )
        return {
            row["id"]: (row["document_id"], self._load_metadata(row))
            for row in rows
        }

    def clear(self, cursor: sqlite3.Cursor) -> None:
        cursor.execute("DELETE FROM vectors")

    @staticmethod
    def _chunked_in_query(cursor, sql_template, ids_list, extra_params=None, chunk_size=900):
        if extra_params is None:
            extra_params = []
        all_rows = []
        for i in range(0, len(ids_list), chunk_size):
            chunk = ids_list[i : i + chunk_size]
            placeholders = ",".join("?" * len(chunk))
            sql = sql_template.format(placeholders=placeholders)
            cursor.execute(sql, chunk + extra_params)
            all_rows.extend(cursor.fetchall())
        return all_rows

    def _check(self, vector) -> np.ndarray:
        vector = np.asarray(vector, dtype=np.float32).ravel()
        if vector.shape[0] != self.dimension:
            raise DimensionMismatch(self.dimension, vector.shape[0])
        return vector

    @staticmethod
    def _load_metadata(row: sqlite3.Row) -> Optional[dict]:
        raw = row["metadata"]
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise StorageUnavailable(
                f"Metadata of vector record {row['id']} is not valid JSON: {exc}"
            ) from exc

    def _to_record(self, row: sqlite3.Row) -> VectorRecord:
        vector = np.frombuffer(row["vector"], dtype=np.float32).copy()
        if vector.shape[0] != row["dimension"] or row["dimension"] != self.dimension:
            raise StorageUnavailable(
                f"Vector record {row['id']} is unreadable: stored dimension "
                f"{row['dimension']}, {vector.shape[0]} values, index dimension {self.dimension}"
            )
        return VectorRecord(
            id=row["id"],
            document_id=row["document_id"],
            vector=vector,
            metadata=self._load_metadata(row),
        )
