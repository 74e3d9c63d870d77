"""
Error types raised by sqlitehnsw.

Every error carries a short machine-readable ``code`` and an optional
``hint`` telling the caller what to do about it.
"""

from typing import Optional


class SqliteHnswError(Exception):
    """Base class for all sqlitehnsw errors."""

    code = "SQLITEHNSW_ERROR"

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint

    def __str__(self) -> str:
        msg = f"[{self.code}] {super().__str__()}"
        if self.hint:
            msg += f" (hint: {self.hint})"
        return msg


class ConfigError(SqliteHnswError, ValueError):
    code = "CONFIG_ERROR"


class DimensionMismatch(SqliteHnswError, ValueError):
    """A vector does not have the dimension of the index."""

    code = "DIMENSION_MISMATCH"

    def __init__(self, expected: int, received: int):
        super().__init__(
            f"Vector dimension mismatch: expected {expected}, got {received}",
            hint=f"Ensure all vectors have {expected} dimensions and come "
                 f"from the same embedding model.",
        )
        self.expected = expected
        self.received = received


class IndexCorrupted(SqliteHnswError):
    """The in-memory graph violates one of its invariants."""

    code = "INDEX_CORRUPTED"


class SnapshotCorrupted(IndexCorrupted):
    """A persisted snapshot failed its consistency checks."""

    code = "SNAPSHOT_CORRUPTED"


class UnsupportedSnapshotVersion(SqliteHnswError):
    code = "UNSUPPORTED_SNAPSHOT_VERSION"

    def __init__(self, version: int, supported: int):
        super().__init__(
            f"Snapshot format version {version} is newer than the supported "
            f"version {supported}",
            hint="Upgrade sqlitehnsw or migrate the snapshot.",
        )
        self.version = version
        self.supported = supported


class StorageUnavailable(SqliteHnswError):
    """Durable storage I/O failed."""

    code = "STORAGE_UNAVAILABLE"


class StorageAlreadyOpen(StorageUnavailable):
    code = "STORAGE_ALREADY_OPEN"


class StoreClosed(SqliteHnswError):
    code = "STORE_CLOSED"


class OperationCancelled(SqliteHnswError):
    code = "OPERATION_CANCELLED"


class OpenCancelled(OperationCancelled):
    code = "OPEN_CANCELLED"
