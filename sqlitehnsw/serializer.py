"""
Versioned binary snapshots of an HNSW graph state.

Layout:
    b"HNSW"                       magic
    >HI                           format version, header length
    header                        compact JSON, sorted keys
    body                          little-endian int64 stream

The body lists every node in ascending id order as
``id, seq, level`` followed by ``count, neighbor ids...`` for each layer
from 0 to ``level``. Neighbor lists keep their in-memory order, so encoding
an unchanged state always yields the same bytes.
"""

import json
import struct
import zlib

import numpy as np

from sqlitehnsw.config import HNSWParams
from sqlitehnsw.errors import ConfigError, SnapshotCorrupted, UnsupportedSnapshotVersion
from sqlitehnsw.graph import GraphNode, IndexState, validate_state

MAGIC = b"HNSW"
SNAPSHOT_VERSION = 1

_PREFIX = struct.Struct(">HI")
_BODY_DTYPE = np.dtype("<i8")


def encode(state: IndexState) -> bytes:
    """Serialize a graph state into a snapshot."""
    body = []
    for node_id in sorted(state.nodes):
        node = state.nodes[node_id]
        body.extend((node.id, node.seq, node.level))
        for neighbors in node.neighbors:
            body.append(len(neighbors))
            body.extend(neighbors)
    body_bytes = np.asarray(body, dtype=_BODY_DTYPE).tobytes()

    header = {
        "body_crc32": zlib.crc32(body_bytes),
        "dimension": state.dimension,
        "entry_point": state.entry_point,
        "max_layer": state.max_layer,
        "next_seq": state.next_seq,
        "node_count": len(state.nodes),
        "params": state.params.to_dict(),
    }
    header_bytes = json.dumps(header, sort_keys=True, separators=(",", ":")).encode("utf-8")

    return MAGIC + _PREFIX.pack(SNAPSHOT_VERSION, len(header_bytes)) + header_bytes + body_bytes


def read_version(snapshot: bytes) -> int:
    """Return the format version of a snapshot without decoding it."""
    if len(snapshot) < len(MAGIC) + _PREFIX.size or not snapshot.startswith(MAGIC):
        raise SnapshotCorrupted("Not an HNSW snapshot (bad magic or too short)")
    version, _ = _PREFIX.unpack_from(snapshot, len(MAGIC))
    return version


def decode(snapshot: bytes) -> IndexState:
    """Parse and validate a snapshot back into a graph state."""
    version = read_version(snapshot)
    if version > SNAPSHOT_VERSION:
        raise UnsupportedSnapshotVersion(version, SNAPSHOT_VERSION)
    if version < 1:
        raise SnapshotCorrupted(f"Invalid snapshot version {version}")

    offset = len(MAGIC) + _PREFIX.size
    _, header_len = _PREFIX.unpack_from(snapshot, len(MAGIC))
    header_bytes = snapshot[offset:offset + header_len]
    if len(header_bytes) != header_len:
        raise SnapshotCorrupted("Snapshot header is truncated")

    try:
        header = json.loads(header_bytes.decode("utf-8"))
        params = HNSWParams(**header["params"])
        dimension = int(header["dimension"])
        entry_point = header["entry_point"]
        max_layer = int(header["max_layer"])
        next_seq = int(header["next_seq"])
        node_count = int(header["node_count"])
        body_crc = int(header["body_crc32"])
    except (ValueError, KeyError, TypeError, ConfigError) as exc:
        raise SnapshotCorrupted(f"Snapshot header is unreadable: {exc}") from exc

    body_bytes = snapshot[offset + header_len:]
    if zlib.crc32(body_bytes) != body_crc:
        raise SnapshotCorrupted("Snapshot body checksum mismatch")
    if len(body_bytes) % _BODY_DTYPE.itemsize:
        raise SnapshotCorrupted("Snapshot body is not a whole number of int64 values")

    body = np.frombuffer(body_bytes, dtype=_BODY_DTYPE).tolist()
    nodes = _decode_nodes(body, node_count)

    state = IndexState(
        dimension=dimension,
        params=params,
        entry_point=entry_point,
        max_layer=max_layer,
        next_seq=next_seq,
        nodes=nodes,
    )
    validate_state(state, SnapshotCorrupted)
    return state


def _decode_nodes(body: list[int], node_count: int) -> dict[int, GraphNode]:
    nodes: dict[int, GraphNode] = {}
    pos = 0
    previous_id = None

    def take(n: int) -> list[int]:
        nonlocal pos
        if n < 0 or pos + n > len(body):
            raise SnapshotCorrupted("Snapshot body is truncated")
        chunk = body[pos:pos + n]
        pos += n
        return chunk

    for _ in range(node_count):
        node_id, seq, level = take(3)
        if previous_id is not None and node_id <= previous_id:
            raise SnapshotCorrupted(f"Node ids are not strictly ascending at {node_id}")
        if level < 0:
            raise SnapshotCorrupted(f"Node {node_id} has negative level {level}")
        neighbors = []
        for _ in range(level + 1):
            (count,) = take(1)
            neighbors.append(take(count))
        nodes[node_id] = GraphNode(id=node_id, level=level, seq=seq, neighbors=neighbors)
        previous_id = node_id

    if pos != len(body):
        raise SnapshotCorrupted(f"Snapshot body has {len(body) - pos} trailing values")
    return nodes
