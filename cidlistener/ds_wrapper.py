"""Persistence of CID timestamps, timestamp snapshots and chunks in a datastore."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import struct
import time
from typing import Callable, Iterable

from cidlistener.chunker import CidsChunk, context_id_to_str
from cidlistener.cid_queue import CidNode
from cidlistener.cids import Cid, parse_cid
from cidlistener.datastore import (
    MapDatastore,
    NamespacedDatastore,
    NotFoundError,
    Query,
    normalize_key,
)
from cidlistener.options import DEFAULT_PAGE_SIZE, DEFAULT_SNAPSHOT_MAX_CHUNK_SIZE

log = logging.getLogger("cidlistener.datastore")

CHUNK_BY_CONTEXT_ID_PREFIX = "ccid/"
TIMESTAMP_BY_CID_PREFIX = "tc/"
TIMESTAMPS_SNAPSHOT_PREFIX = "ts"


def int64_to_bytes(value: int) -> bytes:
    """Encode a signed 64-bit integer as 8 little-endian bytes."""
    return struct.pack("<q", value)


def bytes_to_int64(data: bytes) -> int:
    """Decode the first 8 little-endian bytes as a signed 64-bit integer."""
    if len(data) < 8:
        raise ValueError(f"need 8 bytes for an int64, got {len(data)}")
    return struct.unpack("<q", bytes(data[:8]))[0]


def serialise_chunk(chunk: CidsChunk) -> bytes:
    record = {
        "context_id": base64.b64encode(chunk.context_id).decode("ascii"),
        "cids": sorted(str(c) for c in chunk.cids),
        "removed": chunk.removed,
    }
    return json.dumps(record).encode("utf-8")


def deserialise_chunk(data: bytes) -> CidsChunk:
    """Decode a stored chunk; raises ValueError when the data is malformed."""
    try:
        record = json.loads(data)
        context_id = base64.b64decode(record["context_id"], validate=True)
        cids = {parse_cid(text) for text in record["cids"]}
        removed = bool(record.get("removed", False))
    except (KeyError, TypeError, AttributeError, binascii.Error, UnicodeDecodeError) as exc:
        raise ValueError(f"malformed chunk record: {exc}") from exc
    return CidsChunk(context_id=context_id, cids=cids, removed=removed)


def encode_snapshot(nodes: Iterable[CidNode]) -> bytes:
    records = [{"cid": str(n.cid), "timestamp": n.timestamp} for n in nodes]
    return json.dumps(records).encode("utf-8")


def parse_snapshot(data: bytes) -> list[CidNode]:
    """Decode a stored snapshot; raises ValueError when the data is malformed."""
    try:
        records = json.loads(data)
        if not isinstance(records, list):
            raise TypeError("snapshot is not a list")
        return [
            CidNode(cid=parse_cid(r["cid"]), timestamp=float(r["timestamp"]))
            for r in records
        ]
    except (KeyError, TypeError, UnicodeDecodeError) as exc:
        raise ValueError(f"malformed snapshot: {exc}") from exc


def _timestamp_by_cid_key(cid: Cid) -> str:
    return normalize_key(TIMESTAMP_BY_CID_PREFIX + str(cid))


def _chunk_key(context_id: bytes) -> str:
    return normalize_key(CHUNK_BY_CONTEXT_ID_PREFIX + context_id_to_str(context_id))


class DatastoreWrapper:
    """All datastore access of the listener.

    snapshot_chunk_max_size: most CIDs stored in one snapshot record.
    page_size: most chunks read per query while initialising.
    """

    def __init__(
        self,
        ds: MapDatastore | NamespacedDatastore,
        snapshot_chunk_max_size: int = DEFAULT_SNAPSHOT_MAX_CHUNK_SIZE,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        if snapshot_chunk_max_size < 1:
            raise ValueError("snapshot_chunk_max_size must be at least 1")
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.ds = ds
        self.snapshot_chunk_max_size = snapshot_chunk_max_size
        self.page_size = page_size

    def initialise(
        self,
        cid_importer: Callable[[CidNode], None],
        chunk_importer: Callable[[CidsChunk], None],
    ) -> None:
        """Feed stored CID nodes (oldest first) and then stored chunks to the importers."""
        self._initialise_cid_timestamps(cid_importer)
        self._initialise_chunks(chunk_importer)

    def _initialise_chunks(self, chunk_importer: Callable[[CidsChunk], None]) -> None:
        offset = 0
        total_cids = 0
        start = time.monotonic()
        while True:
            page = offset // self.page_size
            log.info(
                "Reading chunk page %d from the datastore. totalChunks=%d, totalCids=%d",
                page, page * self.page_size, total_cids,
            )
            results = self.ds.query(
                Query(prefix=CHUNK_BY_CONTEXT_ID_PREFIX, offset=offset, limit=self.page_size)
            )
            if not results:
                break
            for entry in results:
                try:
                    chunk = deserialise_chunk(entry.value or b"")
                except ValueError as exc:
                    raise ValueError(
                        f"error deserialising record from the datastore: {exc}"
                    ) from exc
                # removed chunks are only found in data written by older versions
                if chunk.removed:
                    continue
                total_cids += len(chunk.cids)
                chunk_importer(chunk)
            offset += self.page_size
        log.info("Loaded up all chunks from the datastore in %.3fs", time.monotonic() - start)

    def _initialise_cid_timestamps(self, cid_importer: Callable[[CidNode], None]) -> None:
        start = time.monotonic()
        nodes = self.read_snapshot()
        strip = len(TIMESTAMP_BY_CID_PREFIX) + 1
        for entry in self.ds.query(Query(prefix=TIMESTAMP_BY_CID_PREFIX)):
            millis = bytes_to_int64(entry.value or b"")
            try:
                cid = parse_cid(entry.key[strip:])
            except ValueError as exc:
                raise ValueError(f"error parsing cid datastore record: {exc}") from exc
            nodes.append(CidNode(cid=cid, timestamp=millis / 1000))
        nodes.sort(key=lambda node: node.timestamp)
        for node in nodes:
            cid_importer(node)
        log.info("Loaded up all CIDs from the datastore in %.3fs", time.monotonic() - start)

    def read_snapshot(self) -> list[CidNode]:
        """Return the nodes of every stored snapshot record."""
        nodes: list[CidNode] = []
        for key in self.snapshot_chunk_keys():
            try:
                data = self.ds.get(key)
            except NotFoundError:
                continue
            if not data:
                continue
            try:
                nodes.extend(parse_snapshot(data))
            except ValueError as exc:
                raise ValueError(f"error parsing timestamps snapshot: {exc}") from exc
        return nodes

    def snapshot_chunk_keys(self) -> list[str]:
        """Keys of the snapshot records, including a single-record legacy snapshot."""
        keys = [e.key for e in self.ds.query(Query(prefix=TIMESTAMPS_SNAPSHOT_PREFIX, keys_only=True))]
        legacy = normalize_key(TIMESTAMPS_SNAPSHOT_PREFIX)
        if legacy not in keys and self.ds.has(legacy):
            keys.append(legacy)
        return keys

    def record_timestamps_snapshot(self, nodes: Iterable[CidNode]) -> None:
        """Store all nodes as snapshot records, replacing older records and per-CID timestamps."""
        stale = set(self.snapshot_chunk_keys())
        nodes = list(nodes)
        size = self.snapshot_chunk_max_size
        for count, start in enumerate(range(0, len(nodes), size)):
            key = normalize_key(f"{TIMESTAMPS_SNAPSHOT_PREFIX}/{count}")
            stale.discard(key)
            self.ds.put(key, encode_snapshot(nodes[start:start + size]))

        for key in stale:
            self.ds.delete(key)

        for entry in self.ds.query(Query(prefix=TIMESTAMP_BY_CID_PREFIX, keys_only=True)):
            try:
                self.ds.delete(entry.key)
            except Exception as exc:  # keep cleaning the rest
                log.warning(
                    "Error cleaning up timestamp by cid index from datastore: %s. Continuing.", exc
                )

    def record_cid_timestamp(self, cid: Cid, timestamp: float) -> None:
        """Store a CID's timestamp (Unix seconds) with millisecond precision."""
        self.ds.put(_timestamp_by_cid_key(cid), int64_to_bytes(int(timestamp * 1000)))

    def get_cid_timestamp(self, cid: Cid) -> float:
        """Return the stored timestamp of a CID; raises NotFoundError when absent."""
        return bytes_to_int64(self.ds.get(_timestamp_by_cid_key(cid))) / 1000

    def has_cid_timestamp(self, cid: Cid) -> bool:
        return self.ds.has(_timestamp_by_cid_key(cid))

    def record_chunk(self, chunk: CidsChunk) -> None:
        self.ds.put(_chunk_key(chunk.context_id), serialise_chunk(chunk))

    def delete_chunk(self, chunk: CidsChunk) -> None:
        self.ds.delete(_chunk_key(chunk.context_id))

    def get_chunk(self, context_id: bytes) -> CidsChunk:
        """Return the stored chunk; raises NotFoundError when absent."""
        return deserialise_chunk(self.ds.get(_chunk_key(context_id)))