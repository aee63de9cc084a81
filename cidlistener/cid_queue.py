"""Expiry queue of CIDs, ordered from most to least recently provided."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterator

from cidlistener.chunker import CidsChunk
from cidlistener.cids import Cid


@dataclass(eq=False)
class CidNode:
    """A CID with the time (Unix seconds) it was last provided."""

    cid: Cid
    timestamp: float
    # not persisted; links the CID to the chunk it was advertised in
    chunk: CidsChunk | None = None


class CidQueue:
    """Recency-ordered CID nodes with lookup by CID."""

    def __init__(self) -> None:
        # ordered oldest first; the last entry is the most recent
        self._nodes: OrderedDict[Cid, CidNode] = OrderedDict()

    def record(self, node: CidNode) -> CidNode:
        """Insert a node, or refresh the stored node's timestamp, as most recent."""
        existing = self._nodes.get(node.cid)
        if existing is not None:
            existing.timestamp = node.timestamp
            self._nodes.move_to_end(node.cid)
            return existing
        self._nodes[node.cid] = node
        return node

    def remove(self, cid: Cid) -> None:
        self._nodes.pop(cid, None)

    def assign_chunk(self, cid: Cid, chunk: CidsChunk | None) -> None:
        node = self._nodes.get(cid)
        if node is not None:
            node.chunk = chunk

    def get(self, cid: Cid) -> CidNode | None:
        return self._nodes.get(cid)

    def timestamps_snapshot(self) -> list[CidNode]:
        return list(self._nodes.values())

    def oldest_first(self) -> Iterator[CidNode]:
        """Yield nodes from least to most recent; safe to remove while iterating."""
        yield from list(self._nodes.values())

    def __iter__(self) -> Iterator[CidNode]:
        return reversed(list(self._nodes.values()))

    def __len__(self) -> int:
        return len(self._nodes)