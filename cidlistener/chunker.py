"""Grouping of CIDs into fixed-size chunks, each advertised under a context ID."""

from __future__ import annotations

import base64
import hashlib
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

from cidlistener.cids import Cid


@dataclass(eq=False)
class CidsChunk:
    """A set of CIDs advertised together. Compared by identity."""

    context_id: bytes = b""
    cids: set[Cid] = field(default_factory=set)
    # kept only so that older stored chunks can still be read
    removed: bool = False


def default_nonce_gen() -> bytes:
    return os.urandom(8)


def context_id_to_str(context_id: bytes) -> str:
    return base64.b64encode(context_id).decode("ascii")


class Chunker:
    """Fills a current chunk and hands it on once full."""

    def __init__(
        self,
        chunk_size_func: Callable[[], int],
        nonce_gen: Callable[[], bytes] | None = None,
    ) -> None:
        self.chunk_size_func = chunk_size_func
        self.nonce_gen = nonce_gen or default_nonce_gen
        self.chunk_by_context_id: dict[str, CidsChunk] = {}
        self.current_chunk = CidsChunk()
        self.current_chunk_time = time.monotonic()
        self.set_new_current_chunk()

    def get_chunk_by_context_id(self, ctx_id: str) -> CidsChunk | None:
        if ctx_id == context_id_to_str(self.current_chunk.context_id):
            return self.current_chunk
        return self.chunk_by_context_id.get(ctx_id)

    def add_chunk(self, chunk: CidsChunk) -> None:
        self.chunk_by_context_id[context_id_to_str(chunk.context_id)] = chunk

    def remove_chunk(self, chunk: CidsChunk) -> None:
        self.chunk_by_context_id.pop(context_id_to_str(chunk.context_id), None)

    def set_new_current_chunk(self) -> None:
        self.current_chunk = CidsChunk()
        self.current_chunk_time = time.monotonic()

    def add_cid_to_current_chunk(
        self, cid: Cid, on_full: Callable[[CidsChunk], None]
    ) -> None:
        """Add a CID, first handing the current chunk to on_full if it is full.

        Exceptions raised by on_full propagate and leave the CID unadded.
        """
        if cid in self.current_chunk.cids:
            return
        if len(self.current_chunk.cids) >= self.chunk_size_func():
            self.flush_current_chunk(on_full)
        self.current_chunk.cids.add(cid)

    def flush_current_chunk(self, on_full: Callable[[CidsChunk], None]) -> None:
        """Give the current chunk a context ID, pass it on and start a new one."""
        self.current_chunk.context_id = self.generate_context_id(self.current_chunk.cids)
        on_full(self.current_chunk)
        self.set_new_current_chunk()

    def generate_context_id(self, cids: Iterable[Cid]) -> bytes:
        """SHA-256 over the sorted CID strings followed by a nonce."""
        hasher = hashlib.sha256()
        for text in sorted(str(c) for c in cids):
            hasher.update(text.encode("utf-8"))
        hasher.update(self.nonce_gen())
        return hasher.digest()