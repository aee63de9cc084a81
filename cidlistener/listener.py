"""The delegated routing listener: turns provided CIDs into chunked advertisements."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Protocol, Sequence

from cidlistener.chunker import Chunker, CidsChunk, context_id_to_str
from cidlistener.cid_queue import CidNode, CidQueue
from cidlistener.cids import Cid, _b58encode
from cidlistener.datastore import MapDatastore, NamespacedDatastore, NotFoundError
from cidlistener.ds_wrapper import DatastoreWrapper
from cidlistener.options import Option, apply_options
from cidlistener.stats_reporter import StatsReporter

log = logging.getLogger("cidlistener.listener")

# serialised metadata holding the single bitswap transport
BITSWAP_METADATA = b"\x80\x12"

# kept as "reframe" so that existing datastores remain readable
DELEGATED_ROUTING_DS_NAME = "reframe"
RETRY_WITH_BACKOFF_INTERVAL = 5.0
RETRY_WITH_BACKOFF_MAX_ATTEMPTS = 3

_PROGRESS_EVERY = 10_000
_CLEANUP_PROGRESS_EVERY = 100
_PEER_ID_RE = re.compile(r"[1-9A-HJ-NP-Za-km-z]+|b[a-z2-7]+")

# routing request kinds the listener refuses, with the log label of each
_UNSUPPORTED_REQUESTS = {
    "find providers": "FindProviders",
    "provide": "Provide",
}


class AlreadyAdvertisedError(Exception):
    """Raised by an engine when the advertisement has already been published."""


class UnsupportedRequestError(Exception):
    """Raised for routing requests the listener does not handle."""


class ProviderNotAllowedError(Exception):
    """Raised when a provide request comes from a provider that is not accepted."""

    def __init__(self, peer_id: str) -> None:
        super().__init__(f"provider {peer_id} isn't allowed")
        self.peer_id = peer_id


class ChunkNotFoundError(LookupError):
    """Raised when no chunk is known for a context ID."""


@dataclass(frozen=True)
class ProviderInfo:
    """A provider's peer ID and its multiaddresses."""

    peer_id: str
    addrs: tuple[str, ...] = ()


class Engine(Protocol):
    """What the listener needs from an advertisement engine."""

    def register_multihash_lister(
        self, lister: Callable[[str, bytes], Iterator[bytes]]
    ) -> None: ...

    def notify_put(
        self, provider: ProviderInfo, context_id: bytes, metadata: bytes
    ) -> object: ...

    def notify_remove(self, provider_id: str, context_id: bytes) -> object: ...


@dataclass
class MultihashLister:
    """Lists the multihashes of a chunk, in a deterministic order."""

    cid_fetcher: Callable[[bytes], Iterable[Cid]]

    def __call__(self, provider: str, context_id: bytes) -> Iterator[bytes]:
        cids = self.cid_fetcher(context_id)
        multihashes = sorted((c.hash for c in cids), key=_b58encode)
        log.info(
            "Returning a chunk from MultihashLister contextId=%s size=%d",
            context_id_to_str(context_id),
            len(multihashes),
        )
        return iter(multihashes)


def retry_with_backoff(func: Callable[[], object], initial_interval: float, times: int):
    """Call func until it succeeds, doubling the pause after each failure.

    The last exception is raised once times attempts have failed.
    """
    sleep_time = initial_interval
    attempt = 0
    while True:
        try:
            return func()
        except Exception as exc:
            attempt += 1
            if attempt >= times:
                raise
            log.info(
                "Retrying execution because of an error: %s attempt=%d sleepTime=%s",
                exc, attempt, sleep_time,
            )
            time.sleep(sleep_time)
            sleep_time *= 2


def _check_multiaddr(text: str) -> str:
    parts = text.split("/")
    if not text.startswith("/") or len(parts) < 3 or not all(parts[1:]):
        raise ValueError(f"invalid multiaddr {text!r}")
    return text


def _unsupported(kind: str) -> UnsupportedRequestError:
    """Log a refused routing request and build the error that reports it."""
    log.warning("Received unsupported %s request", _UNSUPPORTED_REQUESTS[kind])
    return UnsupportedRequestError(f"unsupported {kind} request")


class Listener:
    """Receives provided CIDs, advertises them in chunks and expires them after a TTL.

    Times are in seconds; clock gives the current Unix time.
    """

    def __init__(
        self,
        engine: Engine,
        cid_ttl: float,
        chunk_size: int,
        snapshot_size: int,
        provider_id: str,
        addresses: Sequence[str] | None,
        ds: MapDatastore | NamespacedDatastore,
        nonce_gen: Callable[[], bytes] | None = None,
        *options: Option,
        clock: Callable[[], float] = time.time,
        retry_interval: float = RETRY_WITH_BACKOFF_INTERVAL,
    ) -> None:
        opts = apply_options(*options)
        self.engine = engine
        self.cid_ttl = cid_ttl
        self.chunk_size = chunk_size
        self.snapshot_size = snapshot_size
        self.clock = clock
        self.retry_interval = retry_interval
        self.ds_wrapper = DatastoreWrapper(
            NamespacedDatastore(ds, DELEGATED_ROUTING_DS_NAME),
            opts.snapshot_max_chunk_size,
            opts.page_size,
        )
        self.chunker = Chunker(lambda: chunk_size, nonce_gen)
        self.cid_queue = CidQueue()
        self.last_seen_provider = ProviderInfo("")
        self.configured_provider: ProviderInfo | None = None
        self.ad_flush_frequency = opts.ad_flush_frequency
        self.stats = StatsReporter(
            lambda: len(self.cid_queue),
            lambda: len(self.chunker.chunk_by_context_id),
            lambda: len(self.chunker.current_chunk.cids),
        )
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._flush_thread: threading.Thread | None = None

        engine.register_multihash_lister(MultihashLister(self._fetch_cids))

        log.info("Initialising from the datastore")
        self.ds_wrapper.initialise(self.cid_queue.record, self._import_chunk)

        # store the merged snapshot, which also drops the per-CID timestamps
        if len(self.cid_queue) > 0:
            self._record_snapshot()

        log.info(
            "Loaded up %d cids and %d chunks from the datastore.",
            len(self.cid_queue), len(self.chunker.chunk_by_context_id),
        )

        if provider_id:
            if not _PEER_ID_RE.fullmatch(provider_id):
                raise ValueError(f"invalid peer ID {provider_id!r}")
            addrs = tuple(_check_multiaddr(a) for a in addresses or ())
            self.configured_provider = ProviderInfo(provider_id, addrs)

        self.stats.start()
        if self.ad_flush_frequency > 0:
            self._flush_thread = threading.Thread(
                target=self._flush_worker, name="ad-flush", daemon=True
            )
            self._flush_thread.start()

    def _fetch_cids(self, context_id: bytes) -> set[Cid]:
        chunk = self.chunker.get_chunk_by_context_id(context_id_to_str(context_id))
        if chunk is not None:
            # the engine indexes it now and will not ask for it again
            self.chunker.remove_chunk(chunk)
            return chunk.cids
        try:
            chunk = self.ds_wrapper.get_chunk(context_id)
        except (NotFoundError, ValueError):
            self.stats.increment("chunks_not_found")
            raise ChunkNotFoundError(
                f"multihash lister couldn't find a chunk for contextID "
                f"{context_id_to_str(context_id)}"
            ) from None
        self.stats.increment("chunk_cache_misses")
        return chunk.cids

    def _import_chunk(self, chunk: CidsChunk) -> None:
        now = self.clock()
        for cid in chunk.cids:
            node = self.cid_queue.get(cid)
            if node is not None:
                if node.chunk is not None:
                    log.warning("Chunk for CID %s has already been assigned.", cid)
                node.chunk = chunk
                continue
            # a missing timestamp is backfilled with now; the CID just expires later
            self.cid_queue.record(CidNode(cid=cid, timestamp=now, chunk=chunk))

    def _record_snapshot(self) -> None:
        try:
            self.ds_wrapper.record_timestamps_snapshot(self.cid_queue.timestamps_snapshot())
        except Exception as exc:
            log.warning("Error recording timestamps snapshot: %s", exc)

    def shutdown(self) -> None:
        self.stats.shutdown()
        self._stop.set()
        if self._flush_thread is not None:
            self._flush_thread.join()
            self._flush_thread = None

    def find_providers(self, key: Cid):
        """Refuse a provider lookup: the listener only accepts bitswap provides."""
        raise _unsupported("find providers")

    def provide(self, request: object):
        """Refuse a generic provide request: only bitswap provides are handled."""
        raise _unsupported("provide")

    def provide_bitswap(self, cids: Iterable[Cid], peer_id: str, addrs: Iterable[str]) -> float:
        """Register provided CIDs and return the TTL in seconds."""
        cids = list(cids)
        start = time.monotonic()
        with self._lock:
            log.info("Received Provide request with %d cids.", len(cids))
            self.stats.increment("delegated_routing_calls_received")
            try:
                return self._provide_locked(cids, peer_id, tuple(addrs))
            finally:
                self.stats.increment("delegated_routing_calls_processed")
                log.info(
                    "Finished processing Provide request. time=%.3fs len=%d",
                    time.monotonic() - start, len(cids),
                )

    def _provide_locked(self, cids: list[Cid], peer_id: str, addrs: tuple[str, ...]) -> float:
        if self.configured_provider is not None and self.configured_provider.peer_id != peer_id:
            log.warning(
                "Skipping Provide request: configured=%s received=%s",
                self.configured_provider.peer_id, peer_id,
            )
            raise ProviderNotAllowedError(peer_id)
        if self.last_seen_provider.peer_id and self.last_seen_provider.peer_id != peer_id:
            log.warning(
                "Skipping Provide request: lastSeen=%s received=%s",
                self.last_seen_provider.peer_id, peer_id,
            )
            raise ProviderNotAllowedError(peer_id)

        self.last_seen_provider = ProviderInfo(peer_id, addrs)
        is_snapshot = len(cids) >= self.snapshot_size
        timestamp = self.clock()

        for i, cid in enumerate(cids):
            # per-CID timestamps are kept only when this is not a snapshot
            if not is_snapshot:
                try:
                    self.ds_wrapper.record_cid_timestamp(cid, timestamp)
                except Exception as exc:
                    log.error("Error persisting timestamp of %s: %s. Continuing.", cid, exc)
                    continue

            node = self.cid_queue.get(cid)
            if node is None:
                self.cid_queue.record(CidNode(cid=cid, timestamp=timestamp))
                try:
                    self.chunker.add_cid_to_current_chunk(cid, self._notify_put_and_persist)
                except Exception as exc:
                    log.error("Error adding %s to the current chunk: %s. Continuing.", cid, exc)
                    self.cid_queue.remove(cid)
                    continue
            else:
                node.timestamp = timestamp
                self.cid_queue.record(node)
                # a CID without a chunk goes into the current one
                if node.chunk is None:
                    try:
                        self.chunker.add_cid_to_current_chunk(cid, self._notify_put_and_persist)
                    except Exception as exc:
                        log.error(
                            "Error adding %s to the current chunk: %s. Continuing.", cid, exc
                        )
                        continue
                self.stats.increment("existing_cids_processed")

            self.stats.increment("cids_processed")
            if i and i % _PROGRESS_EVERY == 0:
                log.info("Processed %d out of %d CIDs.", i, len(cids))

        removed_something = self.remove_expired_cids()
        if removed_something or is_snapshot:
            self._record_snapshot()
        return self.cid_ttl

    def remove_expired_cids(self) -> bool:
        """Withdraw chunks holding expired CIDs and re-advertise what is left of them.

        Returns whether any CID had expired.
        """
        now = self.clock()
        chunks_to_remove: dict[str, CidsChunk] = {}
        cids_to_remove: set[Cid] = set()
        removed_some = False
        cids_removed = chunks_removed = chunks_replaced = 0

        for node in self.cid_queue.oldest_first():
            if now - node.timestamp <= self.cid_ttl:
                break
            removed_some = True
            # CIDs of the current, unadvertised chunk have no chunk yet
            if node.chunk is not None:
                cids_to_remove.add(node.cid)
                chunks_to_remove[context_id_to_str(node.chunk.context_id)] = node.chunk
            else:
                self.cid_queue.remove(node.cid)

        for counter, (old_ctx, chunk) in enumerate(chunks_to_remove.items(), start=1):
            # if removal fails nothing is updated, so it is retried next time
            try:
                self._notify_remove_and_persist(chunk)
            except Exception as exc:
                log.warning("Error removing chunk %s: %s. Continuing.", old_ctx, exc)
                cids_to_remove -= chunk.cids
                continue
            chunks_removed += 1

            replacement = CidsChunk()
            for cid in chunk.cids:
                if cid not in cids_to_remove:
                    replacement.cids.add(cid)
                    continue
                self.cid_queue.remove(cid)
                cids_to_remove.discard(cid)
                self.stats.increment("cids_expired")
                cids_removed += 1

            if replacement.cids:
                replacement.context_id = self.chunker.generate_context_id(replacement.cids)
                try:
                    self._notify_put_and_persist(replacement)
                except Exception as exc:
                    # the remaining CIDs are picked up with the next snapshot
                    log.warning(
                        "Error creating replacement chunk %s: %s. Continuing.",
                        context_id_to_str(replacement.context_id), exc,
                    )
                    continue
                chunks_replaced += 1
            else:
                log.info("No CIDs left to generate a replacement chunk for %s.", old_ctx)

            if counter % _CLEANUP_PROGRESS_EVERY == 0:
                log.info("Cleaning up chunk %d out of %d.", counter, len(chunks_to_remove))

        for cid in cids_to_remove:
            self.cid_queue.remove(cid)

        log.info(
            "Finished cleaning up. cidsExpired=%d chunksExpired=%d chunksReplaced=%d",
            cids_removed, chunks_removed, chunks_replaced,
        )
        return removed_some

    def _call_engine(self, call: Callable[[], object]) -> None:
        def attempt() -> None:
            try:
                call()
            except AlreadyAdvertisedError:
                pass

        retry_with_backoff(attempt, self.retry_interval, RETRY_WITH_BACKOFF_MAX_ATTEMPTS)

    def _notify_remove_and_persist(self, chunk: CidsChunk) -> None:
        log.info("Notifying Remove for chunk=%s", context_id_to_str(chunk.context_id))
        self._call_engine(lambda: self.engine.notify_remove(self._provider_id(), chunk.context_id))
        self.stats.increment("remove_ads_sent")
        self.chunker.remove_chunk(chunk)
        self.ds_wrapper.delete_chunk(chunk)

    def _notify_put_and_persist(self, chunk: CidsChunk) -> None:
        log.info(
            "Notifying Put for chunk=%s, provider=%s, addrs=%s, cidsTotal=%d",
            context_id_to_str(chunk.context_id), self._provider_id(),
            list(self._addrs()), len(chunk.cids),
        )
        # indexed first so that the multihash lister can find it
        self.chunker.add_chunk(chunk)
        self.ds_wrapper.record_chunk(chunk)
        info = ProviderInfo(self._provider_id(), self._addrs())
        try:
            self._call_engine(
                lambda: self.engine.notify_put(info, chunk.context_id, BITSWAP_METADATA)
            )
        except Exception:
            self.chunker.remove_chunk(chunk)
            raise
        self.stats.increment("put_ads_sent")
        for cid in chunk.cids:
            self.cid_queue.assign_chunk(cid, chunk)

    def _provider_id(self) -> str:
        if self.configured_provider is None:
            return self.last_seen_provider.peer_id
        return self.configured_provider.peer_id

    def _addrs(self) -> tuple[str, ...]:
        if self.configured_provider is None:
            return self.last_seen_provider.addrs
        return self.configured_provider.addrs

    def flush(self) -> None:
        """Publish the current chunk if it is non-empty and older than the flush frequency."""
        with self._lock:
            if (
                self.chunker.current_chunk.cids
                and time.monotonic() - self.chunker.current_chunk_time > self.ad_flush_frequency
            ):
                try:
                    self.chunker.flush_current_chunk(self._notify_put_and_persist)
                except Exception as exc:
                    log.warning("Error flushing current chunk: %s", exc)

    def _flush_worker(self) -> None:
        while not self._stop.is_set():
            self.flush()
            if self._stop.wait(self.ad_flush_frequency):
                return

    def expiry_queue(self) -> list[Cid]:
        """CIDs from the most to the least recently provided."""
        return [node.cid for node in self.cid_queue]