# cidlistener

`cidlistener` receives lists of CIDs announced by a content provider, groups
them into fixed-size chunks and hands each full chunk to an advertising engine.
Every CID carries a timestamp; once a CID has not been provided again within the
configured TTL it expires, the chunk it was advertised in is withdrawn, and a
replacement chunk holding the CIDs of that chunk that are still live is
advertised.

State is kept in a key/value datastore so that a new listener built on the same
datastore picks up where the previous one stopped: per-CID timestamps, snapshots
of the whole expiry queue (split into records of bounded size), and every
advertised chunk keyed by its context ID.

## Installation

```
pip install cidlistener
```

The package has no runtime dependencies. Install `cidlistener[test]` to run the
test suite with pytest.

## Example

```python
from cidlistener.cids import RAW, identity_multihash, make_cid
from cidlistener.datastore import MapDatastore
from cidlistener.listener import Listener
from cidlistener.options import with_ad_flush_frequency


class PrintingEngine:
    """Anything with these three methods can serve as the engine."""

    def register_multihash_lister(self, lister):
        self.lister = lister

    def notify_put(self, provider, context_id, metadata):
        print("put", provider.peer_id, context_id.hex())

    def notify_remove(self, provider_id, context_id):
        print("remove", provider_id, context_id.hex())


engine = PrintingEngine()
listener = Listener(
    engine,
    24 * 3600,        # cid_ttl in seconds
    2,                # chunk_size
    1000,             # snapshot_size
    "",               # provider_id: accept the first provider seen
    None,             # addresses of a configured provider
    MapDatastore(),   # ds
    None,             # nonce_gen: random 8-byte nonce
    with_ad_flush_frequency(0),  # no background flushing
)

cids = [make_cid(RAW, identity_multihash(text.encode())) for text in ("a", "b", "c")]
ttl = listener.provide_bitswap(cids, "provider-peer-id", ["/ip4/127.0.0.1/tcp/4001"])
print(ttl, listener.expiry_queue())   # the third CID pushes the first chunk out
print(list(engine.lister("provider-peer-id", b"unknown")) if False else "")
listener.shutdown()
```

## Main pieces

### `cidlistener.listener`

- `Listener(engine, cid_ttl, chunk_size, snapshot_size, provider_id, addresses,
  ds, nonce_gen=None, *options, clock=time.time, retry_interval=5.0)`.
  On construction it registers a `MultihashLister` with the engine, loads the
  expiry queue and chunks from `ds` (under the `reframe` namespace), and starts
  a stats-reporting thread and, when the flush frequency is above zero, a flush
  thread.
  - `provide_bitswap(cids, peer_id, addrs)` registers the CIDs, advertises full
    chunks, expires old CIDs and returns the TTL. A request with at least
    `snapshot_size` CIDs is treated as a snapshot: per-CID timestamps are not
    stored and the whole queue is stored as a snapshot instead.
  - `remove_expired_cids()` withdraws and replaces chunks with expired CIDs and
    returns whether anything expired.
  - `flush()` publishes the current chunk if it is non-empty and older than the
    flush frequency.
  - `expiry_queue()` lists CIDs from the most to the least recently provided.
  - `find_providers(key)` and `provide(request)` always raise
    `UnsupportedRequestError`.
  - `shutdown()` stops the background threads.
- A listener accepts CIDs from one provider only: the configured one or, if none
  was configured, the first one it sees. Others raise `ProviderNotAllowedError`.
- `Engine` is the protocol the engine must follow (`register_multihash_lister`,
  `notify_put`, `notify_remove`); an engine may raise `AlreadyAdvertisedError`,
  which the listener treats as success. Other engine errors are retried with
  `retry_with_backoff(func, initial_interval, times)`, three attempts in all.
- `MultihashLister` returns a chunk's multihashes in sorted order; an unknown
  context ID raises `ChunkNotFoundError`.
- `ProviderInfo` holds a peer ID and its addresses; `BITSWAP_METADATA` is the
  metadata sent with every put.

### Other modules

- `cidlistener.chunker`: `Chunker` and `CidsChunk`; a context ID is the SHA-256
  of the sorted CID strings followed by a nonce (`default_nonce_gen`,
  `context_id_to_str`).
- `cidlistener.cid_queue`: `CidQueue` of `CidNode`s, ordered by recency.
- `cidlistener.datastore`: `MapDatastore` (in memory) and
  `NamespacedDatastore`, with `Query`, `Entry`, `NotFoundError` and
  `normalize_key`.
- `cidlistener.ds_wrapper`: `DatastoreWrapper` and the record encoders
  (`serialise_chunk`, `deserialise_chunk`, `encode_snapshot`, `parse_snapshot`,
  `int64_to_bytes`, `bytes_to_int64`). Chunks and snapshots are stored as JSON.
- `cidlistener.options`: `apply_options` with `with_snapshot_max_chunk_size`,
  `with_page_size` and `with_ad_flush_frequency`. Defaults are a snapshot record
  size of 1,000,000 CIDs, a page size of 20,000 and a flush frequency of 600
  seconds.
- `cidlistener.stats_reporter`: `Stats` counters and `StatsReporter`, which logs
  them every 60 seconds.
- `cidlistener.cids`: a small CID model (`Cid`, `parse_cid`, `make_cid`,
  `identity_multihash`) for version 0 and version 1 CIDs.

## What the package does not do

- It has no HTTP server and no command: `provide_bitswap` is called directly,
  and request signing or verification is left to the caller.
- It contains no advertising engine; bring an object that follows `Engine`.
- The only datastore is the in-memory `MapDatastore`, so state survives only as
  long as that object does.