"""Delegated routing listener that chunks, advertises and expires provided CIDs."""

__version__ = "0.1.0"

__all__ = [
    "cids",
    "options",
    "chunker",
    "cid_queue",
    "stats_reporter",
    "datastore",
    "ds_wrapper",
    "listener",
]