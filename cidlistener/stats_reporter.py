"""Counters of listener activity, logged periodically."""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Callable

log = logging.getLogger("cidlistener.stats")

STATS_PRINT_FREQUENCY = 60.0


@dataclass
class Stats:
    put_ads_sent: int = 0
    remove_ads_sent: int = 0
    cids_processed: int = 0
    existing_cids_processed: int = 0
    cids_expired: int = 0
    delegated_routing_calls_received: int = 0
    delegated_routing_calls_processed: int = 0
    chunk_cache_misses: int = 0
    chunks_not_found: int = 0


_COUNTERS = frozenset(f.name for f in dataclasses.fields(Stats))


class StatsReporter:
    """Holds Stats and logs them, with live totals, from a background thread."""

    def __init__(
        self,
        total_cids_func: Callable[[], int],
        total_chunks_func: Callable[[], int],
        current_chunk_size_func: Callable[[], int],
        interval: float = STATS_PRINT_FREQUENCY,
    ) -> None:
        self.stats = Stats()
        self.total_cids_func = total_cids_func
        self.total_chunks_func = total_chunks_func
        self.current_chunk_size_func = current_chunk_size_func
        self.interval = interval
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def increment(self, counter: str) -> None:
        """Add one to the named Stats counter."""
        if counter not in _COUNTERS:
            raise ValueError(f"unknown counter {counter!r}")
        with self._lock:
            setattr(self.stats, counter, getattr(self.stats, counter) + 1)

    def report(self) -> str:
        """Log the current stats and totals, and return the logged line."""
        with self._lock:
            counters = " ".join(
                f"{name}={value}" for name, value in dataclasses.asdict(self.stats).items()
            )
        line = (
            f"stats: {counters}, totalCids: {self.total_cids_func()}, "
            f"totalChunks: {self.total_chunks_func()}, "
            f"currentChunkSize: {self.current_chunk_size_func()}"
        )
        log.info(line)
        return line

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="stats-reporter", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.report()

    def shutdown(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None