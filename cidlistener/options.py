"""Tunable settings of the listener."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

DEFAULT_SNAPSHOT_MAX_CHUNK_SIZE = 1_000_000
DEFAULT_PAGE_SIZE = 20_000
DEFAULT_FLUSH_FREQUENCY = 10 * 60.0


@dataclass
class Options:
    """Listener settings.

    snapshot_max_chunk_size: most CIDs stored in one snapshot record.
    page_size: most records read per query while loading the datastore.
    ad_flush_frequency: seconds after which a non-empty current chunk is published.
    """

    snapshot_max_chunk_size: int = DEFAULT_SNAPSHOT_MAX_CHUNK_SIZE
    page_size: int = DEFAULT_PAGE_SIZE
    ad_flush_frequency: float = DEFAULT_FLUSH_FREQUENCY


Option = Callable[[Options], None]


def with_snapshot_max_chunk_size(size: int) -> Option:
    def apply(options: Options) -> None:
        options.snapshot_max_chunk_size = size

    return apply


def with_page_size(size: int) -> Option:
    def apply(options: Options) -> None:
        options.page_size = size

    return apply


def with_ad_flush_frequency(seconds: float) -> Option:
    def apply(options: Options) -> None:
        options.ad_flush_frequency = seconds

    return apply


def apply_options(*args: Option) -> Options:
    """Start from the defaults and apply each option in turn."""
    options = Options()
    for option in args:
        option(options)
    return options