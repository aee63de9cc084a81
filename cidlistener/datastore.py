"""A small key-value datastore with hierarchical keys, prefix queries and namespaces."""

from __future__ import annotations

import dataclasses
import posixpath
from dataclasses import dataclass


class NotFoundError(LookupError):
    """Raised when a key is not present in a datastore."""

    def __init__(self, key: str) -> None:
        super().__init__(f"datastore: key not found: {key}")
        self.key = key


def normalize_key(key: str) -> str:
    """Clean a key into its canonical form: a leading '/', no trailing '/', no '.' or '//'."""
    return posixpath.normpath("/" + key.lstrip("/"))


def _prefix_filter(prefix: str) -> str | None:
    """Return the string a matching key must start with, or None for no filtering.

    A prefix of "/bar" finds "/bar/baz" but neither "/bar" itself nor "/barbaz".
    """
    cleaned = normalize_key(prefix)
    if cleaned == "/":
        return None
    return cleaned + "/"


@dataclass(frozen=True)
class Query:
    """A datastore query. Results always come in key order.

    limit of 0 means no limit.
    """

    prefix: str = ""
    offset: int = 0
    limit: int = 0
    keys_only: bool = False


@dataclass(frozen=True)
class Entry:
    """One query result; value is None for keys-only queries."""

    key: str
    value: bytes | None = None


class MapDatastore:
    """An in-memory datastore."""

    def __init__(self) -> None:
        self._values: dict[str, bytes] = {}

    def get(self, key: str) -> bytes:
        normalized = normalize_key(key)
        try:
            return self._values[normalized]
        except KeyError:
            raise NotFoundError(normalized) from None

    def put(self, key: str, value: bytes) -> None:
        self._values[normalize_key(key)] = bytes(value)

    def has(self, key: str) -> bool:
        return normalize_key(key) in self._values

    def delete(self, key: str) -> None:
        """Remove a key; removing a missing key is not an error."""
        self._values.pop(normalize_key(key), None)

    def query(self, query: Query) -> list[Entry]:
        """Return the matching entries as a list, so the store may change while it is walked."""
        prefix = _prefix_filter(query.prefix)
        keys = sorted(k for k in self._values if prefix is None or k.startswith(prefix))
        keys = keys[max(query.offset, 0):]
        if query.limit > 0:
            keys = keys[: query.limit]
        return [Entry(k, None if query.keys_only else self._values[k]) for k in keys]

    def __len__(self) -> int:
        return len(self._values)


class NamespacedDatastore:
    """A view of another datastore with every key placed under a namespace."""

    def __init__(self, child: MapDatastore | NamespacedDatastore, namespace: str) -> None:
        self.child = child
        self.namespace = normalize_key(namespace)

    def _wrap(self, key: str) -> str:
        return normalize_key(self.namespace + "/" + normalize_key(key))

    def _unwrap(self, key: str) -> str:
        if self.namespace == "/":
            return key
        return normalize_key(key[len(self.namespace):])

    def get(self, key: str) -> bytes:
        try:
            return self.child.get(self._wrap(key))
        except NotFoundError:
            raise NotFoundError(normalize_key(key)) from None

    def put(self, key: str, value: bytes) -> None:
        self.child.put(self._wrap(key), value)

    def has(self, key: str) -> bool:
        return self.child.has(self._wrap(key))

    def delete(self, key: str) -> None:
        self.child.delete(self._wrap(key))

    def query(self, query: Query) -> list[Entry]:
        inner = normalize_key(query.prefix)
        child_prefix = self.namespace if inner == "/" else self._wrap(inner)
        results = self.child.query(dataclasses.replace(query, prefix=child_prefix))
        return [Entry(self._unwrap(e.key), e.value) for e in results]