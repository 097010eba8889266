"""Indexes that turn a store's operation log into the data its queries read.

An index is built from a log whose ``values`` sequence holds the entries in log order;
each entry's ``payload`` holds a serialized operation.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator, Sequence
from typing import Any

from .operation import parse_operation


def _parsed_newest_first(oplog: Any, what: str):
    for entry in reversed(list(oplog.values)):
        try:
            yield parse_operation(entry)
        except ValueError as exc:
            raise ValueError(f"unable to parse log {what} operation") from exc


class BaseIndex:
    """Holds every entry of the log."""

    def __init__(self, public_key: bytes = b"") -> None:
        self._id = public_key
        self._lock = threading.Lock()
        self._index: list[Any] = []

    def get(self, key: str) -> list[Any]:
        """Return all entries, whatever the key."""
        with self._lock:
            return list(self._index)

    def update_index(self, oplog: Any, entries: Sequence[Any] = ()) -> None:
        """Replace the index with the log's entries."""
        with self._lock:
            self._index = list(oplog.values)


class KeyValueIndex:
    """Maps keys to the value of their latest PUT, dropping keys deleted last."""

    def __init__(self, public_key: bytes = b"") -> None:
        self._lock = threading.RLock()
        self._index: dict[str, bytes | None] = {}

    def get(self, key: str) -> bytes | None:
        """Return the value stored under ``key``, or ``None``."""
        with self._lock:
            return self._index.get(key)

    def update_index(self, oplog: Any, entries: Sequence[Any] = ()) -> None:
        """Apply the log's operations, the newest one for each key winning."""
        handled: set[str] = set()
        with self._lock:
            for item in _parsed_newest_first(oplog, "kv"):
                if item.key is None or item.key in handled:
                    continue
                handled.add(item.key)
                if item.op == "PUT":
                    self._index[item.key] = item.value
                elif item.op == "DEL":
                    self._index.pop(item.key, None)

    def _copy(self) -> dict[str, bytes | None]:
        with self._lock:
            return dict(self._index)

    def __iter__(self) -> Iterator[str]:
        return iter(self._copy())

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._index


class EventIndex:
    """Gives the entries of the most recently indexed log."""

    def __init__(self, public_key: bytes = b"") -> None:
        self._lock = threading.Lock()
        self._log: Any = None

    def get(self, key: str) -> list[Any] | None:
        """Return the entries of the log, or ``None`` before the first update."""
        with self._lock:
            if self._log is None:
                return None
            return list(self._log.values)

    def update_index(self, oplog: Any, entries: Sequence[Any] = ()) -> None:
        """Remember the log."""
        with self._lock:
            self._log = oplog


class DocumentIndex:
    """Maps document keys to their serialized documents."""

    def __init__(self, options: Any = None) -> None:
        self._lock = threading.RLock()
        self._index: dict[str, bytes | None] = {}
        self._options = options

    def keys(self) -> list[str]:
        """Return the keys of the indexed documents."""
        with self._lock:
            return list(self._index)

    def get(self, key: str) -> bytes | None:
        """Return the document stored under ``key``, or ``None``."""
        with self._lock:
            return self._index.get(key)

    def update_index(self, oplog: Any, entries: Sequence[Any] = ()) -> None:
        """Apply PUT, DEL and PUTALL operations, the newest one for each key winning."""
        handled: set[str] = set()
        with self._lock:
            for item in _parsed_newest_first(oplog, "documentstore"):
                if item.op == "PUTALL":
                    for doc in item.docs:
                        if doc.key in handled:
                            continue
                        if item.key is not None:
                            handled.add(item.key)
                        self._index[doc.key] = doc.value
                    continue

                if not item.key or item.key in handled:
                    continue
                handled.add(item.key)
                if item.op == "PUT":
                    self._index[item.key] = item.value
                elif item.op == "DEL":
                    self._index.pop(item.key, None)