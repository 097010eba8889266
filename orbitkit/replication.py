"""Replication state and the events a replicator emits."""

from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ReplicationInfo:
    """Counters describing the current state of a replication."""

    progress: int = 0
    max: int = 0
    buffered: int = 0
    queued: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def inc_queued(self) -> None:
        """Increment the number of queued items."""
        with self._lock:
            self.queued += 1

    def decrease_queued(self, amount: int) -> None:
        """Decrease the number of queued items by ``amount``."""
        with self._lock:
            self.queued -= amount

    def reset(self) -> None:
        """Reset every counter to zero."""
        with self._lock:
            self.progress = 0
            self.max = 0
            self.buffered = 0
            self.queued = 0


@dataclass(frozen=True)
class EventLoadAdded:
    """Emitted when a hash has been added to the fetch set."""

    hash: str


@dataclass(frozen=True)
class EventLoadProgress:
    """Emitted when an entry has been fetched."""

    id: str
    hash: str
    latest: Any
    buffer_length: int


@dataclass(frozen=True)
class EventLoadEnd:
    """Emitted when a batch of fetched logs is ready to be joined."""

    logs: Sequence[Any] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "logs", tuple(self.logs or ()))