"""Event emitter and the events emitted by stores and pubsub channels."""

from __future__ import annotations

import queue
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

_CLOSED = object()


class _Subscription:
    """A stream of events delivered by an emitter, in emission order."""

    def __init__(self, emitter: EventEmitter) -> None:
        self._emitter = emitter
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._finished = False

    def _push(self, event: Any) -> None:
        self._queue.put(event)

    def _finish(self) -> None:
        self._queue.put(_CLOSED)

    def get(self, timeout: float | None = None) -> Any:
        """Return the next event; raise queue.Empty on timeout, EOFError once closed."""
        if self._finished:
            raise EOFError("subscription closed")
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            self._finished = True
            raise EOFError("subscription closed")
        return item

    def close(self) -> None:
        """Stop receiving events; already queued events can still be read."""
        self._emitter._remove(self)

    def __iter__(self) -> _Subscription:
        return self

    def __next__(self) -> Any:
        try:
            return self.get()
        except EOFError:
            raise StopIteration from None

    def __enter__(self) -> _Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventEmitter:
    """Delivers emitted events to every open subscription."""

    def __init__(self) -> None:
        self._subscribers_lock = threading.Lock()
        self._subscribers: list[_Subscription] = []

    def subscribe(self) -> _Subscription:
        """Open a subscription receiving every event emitted from now on."""
        subscription = _Subscription(self)
        with self._subscribers_lock:
            self._subscribers.append(subscription)
        return subscription

    def emit(self, event: Any) -> None:
        """Deliver an event to all current subscribers."""
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription._push(event)

    def unsubscribe_all(self) -> None:
        """Close every subscription."""
        with self._subscribers_lock:
            subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            subscription._finish()

    def _remove(self, subscription: _Subscription) -> None:
        with self._subscribers_lock:
            if subscription not in self._subscribers:
                return
            self._subscribers.remove(subscription)
        subscription._finish()


def _as_tuple(items: Sequence[Any] | None) -> tuple[Any, ...]:
    return tuple(items or ())


@dataclass(frozen=True)
class EventReplicate:
    """Emitted when a hash is queued for replication."""

    address: Any
    hash: str


@dataclass(frozen=True)
class EventReplicateProgress:
    """Emitted with the current replication progress."""

    address: Any
    hash: str
    entry: Any
    replication_status: Any


@dataclass(frozen=True)
class EventReplicated:
    """Emitted when data has been replicated."""

    address: Any
    log_length: int


@dataclass(frozen=True)
class EventLoad:
    """Emitted when data starts loading."""

    address: Any
    heads: Sequence[Any] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "heads", _as_tuple(self.heads))


@dataclass(frozen=True)
class EventReady:
    """Emitted when the store is ready."""

    address: Any
    heads: Sequence[Any] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "heads", _as_tuple(self.heads))


@dataclass(frozen=True)
class EventWrite:
    """Emitted when an entry has been written locally."""

    address: Any
    entry: Any
    heads: Sequence[Any] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "heads", _as_tuple(self.heads))


@dataclass(frozen=True)
class EventNewPeer:
    """Emitted when a new peer is discovered on the pubsub channel."""

    peer: str


@dataclass(frozen=True)
class EventPubSubMessage:
    """A message received on a pubsub topic."""

    content: bytes


@dataclass(frozen=True)
class EventPubSubPayload:
    """A payload received on a direct channel."""

    payload: bytes


@dataclass(frozen=True)
class EventPubSubJoin:
    """A peer joined a pubsub topic."""

    peer: str


@dataclass(frozen=True)
class EventPubSubLeave:
    """A peer left a pubsub topic."""

    peer: str