"""The store base shared by every store type: operation log, cache, replication, snapshots.

A store keeps its entries in a content-addressed block storage (a mutable mapping from
hash to bytes) and its local state in a cache (a mutable mapping from key to bytes).
Stores sharing a block storage can exchange entries by their hashes.
"""

from __future__ import annotations

import base64
import hashlib
import heapq
import json
import logging
import struct
import threading
from collections.abc import Callable, Iterable, MutableMapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .events import EventEmitter, EventLoad, EventReady, EventReplicate
from .events import EventReplicated, EventReplicateProgress, EventWrite
from .indexes import BaseIndex
from .operation import Operation
from .replication import EventLoadAdded, EventLoadEnd, EventLoadProgress, ReplicationInfo
from .replicator import Replicator

logger = logging.getLogger(__name__)

_LOCAL_HEADS = "_localHeads"
_REMOTE_HEADS = "_remoteHeads"
_SNAPSHOT = "snapshot"
_QUEUE = "queue"
_MAX_CHUNK = 0xFFFF


def _dumps(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":"), sort_keys=True).encode("utf-8")


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class _Entry:
    """A signed-by-identity log entry pointing to the entries before it."""

    log_id: str
    payload: bytes
    next: tuple[str, ...]
    refs: tuple[str, ...]
    clock: int
    identity: str
    hash: str = ""

    def content(self) -> bytes:
        return _dumps(
            {
                "id": self.log_id,
                "payload": base64.b64encode(self.payload).decode("ascii"),
                "next": list(self.next),
                "refs": list(self.refs),
                "clock": self.clock,
                "identity": self.identity,
            }
        )

    def to_json(self) -> dict[str, Any]:
        out = json.loads(self.content())
        out["hash"] = self.hash
        return out

    @classmethod
    def from_json(cls, raw: Any) -> _Entry:
        if not isinstance(raw, dict):
            raise ValueError("entry is not an object")
        try:
            return cls(
                log_id=str(raw.get("id", "")),
                payload=base64.b64decode(raw.get("payload", "")),
                next=tuple(raw.get("next") or ()),
                refs=tuple(raw.get("refs") or ()),
                clock=int(raw.get("clock", 0)),
                identity=str(raw.get("identity", "")),
                hash=str(raw.get("hash", "")),
            )
        except (TypeError, ValueError) as exc:
            raise ValueError("invalid entry") from exc

    @classmethod
    def create(cls, log_id, payload, next_, refs, clock, identity) -> _Entry:
        entry = cls(log_id, payload, tuple(next_), tuple(refs), clock, identity)
        return cls(log_id, payload, entry.next, entry.refs, clock, identity, _digest(entry.content()))

    def sort_key(self) -> tuple[int, str, str]:
        return (self.clock, self.identity, self.hash)


class _SimpleAccess:
    """Grants write access to a fixed list of identities, or to anyone with ``*``."""

    def __init__(self, writers: Iterable[str]) -> None:
        self.writers = list(writers)

    def can_append(self, entry: _Entry, context: CanAppendContext) -> None:
        if "*" in self.writers or entry.identity in self.writers:
            return
        raise PermissionError(f"identity {entry.identity!r} is not allowed to write")


class _Log:
    """An append-only log of entries ordered by clock."""

    def __init__(self, log_id: str, identity: str, access: Any, entries: Iterable[_Entry] = ()) -> None:
        self.id = log_id
        self._identity = identity
        self._access = access
        self._lock = threading.RLock()
        self._entries: dict[str, _Entry] = {e.hash: e for e in entries}

    def get(self, h: str) -> _Entry | None:
        with self._lock:
            return self._entries.get(h)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def values(self) -> list[_Entry]:
        with self._lock:
            return sorted(self._entries.values(), key=_Entry.sort_key)

    @property
    def heads(self) -> list[_Entry]:
        with self._lock:
            pointed = {n for e in self._entries.values() for n in e.next}
            return sorted(
                (e for h, e in self._entries.items() if h not in pointed), key=_Entry.sort_key
            )

    def append(self, payload: bytes, pointer_count: int) -> _Entry:
        with self._lock:
            values = self.values
            heads = self.heads
            next_ = [e.hash for e in heads]
            refs: list[str] = []
            distance = 2
            while distance <= min(pointer_count, len(values)):
                candidate = values[-distance].hash
                if candidate not in next_:
                    refs.append(candidate)
                distance *= 2
            clock = max((e.clock for e in values), default=0) + 1
            entry = _Entry.create(self.id, payload, next_, refs, clock, self._identity)
            self._access.can_append(entry, CanAppendContext(self))
            self._entries[entry.hash] = entry
            return entry

    def join(self, other: _Log, amount: int = -1) -> _Log:
        if other.id != self.id:
            raise ValueError("unable to join logs with different IDs")
        with self._lock:
            for entry in other.values:
                if entry.hash in self._entries:
                    continue
                self._access.can_append(entry, CanAppendContext(self))
                self._entries[entry.hash] = entry
            if amount > 0 and len(self._entries) > amount:
                self._entries = {e.hash: e for e in self.values[-amount:]}
        return self


class CanAppendContext:
    """Gives an access controller the entries of the log being written to."""

    def __init__(self, log: Any) -> None:
        self._log = log

    def get_log_entries(self) -> list[Any]:
        """Return the entries of the log."""
        return list(self._log.values)


@dataclass
class StoreOptions:
    """Options for creating a store."""

    identity: str = ""
    storage: MutableMapping[str, bytes] = field(default_factory=dict)
    cache: MutableMapping[str, bytes] = field(default_factory=dict)
    cache_destroy: Callable[[], Any] | None = None
    access_controller: Any = None
    write_access: Sequence[str] | None = None
    index: Callable[[bytes], Any] | None = None
    reference_count: int = 64
    replication_concurrency: int = 0
    max_history: int | None = None
    directory: str = "./orbitdb"
    replicate: bool = True
    flush_interval: float = 3.0


class BaseStore(EventEmitter):
    """Operations common to every store type."""

    def __init__(self, address: str, options: StoreOptions) -> None:
        super().__init__()
        if not options.identity:
            raise ValueError("identity required")
        if options.index is None:
            options.index = BaseIndex
        self.options = options
        self.address = address
        self.id = address
        self.identity = options.identity
        self.db_name = address.rstrip("/").rsplit("/", 1)[-1]
        self.storage = options.storage
        self.cache = options.cache
        if options.access_controller is not None:
            self.access_controller = options.access_controller
        else:
            writers = options.write_access if options.write_access is not None else [self.identity]
            self.access_controller = _SimpleAccess(writers)
        self.replication_status = ReplicationInfo()
        self.reference_count = options.reference_count
        self.directory = options.directory
        self.replicate = options.replicate
        self.bytes_loaded = -1
        self.sync_requests_received = 0
        self._index_lock = threading.RLock()
        self._joining = threading.RLock()
        self._stats_lock = threading.Lock()
        self._oplog = _Log(self.id, self.identity, self.access_controller)
        self._index = options.index(self.identity.encode())
        self.replicator = Replicator(
            self, options.replication_concurrency, flush_interval=options.flush_interval
        )
        subscription = self.replicator.subscribe()
        threading.Thread(
            target=self._main_loop, args=(subscription,), name="store-main-loop", daemon=True
        ).start()

    @property
    def type(self) -> str:
        return "store"

    @property
    def oplog(self) -> _Log:
        with self._index_lock:
            return self._oplog

    @property
    def index(self) -> Any:
        with self._index_lock:
            return self._index

    def fetch_log(self, h: str, length: int = -1, exclude: Iterable[str] = ()) -> _Log:
        """Read the entry ``h`` and up to ``length`` of its newest ancestors from storage."""
        excluded = set(exclude)
        root = self._read_entry(h)
        if root is None:
            raise LookupError(f"entry {h} not found in storage")
        heap = [(-root.clock, root.hash, root)]
        seen = {root.hash}
        found: list[_Entry] = []
        while heap and (length < 0 or len(found) < length):
            _, _, entry = heapq.heappop(heap)
            found.append(entry)
            for parent in (*entry.next, *entry.refs):
                if parent in seen or parent in excluded:
                    continue
                seen.add(parent)
                parent_entry = self._read_entry(parent)
                if parent_entry is not None:
                    heapq.heappush(heap, (-parent_entry.clock, parent, parent_entry))
        return _Log(self.oplog.id, self.identity, self.access_controller, found)

    def _read_entry(self, h: str) -> _Entry | None:
        raw = self.storage.get(h)
        if raw is None:
            return None
        entry = _Entry.from_json(json.loads(raw))
        return _Entry(entry.log_id, entry.payload, entry.next, entry.refs, entry.clock, entry.identity, h)

    def _main_loop(self, subscription: Any) -> None:
        for event in subscription:
            try:
                self._handle_replicator_event(event)
            except Exception:
                logger.exception("error while handling a replication event")

    def _handle_replicator_event(self, event: Any) -> None:
        status = self.replication_status
        if isinstance(event, EventLoadAdded):
            status.inc_queued()
            self._recalculate_max(0)
            self.emit(EventReplicate(self.address, event.hash))
        elif isinstance(event, EventLoadEnd):
            self._replication_load_complete(event.logs)
        elif isinstance(event, EventLoadProgress):
            if status.buffered > event.buffer_length:
                self._recalculate_progress(status.progress + event.buffer_length)
            else:
                if self.oplog.get(event.hash) is not None:
                    return
                self._recalculate_progress(len(self.oplog) + event.buffer_length)
            status.buffered = event.buffer_length
            self._recalculate_max(status.progress)
            self.emit(EventReplicateProgress(self.address, event.hash, event.latest, status))

    def close(self) -> None:
        """Stop replicating, reset statistics and close subscriptions and cache."""
        self.replicator.stop()
        self.replicator.unsubscribe_all()
        self.replication_status.reset()
        with self._stats_lock:
            self.bytes_loaded = -1
            self.sync_requests_received = 0
        self.unsubscribe_all()
        closer = getattr(self.cache, "close", None)
        if callable(closer):
            try:
                closer()
            except Exception as exc:
                raise RuntimeError("unable to close cache") from exc

    def drop(self) -> None:
        """Close the store, destroy its cache and reset its log and index."""
        self.close()
        try:
            if self.options.cache_destroy is not None:
                self.options.cache_destroy()
            else:
                self.cache.clear()
        except Exception as exc:
            raise RuntimeError("unable to destroy cache") from exc
        with self._index_lock:
            self._index = self.options.index(self.identity.encode())
            self._oplog = _Log(self.id, self.identity, self.access_controller)
        self.cache = self.options.cache

    def _cached_heads(self, key: str) -> list[_Entry]:
        raw = self.cache.get(key)
        if raw is None:
            return []
        data = json.loads(raw)
        return [_Entry.from_json(item) for item in data or ()]

    def load(self, amount: int = -1) -> None:
        """Load the locally cached heads and up to ``amount`` entries of their history."""
        if amount <= 0 and self.options.max_history is not None:
            amount = self.options.max_history

        try:
            local_heads = self._cached_heads(_LOCAL_HEADS)
        except ValueError as exc:
            logger.warning("unable to unmarshal cached local heads: %s", exc)
            local_heads = []
        try:
            remote_heads = self._cached_heads(_REMOTE_HEADS)
        except ValueError as exc:
            raise ValueError("unable to unmarshal cached remote heads") from exc

        heads = local_heads + remote_heads
        if heads:
            self.emit(EventLoad(self.address, heads))

        for head in heads:
            with self._joining:
                oplog = self.oplog
                self._recalculate_max(head.clock)
                try:
                    log = self.fetch_log(head.hash, amount, (e.hash for e in oplog.values))
                except Exception as exc:
                    raise RuntimeError("unable to create log from entry hash") from exc
                try:
                    oplog.join(log, amount)
                except (PermissionError, ValueError) as exc:
                    logger.debug("unable to join log: %s", exc)

        if heads:
            self._update_index()

        self.emit(EventReady(self.address, self.oplog.heads))

    def sync(self, heads: Iterable[Any]) -> None:
        """Verify and store the given heads, then replicate the entries they point to."""
        with self._stats_lock:
            self.sync_requests_received += 1
        heads = list(heads)
        if not heads:
            return

        saved: list[str] = []
        for head in heads:
            if head is None:
                logger.debug("given input entry was None")
                continue
            try:
                self.access_controller.can_append(head, CanAppendContext(self.oplog))
            except PermissionError as exc:
                logger.debug("entry not allowed in this log, discarded: %s", exc)
                continue
            content = head.content()
            h = _digest(content)
            self.storage[h] = content
            if h != head.hash:
                raise ValueError("WARNING! Head hash didn't match the contents")
            saved.append(h)

        self.replicator.load(saved)

    def load_more_from(self, amount: int, cids: Iterable[str]) -> None:
        """Replicate the entries with the given hashes."""
        self.replicator.load(list(cids))

    def load_from_snapshot(self) -> None:
        """Load the log from the snapshot recorded in the cache."""
        with self._joining:
            self.emit(EventLoad(self.address, ()))

            queue_json = self.cache.get(_QUEUE)
            if queue_json is not None:
                try:
                    queued = json.loads(queue_json) or []
                except ValueError as exc:
                    raise ValueError("unable to deserialize queued CIDs") from exc
                self.replicator.load(queued)

            snapshot = self.cache.get(_SNAPSHOT)
            if snapshot is None:
                raise LookupError("snapshot not found")
            blob = self.storage.get(snapshot.decode("utf-8"))
            if blob is None:
                raise LookupError("unable to get snapshot from storage: not found")

            reader = _Reader(blob)
            try:
                header = json.loads(reader.chunk())
            except ValueError as exc:
                raise ValueError("unable to decode header from snapshot data") from exc

            entries = []
            for _ in range(int(header.get("size", 0))):
                try:
                    entries.append(_Entry.from_json(json.loads(reader.chunk())))
                except ValueError as exc:
                    raise ValueError("unable to unmarshal entry from snapshot data") from exc

            self._recalculate_max(max((e.clock for e in entries), default=0))

            log_id = header.get("id", "")
            log = _Log(log_id, self.identity, self.access_controller, entries)
            try:
                self.oplog.join(log, -1)
            except (PermissionError, ValueError) as exc:
                raise RuntimeError("unable to join log") from exc
            self._update_index()

    def add_operation(self, op: Operation, on_progress: Callable[[Any], Any] | None = None) -> _Entry:
        """Append an operation to the log, update the index and return the new entry."""
        data = op.marshal()
        oplog = self.oplog
        entry = oplog.append(data, self.reference_count)
        self.storage[entry.hash] = entry.content()
        self._recalculate_status(self.replication_status.progress + 1, entry.clock)
        self.cache[_LOCAL_HEADS] = _dumps([entry.to_json()])
        self._update_index()
        self.emit(EventWrite(self.address, entry, oplog.heads))
        if on_progress is not None:
            on_progress(entry)
        return entry

    def _recalculate_progress(self, maximum: int) -> None:
        length = len(self.oplog)
        if length > maximum:
            maximum = length
        elif self.replication_status.max > maximum:
            maximum = self.replication_status.max
        self.replication_status.progress = maximum
        self._recalculate_max(self.replication_status.progress)

    def _recalculate_max(self, maximum: int) -> None:
        length = len(self.oplog)
        if length > maximum:
            maximum = length
        elif self.replication_status.max > maximum:
            maximum = self.replication_status.max
        self.replication_status.max = maximum

    def _recalculate_status(self, max_progress: int, max_total: int) -> None:
        self._recalculate_progress(max_progress)
        self._recalculate_max(max_total)

    def _update_index(self) -> None:
        self._recalculate_max(0)
        self.index.update_index(self.oplog, [])
        self._recalculate_progress(0)

    def _replication_load_complete(self, logs: Sequence[Any]) -> None:
        with self._joining:
            oplog = self.oplog
            for log in logs:
                try:
                    oplog.join(log, -1)
                except (PermissionError, ValueError) as exc:
                    logger.error("unable to join logs: %s", exc)
                    return
            self.replication_status.decrease_queued(len(logs))
            self.replication_status.buffered = self.replicator.get_buffer_len()
            self._update_index()
            heads = oplog.heads
            self.cache[_REMOTE_HEADS] = _dumps([h.to_json() for h in heads])
            logger.debug("saved heads %d", len(heads))
            self.emit(EventReplicated(self.address, len(logs)))


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def chunk(self) -> bytes:
        if self._pos + 2 > len(self._data):
            raise ValueError("unable to read from stream")
        (length,) = struct.unpack_from(">H", self._data, self._pos)
        start = self._pos + 2
        if start + length > len(self._data):
            raise ValueError("unable to read from stream")
        self._pos = start + length
        return self._data[start:self._pos]


def _frame(data: bytes) -> bytes:
    if len(data) > _MAX_CHUNK:
        raise ValueError("snapshot chunk too large")
    return struct.pack(">H", len(data)) + data


def save_snapshot(store: BaseStore) -> str:
    """Write the store's log as a snapshot blob, record it in the cache and return its hash."""
    unfinished = store.replicator.get_queue()
    oplog = store.oplog
    header: dict[str, Any] = {"id": oplog.id, "type": store.type}
    heads = oplog.heads
    if heads:
        header["heads"] = [h.to_json() for h in heads]
    if len(oplog):
        header["size"] = len(oplog)

    parts = [_frame(_dumps(header))]
    parts.extend(_frame(_dumps(e.to_json())) for e in oplog.values)
    parts.append(b"\x00")
    blob = b"".join(parts)

    snapshot_hash = _digest(blob)
    store.storage[snapshot_hash] = blob
    store.cache[_SNAPSHOT] = snapshot_hash.encode("utf-8")
    store.cache[_QUEUE] = _dumps(unfinished)
    return snapshot_hash