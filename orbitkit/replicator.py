"""Fetches missing log entries from their hashes and hands complete logs to the store.

The store given to a :class:`Replicator` provides:

* ``oplog.get(hash)``: the entry with that hash already in the local log, or ``None``;
* ``fetch_log(hash, length)``: a log holding the entry with that hash, fetched with a
  history of at most ``length`` entries. The log's ``values`` sequence holds entries
  whose ``next`` and ``refs`` sequences name the hashes they point to.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from typing import Any

from .events import EventEmitter
from .replication import EventLoadAdded, EventLoadEnd, EventLoadProgress

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 128
BATCH_SIZE = 1
FLUSH_INTERVAL = 3.0


class Replicator(EventEmitter):
    """Queues hashes to fetch, fetches them and emits the progress of the replication."""

    def __init__(
        self,
        store: Any,
        concurrency: int = 0,
        *,
        flush_interval: float = FLUSH_INTERVAL,
    ) -> None:
        super().__init__()
        self._store = store
        self._concurrency = concurrency or DEFAULT_CONCURRENCY
        self._queue: dict[str, None] = {}
        self._fetching: set[str] = set()
        self._buffer: list[Any] = []
        self._lock = threading.RLock()
        self._stats_lock = threading.Lock()
        self._tasks_requested = 0
        self._tasks_started = 0
        self._tasks_processed = 0
        self._stopped = threading.Event()
        self._flusher = threading.Thread(
            target=self._flush_loop,
            args=(flush_interval,),
            name="replicator-flush",
            daemon=True,
        )
        self._flusher.start()

    def stop(self) -> None:
        """Stop the replication; queued hashes are no longer processed."""
        self._stopped.set()

    def get_queue(self) -> list[str]:
        """Return the hashes waiting to be fetched."""
        with self._lock:
            return list(self._queue)

    def get_buffer_len(self) -> int:
        """Return the number of fetched logs not yet handed over."""
        with self._lock:
            return len(self._buffer)

    def load(self, cids: Iterable[str]) -> None:
        """Queue the hashes that are neither known nor pending, then process the queue."""
        for h in cids:
            in_log = self._store.oplog.get(h) is not None
            with self._lock:
                if in_log or h in self._fetching or h in self._queue:
                    continue
                with self._stats_lock:
                    self._tasks_requested += 1
                self._queue[h] = None
        self._process_queue()

    def _tasks_running(self) -> int:
        with self._stats_lock:
            return self._tasks_started - self._tasks_processed

    def _flush_loop(self, interval: float) -> None:
        while not self._stopped.wait(interval):
            with self._lock:
                queued = len(self._queue)
            if queued and self._tasks_running() == 0:
                with self._stats_lock:
                    requested, finished = self._tasks_requested, self._tasks_processed
                logger.debug(
                    "had to flush the queue: %d items queued, %d/%d tasks requested/finished",
                    queued,
                    requested,
                    finished,
                )
                self._process_queue()

    def _process_one(self, h: str) -> tuple[bool, list[str]]:
        """Fetch one hash; return whether a task started and the hashes it points to."""
        with self._lock:
            if h in self._fetching or self._store.oplog.get(h) is not None:
                return False, []

            self._fetching.add(h)
            self.emit(EventLoadAdded(h))
            with self._stats_lock:
                self._tasks_started += 1

            try:
                log = self._store.fetch_log(h, BATCH_SIZE)
            except Exception:
                logger.exception("unable to fetch log for %s", h)
                return True, []

            self._buffer.append(log)
            values = list(log.values)
            latest = values[0] if values else None
            self._queue.pop(h, None)

            self.emit(EventLoadProgress("", h, latest, len(self._buffer)))

            return True, [n for e in values for n in (*e.next, *e.refs)]

    def _process_queue(self) -> None:
        if self._stopped.is_set():
            return
        running = self._tasks_running()
        if running >= self._concurrency:
            return

        capacity = self._concurrency - running
        with self._lock:
            items = list(self._queue)[:capacity]
            for h in items:
                del self._queue[h]

        results = [self._process_one(h) for h in items]

        for started, hashes in results:
            if started:
                with self._stats_lock:
                    self._tasks_processed += 1

            logs = None
            with self._lock:
                if self._buffer and self._tasks_running() == 0:
                    logs, self._buffer = self._buffer, []
            if logs:
                logger.debug("load end, %d logs found", len(logs))
                self.emit(EventLoadEnd(logs))

            if hashes:
                self.load(hashes)