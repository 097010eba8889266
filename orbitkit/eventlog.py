"""An append-only event log store."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Any

from .basestore import BaseStore, StoreOptions
from .indexes import EventIndex
from .operation import Operation, parse_operation


@dataclass
class StreamOptions:
    """Selects a range of log entries by hash, and how many of them to return.

    ``amount`` of ``None`` or ``0`` means one entry; a negative amount means all of them.
    """

    gt: str | None = None
    gte: str | None = None
    lt: str | None = None
    lte: str | None = None
    amount: int | None = None


def _read(entries: Sequence[Any], start_hash: str | None, amount: int, inclusive: bool) -> list[Any]:
    """Take ``amount`` entries starting at ``start_hash``, or at the beginning if it is absent."""
    start = next((i for i, e in enumerate(entries) if e.hash == start_hash), 0)
    if not inclusive:
        start += 1
    return list(entries[start:start + amount])


class EventLogStore(BaseStore):
    """A store whose entries form an ordered log of events."""

    def __init__(self, address: str, options: StoreOptions) -> None:
        options.index = EventIndex
        super().__init__(address, options)

    @property
    def type(self) -> str:
        return "eventlog"

    def add(self, value: bytes) -> Operation:
        """Append an event and return the operation that was written."""
        entry = self.add_operation(Operation(op="ADD", value=value))
        return parse_operation(entry)

    def get(self, cid: str) -> Operation:
        """Return the operation stored at the given hash."""
        found = next(self.stream(StreamOptions(gte=cid, amount=1)), None)
        if found is None:
            raise LookupError(f"no entry found for {cid}")
        return found

    def stream(self, options: StreamOptions | None = None) -> Iterator[Operation]:
        """Yield the operations selected by ``options``, oldest first."""
        messages = self._query(options)
        return (parse_operation(message) for message in messages)

    def list(self, options: StreamOptions | None = None) -> list[Operation]:
        """Return the operations selected by ``options``, oldest first."""
        return list(self.stream(options))

    def _query(self, options: StreamOptions | None) -> list[Any]:
        if options is None:
            options = StreamOptions()

        events = self.index.get("")
        if events is None:
            return []
        events = list(events)

        if options.amount is None or options.amount == 0:
            amount = 1
        elif options.amount > -1:
            amount = options.amount
        else:
            amount = len(events)

        if options.gt is not None or options.gte is not None:
            start = options.gt if options.gt is not None else options.gte
            return _read(events, start, amount, options.gte is not None)

        start = options.lt if options.lt is not None else options.lte
        inclusive = options.lte is not None or options.lt is None
        # Lower-than and last-N: search newest first, then restore log order.
        result = _read(events[::-1], start, amount, inclusive)
        result.reverse()
        return result