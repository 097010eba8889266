"""A key-value store."""

from __future__ import annotations

from .basestore import BaseStore, StoreOptions
from .indexes import KeyValueIndex
from .operation import Operation, parse_operation


class KeyValueStore(BaseStore):
    """A store mapping string keys to byte values."""

    def __init__(self, address: str, options: StoreOptions) -> None:
        options.index = KeyValueIndex
        super().__init__(address, options)

    @property
    def type(self) -> str:
        return "keyvalue"

    def all(self) -> dict[str, bytes | None]:
        """Return a copy of every key and its value."""
        index = self.index
        if not isinstance(index, KeyValueIndex):
            return {}
        return {key: index.get(key) for key in index}

    def put(self, key: str, value: bytes) -> Operation:
        """Set ``key`` to ``value`` and return the operation written."""
        entry = self.add_operation(Operation(key=key, op="PUT", value=value))
        return parse_operation(entry)

    def delete(self, key: str) -> Operation:
        """Remove ``key`` and return the operation written."""
        entry = self.add_operation(Operation(key=key, op="DEL"))
        return parse_operation(entry)

    def get(self, key: str) -> bytes | None:
        """Return the value of ``key``, or ``None`` if it is not set."""
        return self.index.get(key)