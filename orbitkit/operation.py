"""Serializable CRDT operations stored as the payload of log entries."""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

# Characters the reference JSON encoder escapes inside strings.
_JSON_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


def _encode_json(obj: Any) -> bytes:
    text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    for char, escaped in _JSON_ESCAPES:
        text = text.replace(char, escaped)
    return text.encode("utf-8")


def _encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _decode_bytes(raw: Any, name: str) -> bytes | None:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ValueError(f"unable to parse operation json: field {name!r} is not a string")
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"unable to parse operation json: field {name!r} is not base64") from exc


def _field(obj: Mapping[str, Any], name: str) -> Any:
    """Look a field up by exact name, then case-insensitively."""
    if name in obj:
        return obj[name]
    for key, value in obj.items():
        if key.lower() == name:
            return value
    return None


def _optional_str(raw: Any, name: str) -> str | None:
    if raw is None or isinstance(raw, str):
        return raw
    raise ValueError(f"unable to parse operation json: field {name!r} is not a string")


@dataclass(frozen=True)
class OpDoc:
    """A single document carried by a batched operation."""

    key: str = ""
    value: bytes = b""

    def _to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.key:
            out["key"] = self.key
        if self.value:
            out["value"] = _encode_bytes(self.value)
        return out

    @classmethod
    def _from_json(cls, raw: Any) -> OpDoc:
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise ValueError("unable to parse operation json: document is not an object")
        key = _optional_str(_field(raw, "key"), "key") or ""
        value = _decode_bytes(_field(raw, "value"), "value") or b""
        return cls(key=key, value=value)


@dataclass
class Operation:
    """A CRDT operation: a name, an optional key, a payload and batched documents."""

    key: str | None = None
    op: str = ""
    value: bytes | None = None
    docs: list[OpDoc] = field(default_factory=list)
    entry: Any = field(default=None, compare=False, repr=False)

    def marshal(self) -> bytes:
        """Serialize the operation as compact JSON, omitting empty fields."""
        out: dict[str, Any] = {}
        if self.key is not None:
            out["key"] = self.key
        if self.op:
            out["op"] = self.op
        if self.value:
            out["value"] = _encode_bytes(self.value)
        if self.docs:
            out["docs"] = [doc._to_json() for doc in self.docs]
        return _encode_json(out)

    @classmethod
    def _from_json(cls, raw: Any) -> Operation:
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise ValueError("unable to parse operation json: not an object")
        key = _optional_str(_field(raw, "key"), "key")
        op = _optional_str(_field(raw, "op"), "op") or ""
        value = _decode_bytes(_field(raw, "value"), "value")
        raw_docs = _field(raw, "docs")
        if raw_docs is None:
            docs: list[OpDoc] = []
        elif isinstance(raw_docs, list):
            docs = [OpDoc._from_json(item) for item in raw_docs]
        else:
            raise ValueError("unable to parse operation json: docs is not a list")
        return cls(key=key, op=op, value=value, docs=docs)


def parse_operation(entry: Any) -> Operation:
    """Decode the operation held in a log entry's payload."""
    if entry is None:
        raise ValueError("an entry must be provided")
    try:
        raw = json.loads(entry.payload)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError("unable to parse operation json") from exc
    operation = Operation._from_json(raw)
    operation.entry = entry
    return operation


def operation_with_documents(key: str | None, op: str, docs: Mapping[str, bytes]) -> Operation:
    """Create an operation carrying a batch of documents."""
    return Operation(
        key=key,
        op=op,
        docs=[OpDoc(key=doc_key, value=doc_value) for doc_key, doc_value in docs.items()],
    )