"""A document store indexing documents by a key extracted from each of them."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .basestore import BaseStore, StoreOptions
from .indexes import DocumentIndex
from .operation import Operation, operation_with_documents, parse_operation


@dataclass
class DocumentStoreOptions:
    """How documents are serialized, deserialized, created and keyed."""

    marshal: Callable[[Any], bytes] | None = None
    unmarshal: Callable[[bytes, Any], Any] | None = None
    key_extractor: Callable[[Any], str] | None = None
    item_factory: Callable[[], Any] | None = None


@dataclass
class GetOptions:
    """Options for looking documents up by key."""

    case_insensitive: bool = False
    partial_matches: bool = False


def _json_marshal(document: Any) -> bytes:
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _json_unmarshal(data: bytes, item: Any) -> Any:
    value = json.loads(data)
    if isinstance(item, dict) and isinstance(value, dict):
        item.update(value)
        return item
    return value


def map_key_extractor(key_field: str) -> Callable[[Any], str]:
    """Return a function reading a document's key from the mapping field ``key_field``."""

    def extract(obj: Any) -> str:
        if not isinstance(obj, Mapping):
            raise TypeError("can't extract key from something else than a mapping entry")
        if key_field not in obj:
            raise KeyError(f"missing value for field `{key_field}` in entry")
        key = obj[key_field]
        if not isinstance(key, str):
            raise TypeError(f"value for field `{key_field}` is not a string")
        return key

    return extract


def default_store_options_for_map(key_field: str) -> DocumentStoreOptions:
    """Options storing mappings as JSON, keyed by ``key_field``."""
    return DocumentStoreOptions(
        marshal=_json_marshal,
        unmarshal=_json_unmarshal,
        key_extractor=map_key_extractor(key_field),
        item_factory=dict,
    )


class DocumentStore(BaseStore):
    """A store of documents, each stored under the key extracted from it."""

    def __init__(
        self,
        address: str,
        options: StoreOptions,
        document_options: DocumentStoreOptions | None = None,
    ) -> None:
        if document_options is None:
            document_options = default_store_options_for_map("_id")
        if document_options.marshal is None:
            raise ValueError("missing value for option marshal")
        if document_options.unmarshal is None:
            raise ValueError("missing value for option unmarshal")
        if document_options.item_factory is None:
            raise ValueError("missing value for option item_factory")
        if document_options.key_extractor is None:
            raise ValueError("missing value for option key_extractor")
        self.document_options = document_options
        options.index = lambda _public_key: DocumentIndex(document_options)
        super().__init__(address, options)

    @property
    def type(self) -> str:
        return "docstore"

    def _decode(self, data: bytes, key: str) -> Any:
        opts = self.document_options
        try:
            return opts.unmarshal(data, opts.item_factory())
        except (TypeError, ValueError) as exc:
            raise ValueError(f"unable to unmarshal value for key {key}") from exc

    def _extract_key(self, document: Any) -> str:
        try:
            return self.document_options.key_extractor(document)
        except (TypeError, KeyError, ValueError) as exc:
            raise ValueError("unable to extract key from value") from exc

    def _marshal(self, document: Any) -> bytes:
        try:
            return self.document_options.marshal(document)
        except (TypeError, ValueError) as exc:
            raise ValueError("unable to marshal value") from exc

    def get(self, key: str, options: GetOptions | None = None) -> list[Any]:
        """Return the documents whose key matches ``key``."""
        if options is None:
            options = GetOptions()
        multiple_terms = " " in key
        if multiple_terms:
            key = key.replace(".", " ")
        if options.case_insensitive:
            key = key.lower()

        index = self.index
        documents = []
        for index_key in index.keys():
            candidate = index_key
            if options.case_insensitive:
                candidate = candidate.lower()
                if multiple_terms:
                    candidate = candidate.replace(".", " ")

            if options.partial_matches:
                if key not in candidate:
                    continue
            elif candidate != key:
                continue

            value = index.get(index_key)
            if value is None:
                raise LookupError(f"value not found for key {index_key}")
            documents.append(self._decode(value, index_key))
        return documents

    def put(self, document: Any) -> Operation:
        """Store a document and return the operation written."""
        key = self._extract_key(document)
        data = self._marshal(document)
        entry = self.add_operation(Operation(key=key, op="PUT", value=data))
        return parse_operation(entry)

    def delete(self, key: str) -> Operation:
        """Remove the document stored under ``key`` and return the operation written."""
        if self.index.get(key) is None:
            raise LookupError(f"no entry with key '{key}' in database")
        entry = self.add_operation(Operation(key=key, op="DEL"))
        return parse_operation(entry)

    def put_batch(self, values: Iterable[Any]) -> Operation:
        """Store each document as its own operation and return the last one."""
        values = list(values)
        if not values:
            raise ValueError("nothing to add to the store")
        op = None
        for value in values:
            op = self.put(value)
        return op

    def put_all(self, values: Iterable[Any]) -> Operation:
        """Store all documents as a single operation and return it."""
        to_add: dict[str, bytes] = {}
        for value in values:
            try:
                key = self.document_options.key_extractor(value)
            except (TypeError, KeyError, ValueError) as exc:
                raise ValueError("one of the provided documents has no index key") from exc
            try:
                to_add[key] = self.document_options.marshal(value)
            except (TypeError, ValueError) as exc:
                raise ValueError("unable to marshal one of the provided documents") from exc
        entry = self.add_operation(operation_with_documents("", "PUTALL", to_add))
        return parse_operation(entry)

    def query(self, filter: Callable[[Any], bool]) -> list[Any]:
        """Return the documents for which ``filter`` returns true."""
        index = self.index
        documents = []
        for index_key in index.keys():
            raw = index.get(index_key)
            if raw is None:
                continue
            value = self._decode(raw, index_key)
            try:
                keep = filter(value)
            except Exception as exc:
                raise RuntimeError("error while filtering value") from exc
            if keep:
                documents.append(value)
        return documents