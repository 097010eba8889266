from dataclasses import dataclass, field

import pytest

from orbitkit.indexes import BaseIndex, DocumentIndex, EventIndex, KeyValueIndex
from orbitkit.operation import Operation, operation_with_documents


@dataclass
class FakeEntry:
    hash: str
    payload: bytes


@dataclass
class FakeLog:
    values: list = field(default_factory=list)


def make_log(*operations):
    return FakeLog([FakeEntry(f"h{i}", op.marshal()) for i, op in enumerate(operations)])


def test_base_index_holds_all_entries():
    log = make_log(Operation(op="ADD", value=b"one"), Operation(op="ADD", value=b"two"))
    index = BaseIndex(b"public")
    assert index.get("") == []
    index.update_index(log, [])
    assert index.get("anything") == log.values


def test_event_index_before_and_after_update():
    index = EventIndex()
    assert index.get("") is None
    log = make_log(Operation(op="ADD", value=b"hello"))
    index.update_index(log, [])
    assert index.get("") == log.values
    log.values.append(FakeEntry("later", Operation(op="ADD").marshal()))
    assert len(index.get("")) == len(log.values)


def test_kv_latest_put_wins():
    log = make_log(
        Operation(key="key1", op="PUT", value=b"hello3"),
        Operation(key="key1", op="PUT", value=b"hello4"),
    )
    index = KeyValueIndex()
    index.update_index(log, [])
    assert index.get("key1") == b"hello4"


def test_kv_multiple_keys():
    log = make_log(
        Operation(key="key1", op="PUT", value=b"hello1"),
        Operation(key="key2", op="PUT", value=b"hello2"),
        Operation(key="key3", op="PUT", value=b"hello3"),
    )
    index = KeyValueIndex()
    index.update_index(log, [])
    assert [index.get(k) for k in ("key1", "key2", "key3")] == [b"hello1", b"hello2", b"hello3"]
    assert sorted(index) == ["key1", "key2", "key3"]
    assert len(index) == 3


def test_kv_delete_after_updates():
    log = make_log(
        Operation(key="key1", op="PUT", value=b"hello1"),
        Operation(key="key1", op="PUT", value=b"hello2"),
        Operation(key="key1", op="DEL"),
    )
    index = KeyValueIndex()
    index.update_index(log, [])
    assert index.get("key1") is None
    assert "key1" not in index


def test_kv_ignores_entries_without_key():
    log = make_log(Operation(op="ADD", value=b"x"))
    index = KeyValueIndex()
    index.update_index(log, [])
    assert len(index) == 0


def test_kv_invalid_payload_raises():
    index = KeyValueIndex()
    with pytest.raises(ValueError, match="unable to parse log kv operation"):
        index.update_index(FakeLog([FakeEntry("bad", b"not json")]), [])


def test_document_put_and_delete():
    log = make_log(
        Operation(key="doc1", op="PUT", value=b'{"_id":"doc1"}'),
        Operation(key="doc2", op="PUT", value=b'{"_id":"doc2"}'),
        Operation(key="doc1", op="DEL"),
    )
    index = DocumentIndex()
    index.update_index(log, [])
    assert index.keys() == ["doc2"]
    assert index.get("doc2") == b'{"_id":"doc2"}'
    assert index.get("doc1") is None


def test_document_putall_adds_every_document():
    docs = {"a": b'{"_id":"a"}', "b": b'{"_id":"b"}'}
    index = DocumentIndex()
    index.update_index(make_log(operation_with_documents("", "PUTALL", docs)), [])
    assert sorted(index.keys()) == ["a", "b"]
    assert {k: index.get(k) for k in index.keys()} == docs


def test_document_skips_empty_keys():
    log = make_log(Operation(key="", op="PUT", value=b"{}"), Operation(op="PUT", value=b"{}"))
    index = DocumentIndex()
    index.update_index(log, [])
    assert index.keys() == []


def test_document_invalid_payload_raises():
    index = DocumentIndex()
    with pytest.raises(ValueError, match="documentstore"):
        index.update_index(FakeLog([FakeEntry("bad", b"[1")]), [])