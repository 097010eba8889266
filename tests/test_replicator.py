import queue
from dataclasses import dataclass, field

import pytest

from orbitkit.replication import EventLoadAdded, EventLoadEnd, EventLoadProgress
from orbitkit.replicator import BATCH_SIZE, Replicator


@dataclass
class FakeEntry:
    hash: str
    payload: bytes = b""
    next: tuple = ()
    refs: tuple = ()


@dataclass
class FakeLog:
    values: list = field(default_factory=list)

    def get(self, h):
        return next((e for e in self.values if e.hash == h), None)


class FakeStore:
    def __init__(self, graph, known=()):
        self.graph = graph
        self.oplog = FakeLog(list(known))
        self.fetched = []

    def fetch_log(self, h, length):
        self.fetched.append((h, length))
        if h not in self.graph:
            raise KeyError(h)
        return FakeLog([self.graph[h]])


@pytest.fixture
def make_replicator():
    created = []

    def factory(store, concurrency=0, flush_interval=60.0):
        replicator = Replicator(store, concurrency, flush_interval=flush_interval)
        created.append(replicator)
        return replicator

    yield factory
    for replicator in created:
        replicator.stop()


def drain(sub):
    out = []
    while True:
        try:
            out.append(sub.get(timeout=0.05))
        except queue.Empty:
            return out


def chain_graph():
    return {
        "c": FakeEntry("c", next=("b",), refs=("a",)),
        "b": FakeEntry("b", next=("a",)),
        "a": FakeEntry("a"),
    }


def test_load_follows_next_and_refs(make_replicator):
    store = FakeStore(chain_graph())
    replicator = make_replicator(store)
    replicator.load(["c"])
    assert store.fetched == [("c", BATCH_SIZE), ("b", BATCH_SIZE), ("a", BATCH_SIZE)]
    assert replicator.get_queue() == []
    assert replicator.get_buffer_len() == 0


def test_load_emits_events(make_replicator):
    graph = chain_graph()
    store = FakeStore(graph)
    replicator = make_replicator(store)
    sub = replicator.subscribe()
    replicator.load(["c"])
    events = drain(sub)

    added = [e.hash for e in events if isinstance(e, EventLoadAdded)]
    assert added == ["c", "b", "a"]

    progress = [e for e in events if isinstance(e, EventLoadProgress)]
    assert [e.hash for e in progress] == ["c", "b", "a"]
    assert progress[0].latest is graph["c"]
    assert progress[0].id == ""
    assert progress[0].buffer_length == 1

    ends = [e for e in events if isinstance(e, EventLoadEnd)]
    fetched_entries = [entry for end in ends for log in end.logs for entry in log.values]
    assert [e.hash for e in fetched_entries] == ["c", "b", "a"]


def test_known_hashes_are_skipped(make_replicator):
    store = FakeStore(chain_graph(), known=[FakeEntry("a")])
    replicator = make_replicator(store)
    sub = replicator.subscribe()
    replicator.load(["a"])
    assert store.fetched == []
    assert drain(sub) == []


def test_duplicate_hashes_fetched_once(make_replicator):
    store = FakeStore({"a": FakeEntry("a")})
    replicator = make_replicator(store)
    replicator.load(["a", "a"])
    replicator.load(["a"])
    assert store.fetched == [("a", BATCH_SIZE)]


def test_fetch_error_is_not_raised(make_replicator):
    store = FakeStore({})
    replicator = make_replicator(store)
    sub = replicator.subscribe()
    replicator.load(["missing"])
    events = drain(sub)
    assert events == [EventLoadAdded("missing")]
    assert replicator.get_queue() == []
    assert replicator.get_buffer_len() == 0


def test_concurrency_limits_processing(make_replicator):
    store = FakeStore({"p": FakeEntry("p"), "q": FakeEntry("q")})
    replicator = make_replicator(store, concurrency=1)
    replicator.load(["p", "q"])
    assert store.fetched == [("p", BATCH_SIZE)]
    assert replicator.get_queue() == ["q"]


def test_flush_processes_leftover_queue(make_replicator):
    store = FakeStore({"p": FakeEntry("p"), "q": FakeEntry("q")})
    replicator = make_replicator(store, concurrency=1, flush_interval=0.05)
    sub = replicator.subscribe()
    replicator.load(["p", "q"])

    ended = set()
    while ended != {"p", "q"}:
        event = sub.get(timeout=5)
        if isinstance(event, EventLoadEnd):
            ended.update(e.hash for log in event.logs for e in log.values)

    assert sorted(h for h, _ in store.fetched) == ["p", "q"]
    assert replicator.get_queue() == []


def test_stopped_replicator_keeps_queue(make_replicator):
    store = FakeStore({"a": FakeEntry("a")})
    replicator = make_replicator(store)
    replicator.stop()
    replicator.load(["a"])
    assert store.fetched == []
    assert replicator.get_queue() == ["a"]