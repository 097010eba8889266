from collections import namedtuple

import pytest

from orbitkit.events import EventPubSubJoin, EventPubSubLeave, EventPubSubMessage
from orbitkit.raw_pubsub import PeerEventType, RawPubSub

PeerEvent = namedtuple("PeerEvent", "type peer")
Message = namedtuple("Message", "received_from data")


class Sequence:
    def __init__(self, items, error=EOFError):
        self.items = list(items)
        self.error = error

    def _pop(self):
        if self.items:
            return self.items.pop(0)
        raise self.error("done")

    next_peer_event = _pop
    next = _pop


class FakeTopic:
    def __init__(self):
        self.published = []
        self.peer_list = []
        self.peer_events = []
        self.messages = []
        self.fail_handler = False

    def publish(self, message):
        self.published.append(message)

    def list_peers(self):
        return list(self.peer_list)

    def event_handler(self):
        if self.fail_handler:
            raise OSError("no handler")
        return Sequence(self.peer_events)

    def subscribe(self):
        return Sequence(self.messages)


class FakeRouter:
    def __init__(self):
        self.joined = []
        self.topics = {}
        self.fail = False

    def join(self, name):
        if self.fail:
            raise OSError("join failed")
        self.joined.append(name)
        self.topics[name] = FakeTopic()
        return self.topics[name]


@pytest.fixture
def router():
    return FakeRouter()


@pytest.fixture
def ps(router):
    return RawPubSub(router, "self-peer")


def test_topic_joined_once(router, ps):
    first = ps.topic_subscribe("t")
    assert ps.topic_subscribe("t") is first
    assert router.joined == ["t"]
    assert first.topic == "t"


def test_join_failure_propagates(router, ps):
    router.fail = True
    with pytest.raises(OSError):
        ps.topic_subscribe("t")
    router.fail = False
    ps.topic_subscribe("t")
    assert router.joined == ["t"]


def test_publish_and_peers(router, ps):
    topic = ps.topic_subscribe("t")
    router.topics["t"].peer_list = ["a", "b"]
    topic.publish(b"msg")
    assert router.topics["t"].published == [b"msg"]
    assert topic.peers() == ["a", "b"]


def test_watch_peers_maps_events(router, ps):
    topic = ps.topic_subscribe("t")
    router.topics["t"].peer_events = [
        PeerEvent(PeerEventType.JOIN, "a"),
        PeerEvent("unknown", "x"),
        PeerEvent(PeerEventType.LEAVE, "a"),
    ]
    assert list(topic.watch_peers()) == [EventPubSubJoin("a"), EventPubSubLeave("a")]


def test_watch_peers_handler_failure(router, ps):
    topic = ps.topic_subscribe("t")
    router.topics["t"].fail_handler = True
    with pytest.raises(OSError):
        topic.watch_peers()


def test_watch_messages_skips_own(router, ps):
    topic = ps.topic_subscribe("t")
    router.topics["t"].messages = [
        Message("self-peer", b"mine"),
        Message("other", b"theirs"),
    ]
    assert list(topic.watch_messages()) == [EventPubSubMessage(b"theirs")]


def test_watch_messages_ends_on_error(router, ps):
    topic = ps.topic_subscribe("t")
    fake = router.topics["t"]
    fake.subscribe = lambda: Sequence([Message("other", b"one")], error=RuntimeError)
    assert list(topic.watch_messages()) == [EventPubSubMessage(b"one")]