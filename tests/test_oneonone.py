import queue
import threading
import time
from collections import namedtuple

import pytest

from orbitkit.events import EventPubSubPayload
from orbitkit.oneonone import channel_id, new_channel_factory

Message = namedtuple("Message", "sender data")
_END = object()


class FakeSubscription:
    def __init__(self, net, topic, owner):
        self.net, self.topic, self.owner = net, topic, owner
        self.queue = queue.Queue()

    def next(self):
        item = self.queue.get()
        if item is _END:
            raise EOFError
        return item

    def close(self):
        self.net.unsubscribe(self)
        self.queue.put(_END)


class FakeNet:
    def __init__(self):
        self.lock = threading.Lock()
        self.subs = []
        self.published = []

    def unsubscribe(self, sub):
        with self.lock:
            if sub in self.subs:
                self.subs.remove(sub)


class FakePubSub:
    def __init__(self, net, owner):
        self.net, self.owner = net, owner

    def peers(self, topic):
        with self.net.lock:
            return [s.owner for s in self.net.subs if s.topic == topic and s.owner != self.owner]

    def publish(self, topic, data):
        with self.net.lock:
            self.net.published.append((topic, data))
            targets = [s for s in self.net.subs if s.topic == topic]
        for s in targets:
            s.queue.put(Message(self.owner, data))

    def subscribe(self, topic):
        sub = FakeSubscription(self.net, topic, self.owner)
        with self.net.lock:
            self.net.subs.append(sub)
        return sub


class FakeNode:
    def __init__(self, net, peer_id):
        self.peer_id = peer_id
        self.pubsub = FakePubSub(net, peer_id)

    def self_id(self):
        return self.peer_id


class BrokenNode:
    def __init__(self, fail):
        self.fail = fail
        self.pubsub = self

    def self_id(self):
        if self.fail == "self":
            raise OSError("no key")
        return "me"

    def subscribe(self, topic):
        if self.fail == "subscribe":
            raise OSError("no pubsub")
        return FakeSubscription(FakeNet(), topic, "me")

    def peers(self, topic):
        raise OSError("no peers")

    def publish(self, topic, data):
        raise OSError("publish failed")


def test_channel_id_format():
    assert channel_id("peerB", "peerA") == "/ipfs-pubsub-direct-channel/v1/peerA/peerB"


def test_channel_id_symmetric():
    assert channel_id("x1", "y2") == channel_id("y2", "x1")


def test_channels_exchange_payloads():
    net = FakeNet()
    ch_a = new_channel_factory(FakeNode(net, "A"))("B")
    ch_b = new_channel_factory(FakeNode(net, "B"))("A")
    assert ch_a.id == ch_b.id
    ch_a.connect()
    ch_b.connect()
    sub_a, sub_b = ch_a.subscribe(), ch_b.subscribe()
    ch_a.send(b"hello")
    assert sub_b.get(timeout=2) == EventPubSubPayload(b"hello")
    with pytest.raises(queue.Empty):
        sub_a.get(timeout=0.2)
    ch_a.close()
    ch_b.close()


def test_connect_waits_for_peer():
    net = FakeNet()
    ch_a = new_channel_factory(FakeNode(net, "A"))("B")
    ch_a.poll_interval = 0.01
    sub_a = ch_a.subscribe()
    done = threading.Event()

    def run():
        ch_a.connect()
        done.set()

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    time.sleep(0.1)
    assert not done.is_set()
    ch_b = new_channel_factory(FakeNode(net, "B"))("A")
    thread.join(timeout=2)
    assert done.is_set()
    ch_b.send(b"ping")
    assert sub_a.get(timeout=2) == EventPubSubPayload(b"ping")
    ch_a.close()
    ch_b.close()


def test_connect_fails_when_peers_fail():
    channel = new_channel_factory(BrokenNode("peers"))("B")
    with pytest.raises(ConnectionError, match="unable to wait for peers"):
        channel.connect()
    channel.close()


def test_connect_fails_when_closed():
    net = FakeNet()
    channel = new_channel_factory(FakeNode(net, "A"))("B")
    channel.close()
    with pytest.raises(ConnectionError):
        channel.connect()


def test_self_key_failure():
    with pytest.raises(RuntimeError, match="unable to get key for self"):
        new_channel_factory(BrokenNode("self"))("B")


def test_subscribe_failure():
    with pytest.raises(RuntimeError, match="unable to subscribe to pubsub"):
        new_channel_factory(BrokenNode("subscribe"))("B")


def test_send_failure():
    channel = new_channel_factory(BrokenNode("publish"))("B")
    with pytest.raises(RuntimeError, match="unable to publish data on pubsub"):
        channel.send(b"data")
    channel.close()


def test_send_publishes_on_channel_topic():
    net = FakeNet()
    channel = new_channel_factory(FakeNode(net, "A"))("B")
    channel.send(b"payload")
    assert net.published == [(channel_id("A", "B"), b"payload")]
    channel.close()


def test_close_ends_subscriptions():
    net = FakeNet()
    channel = new_channel_factory(FakeNode(net, "A"))("B")
    sub = channel.subscribe()
    channel.close()
    with pytest.raises(EOFError):
        sub.get(timeout=1)
    assert net.subs == []