"""Pubsub topics backed directly by a gossip pubsub router.

The router given to :class:`RawPubSub` provides ``join(topic)`` returning a topic with
``publish(message)``, ``list_peers()``, ``event_handler()`` and ``subscribe()``. An event
handler provides ``next_peer_event()`` returning an event with ``type`` (a
:class:`PeerEventType`) and ``peer``; a subscription provides ``next()`` returning a
message with ``received_from`` and ``data``.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Iterator
from typing import Any

from .events import EventPubSubJoin, EventPubSubLeave, EventPubSubMessage

_logger = logging.getLogger(__name__)


class PeerEventType(enum.Enum):
    """Kinds of peer events reported by a topic's event handler."""

    JOIN = "join"
    LEAVE = "leave"


class RawTopic:
    """A joined pubsub topic."""

    def __init__(self, name: str, topic: Any, pubsub: RawPubSub) -> None:
        self.topic = name
        self._topic = topic
        self._ps = pubsub

    def publish(self, message: bytes) -> None:
        """Publish a message on the topic."""
        self._topic.publish(message)

    def peers(self) -> list[str]:
        """Return the peers currently on the topic."""
        return list(self._topic.list_peers())

    def watch_peers(self) -> Iterator[Any]:
        """Return an iterator of join and leave events for the topic."""
        handler = self._topic.event_handler()
        return self._peer_events(handler)

    def _peer_events(self, handler: Any) -> Iterator[Any]:
        while True:
            try:
                event = handler.next_peer_event()
            except EOFError as exc:
                self._ps.logger.debug("watch peers ended: %s", exc)
                return
            except Exception as exc:
                self._ps.logger.error("watch next peer event failed: %s", exc)
                return
            if event.type is PeerEventType.JOIN:
                yield EventPubSubJoin(event.peer)
            elif event.type is PeerEventType.LEAVE:
                yield EventPubSubLeave(event.peer)

    def watch_messages(self) -> Iterator[EventPubSubMessage]:
        """Subscribe to the topic and return an iterator of messages from other peers."""
        subscription = self._topic.subscribe()
        return self._messages(subscription)

    def _messages(self, subscription: Any) -> Iterator[EventPubSubMessage]:
        while True:
            try:
                message = subscription.next()
            except EOFError as exc:
                self._ps.logger.debug("watch message ended, topic %s: %s", self.topic, exc)
                return
            except Exception as exc:
                self._ps.logger.error(
                    "error while retrieving pubsub message, topic %s: %s", self.topic, exc
                )
                return
            if message.received_from == self._ps.id:
                continue
            yield EventPubSubMessage(message.data)


class RawPubSub:
    """Joins each topic once and hands out the joined topic."""

    def __init__(self, pubsub: Any, id: str, logger: logging.Logger | None = None) -> None:
        self.pubsub = pubsub
        self.id = id
        self.logger = logger or _logger
        self._topics: dict[str, RawTopic] = {}
        self._lock = threading.Lock()

    def topic_subscribe(self, topic: str) -> RawTopic:
        """Return the joined topic ``topic``, joining it on first use."""
        with self._lock:
            if topic not in self._topics:
                joined = self.pubsub.join(topic)
                self._topics[topic] = RawTopic(topic, joined, self)
            return self._topics[topic]