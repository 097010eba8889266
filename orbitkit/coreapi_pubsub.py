"""Pubsub topics backed by a node's pubsub API, with peers found by polling.

The API given to :class:`CoreAPIPubSub` has a ``pubsub`` attribute providing
``peers(topic)``, ``publish(topic, data)`` and ``subscribe(topic)``. A subscription
provides ``next()`` returning a message with ``sender`` and ``data`` attributes.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from typing import Any

from .events import EventPubSubJoin, EventPubSubLeave, EventPubSubMessage

_logger = logging.getLogger(__name__)


class CoreAPITopic:
    """A pubsub topic whose members are tracked by polling."""

    def __init__(self, topic: str, pubsub: CoreAPIPubSub) -> None:
        self.topic = topic
        self._ps = pubsub
        self._members: list[str] = []
        self._lock = threading.Lock()

    def publish(self, message: bytes) -> None:
        """Publish a message on the topic."""
        self._ps.api.pubsub.publish(self.topic, message)

    def peers(self) -> list[str]:
        """Return the members seen at the last poll."""
        with self._lock:
            return list(self._members)

    def _peers_diff(self) -> tuple[list[str], list[str]]:
        with self._lock:
            old = list(self._members)
        current = list(self._ps.api.pubsub.peers(self.topic))
        current_set, old_set = set(current), set(old)
        joining = [m for m in current if m not in old_set]
        leaving = [m for m in old if m not in current_set]
        with self._lock:
            self._members = current
        return joining, leaving

    def watch_peers(self) -> Iterator[Any]:
        """Yield join and leave events, polling the topic's peers until iteration stops."""
        while True:
            try:
                joining, leaving = self._peers_diff()
            except Exception as exc:
                self._ps.logger.error("unable to list topic peers: %s", exc)
                return
            for peer in joining:
                yield EventPubSubJoin(peer)
            for peer in leaving:
                yield EventPubSubLeave(peer)
            time.sleep(self._ps.poll_interval)

    def watch_messages(self) -> Iterator[EventPubSubMessage]:
        """Subscribe to the topic and return an iterator of messages from other peers."""
        subscription = self._ps.api.pubsub.subscribe(self.topic)
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
            if message.sender == self._ps.id:
                continue
            yield EventPubSubMessage(message.data)


class CoreAPIPubSub:
    """Hands out one topic object per topic name."""

    def __init__(
        self,
        api: Any,
        id: str,
        poll_interval: float,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api = api
        self.id = id
        self.poll_interval = poll_interval
        self.logger = logger or _logger
        self._topics: dict[str, CoreAPITopic] = {}
        self._lock = threading.Lock()

    def topic_subscribe(self, topic: str) -> CoreAPITopic:
        """Return the topic object for ``topic``, creating it on first use."""
        with self._lock:
            if topic not in self._topics:
                self._topics[topic] = CoreAPITopic(topic, self)
            return self._topics[topic]