"""A channel between two peers built on a pubsub topic they both subscribe to.

The node given to :func:`new_channel_factory` provides ``self_id()`` returning its peer
identifier and a ``pubsub`` attribute with ``peers(topic)``, ``publish(topic, data)`` and
``subscribe(topic)``. A subscription provides ``next()`` returning a message with
``sender`` and ``data`` attributes (raising ``EOFError`` once closed) and ``close()``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from .events import EventEmitter, EventPubSubPayload

PROTOCOL = "ipfs-pubsub-direct-channel/v1"
POLL_INTERVAL = 0.1

_logger = logging.getLogger(__name__)


def channel_id(self_id: str, peer_id: str) -> str:
    """Return the topic shared by two peers, the same whichever side computes it."""
    first, second = sorted([peer_id, self_id])
    return f"/{PROTOCOL}/{first}/{second}"


class OneOnOneChannel(EventEmitter):
    """A pubsub topic carrying messages between two peers."""

    def __init__(
        self,
        ipfs: Any,
        topic: str,
        self_id: str,
        receiver_id: str,
        subscription: Any,
        logger: logging.Logger,
    ) -> None:
        super().__init__()
        self._ipfs = ipfs
        self.id = topic
        self.self_id = self_id
        self.receiver_id = receiver_id
        self._subscription = subscription
        self._logger = logger
        self._closed = threading.Event()
        self.poll_interval = POLL_INTERVAL
        threading.Thread(target=self._read_loop, name="one-on-one-reader", daemon=True).start()

    def connect(self) -> None:
        """Wait until the other peer is subscribed to the topic."""
        try:
            self._wait_for_peer()
        except Exception as exc:
            raise ConnectionError("unable to wait for peers") from exc

    def _wait_for_peer(self) -> None:
        while True:
            if self._closed.is_set():
                raise ConnectionError("channel is closed")
            try:
                peers = self._ipfs.pubsub.peers(self.id)
            except Exception:
                self._logger.error("failed to get peers on pub sub")
                raise
            if self.receiver_id in peers:
                return
            self._logger.debug("failed to get peer on pub sub, retrying")
            time.sleep(self.poll_interval)

    def send(self, data: bytes) -> None:
        """Publish a payload on the topic."""
        try:
            self._ipfs.pubsub.publish(self.id, data)
        except Exception as exc:
            raise RuntimeError("unable to publish data on pubsub") from exc

    def close(self) -> None:
        """Stop receiving, close subscriptions and the topic subscription."""
        self._closed.set()
        self.unsubscribe_all()
        try:
            self._subscription.close()
        except Exception as exc:
            self._logger.debug("unable to close subscription: %s", exc)

    def _read_loop(self) -> None:
        while not self._closed.is_set():
            try:
                message = self._subscription.next()
            except EOFError:
                return
            except Exception as exc:
                if self._closed.is_set():
                    return
                self._logger.error("unable to get pub sub message: %s", exc)
                continue
            if self._closed.is_set():
                return
            if message.sender == self.self_id:
                continue
            self.emit(EventPubSubPayload(message.data))


def new_channel_factory(ipfs: Any) -> Callable[..., OneOnOneChannel]:
    """Return a factory creating one-on-one channels from ``ipfs`` to other peers."""

    def factory(peer_id: str, logger: logging.Logger | None = None) -> OneOnOneChannel:
        log = logger or _logger
        try:
            self_id = ipfs.self_id()
        except Exception as exc:
            raise RuntimeError("unable to get key for self") from exc

        topic = channel_id(self_id, peer_id)
        log.debug("subscribing to %s", topic)
        try:
            subscription = ipfs.pubsub.subscribe(topic)
        except Exception as exc:
            raise RuntimeError("unable to subscribe to pubsub") from exc

        return OneOnOneChannel(ipfs, topic, self_id, peer_id, subscription, log)

    return factory