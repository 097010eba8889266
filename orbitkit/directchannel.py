"""Direct peer-to-peer channels over streams opened between two hosts.

A host given to :func:`init_direct_channel_factory` provides:

* ``id``: the host's peer identifier, a string;
* ``new_stream(peer_id, protocol_id)``: open a stream to a peer;
* ``set_stream_handler_match(protocol, match, handler)``: for incoming streams whose
  protocol starts with ``protocol`` and for which ``match(protocol_id)`` is true, call
  ``handler(stream)``.

A stream provides ``read(n)`` (returning at most ``n`` bytes, ``b""`` at the end),
``write(data)`` and a ``protocol`` attribute naming its protocol id.
"""

from __future__ import annotations

import logging
import queue
import struct
import threading
from typing import Any, Callable

from .events import EventEmitter, EventPubSubPayload

PROTOCOL = "/go-orbit-db/ipfs-direct-channel/1.0.0"
CONNECT_TIMEOUT = 5.0
_MAX_PAYLOAD = 0xFFFF
_HEADER = struct.Struct("<H")

_logger = logging.getLogger(__name__)


def _read_exactly(stream: Any, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = stream.read(size - len(buf))
        if not chunk:
            raise EOFError("stream closed")
        buf += chunk
    return bytes(buf)


class _ChannelHolder:
    """Tracks the incoming streams that channels of one host are waiting for."""

    def __init__(self, host: Any) -> None:
        self.host = host
        self._expected: dict[str, queue.Queue] = {}
        self._lock = threading.Lock()

    @staticmethod
    def protocol_id(peer_id: str) -> str:
        return f"{PROTOCOL}/{peer_id}"

    def expect(self, protocol_id: str) -> None:
        with self._lock:
            self._expected[protocol_id] = queue.Queue()

    def forget(self, protocol_id: str) -> None:
        with self._lock:
            self._expected.pop(protocol_id, None)

    def expected_queue(self, protocol_id: str) -> queue.Queue | None:
        with self._lock:
            return self._expected.get(protocol_id)

    def check_expected_stream(self, protocol_id: str) -> bool:
        with self._lock:
            return protocol_id in self._expected

    def incoming_stream(self, stream: Any) -> None:
        waiting = self.expected_queue(stream.protocol)
        if waiting is not None:
            waiting.put(stream)

    def new_channel(self, receiver: str, logger: logging.Logger | None = None) -> DirectChannel:
        channel = DirectChannel(self, receiver, logger or _logger)
        if self.host.id < receiver:
            self.expect(self.protocol_id(receiver))
        return channel


class DirectChannel(EventEmitter):
    """A channel to one peer; received payloads are emitted as EventPubSubPayload."""

    def __init__(self, holder: _ChannelHolder, receiver: str, logger: logging.Logger) -> None:
        super().__init__()
        self._holder = holder
        self.receiver_id = receiver
        self._logger = logger
        self._stream: Any = None
        self._stream_lock = threading.Lock()
        self.connect_timeout = CONNECT_TIMEOUT

    @property
    def _waits_for_incoming(self) -> bool:
        return self._holder.host.id < self.receiver_id

    def send(self, data: bytes) -> None:
        """Send a payload prefixed with its length as two little-endian bytes."""
        with self._stream_lock:
            stream = self._stream
        if stream is None:
            raise ConnectionError("stream is not opened")
        if len(data) > _MAX_PAYLOAD:
            raise ValueError("payload is too large")
        stream.write(_HEADER.pack(len(data)))
        stream.write(bytes(data))

    def close(self) -> None:
        """Forget the stream; later sends fail."""
        with self._stream_lock:
            self._stream = None
        if self._waits_for_incoming:
            self._holder.forget(self._holder.protocol_id(self.receiver_id))

    def connect(self) -> None:
        """Open the stream to the peer, or wait for the peer to open it, then start reading."""
        holder = self._holder
        if self._waits_for_incoming:
            waiting = holder.expected_queue(holder.protocol_id(self.receiver_id))
            if waiting is None:
                raise ConnectionError("unable to create stream: channel is closed")
            try:
                stream = waiting.get(timeout=self.connect_timeout)
            except queue.Empty:
                raise TimeoutError("unable to create stream: timed out") from None
        else:
            stream = holder.host.new_stream(self.receiver_id, holder.protocol_id(holder.host.id))

        with self._stream_lock:
            self._stream = stream

        threading.Thread(
            target=self._read_loop, args=(stream,), name="direct-channel-reader", daemon=True
        ).start()

    def _read_loop(self, stream: Any) -> None:
        while True:
            try:
                size = _HEADER.unpack(_read_exactly(stream, _HEADER.size))[0]
                data = _read_exactly(stream, size)
            except EOFError:
                return
            except OSError as exc:
                self._logger.error("error while receiving event: %s", exc)
                return
            self.emit(EventPubSubPayload(data))


def init_direct_channel_factory(host: Any) -> Callable[..., DirectChannel]:
    """Register the direct channel protocol on ``host`` and return a channel factory."""
    holder = _ChannelHolder(host)
    host.set_stream_handler_match(PROTOCOL, holder.check_expected_stream, holder.incoming_stream)
    return holder.new_channel