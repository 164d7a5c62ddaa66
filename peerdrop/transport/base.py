"""
Transport Contract

Design Decision: Uniform Transport Interface
============================================

Two very different byte carriers sit under the transfer engine:
- a direct peer data channel (message-oriented, size-limited, unordered,
  signals congestion through its send buffer)
- a relayed TCP stream through the rendezvous host (ordered, reliable,
  but a continuous stream with no message boundaries)

The sender and receiver only ever see this contract:

    await transport.open(timeout)     # ready, or raises
    await transport.send(message)     # one discrete message
    await transport.receive()         # next message, None once closed
    transport.on_receive(callback)    # optional push-style delivery
    await transport.close()

Which implementation is used is decided once, when the connection is
opened (see PeerDropClient.connect); nothing downstream checks the type.

Delivery Guarantee:
Incoming messages are pushed into a per-transport asyncio.Queue by the
implementation's reader (`_deliver`). Each message is delivered at most
once, in the order the underlying transport produced it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ReceiveCallback = Callable[[bytes], None]

_CLOSED = object()


class Transport(ABC):
    """Abstract message transport between two peers."""

    kind = "abstract"
    max_message_size = 0  # 0 means unlimited
    default_chunk_size = 0

    def __init__(self):
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._callback: Optional[ReceiveCallback] = None
        self._closed = False
        self._opened = False

        # Statistics
        self.messages_sent = 0
        self.bytes_sent = 0
        self.messages_received = 0
        self.bytes_received = 0

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    async def open(self, timeout: float = 10.0) -> None:
        """
        Wait until the transport can carry messages.

        Raises:
            TransportUnavailable or asyncio.TimeoutError
        """

    @abstractmethod
    async def send(self, message: bytes) -> None:
        """
        Send one message.

        Raises:
            BufferFull: congestion, try again later (possibly smaller)
            TransportClosed: the transport is gone
        """

    @abstractmethod
    async def _close(self) -> None:
        """Release the implementation's resources."""

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._close()
        finally:
            self._incoming.put_nowait(_CLOSED)
            logger.debug(f"{self.kind} transport closed")

    async def wait_drained(self, timeout: float = 5.0) -> bool:
        """Wait for queued outgoing data to drain. Streams drain on every send."""
        return True

    def on_receive(self, callback: Optional[ReceiveCallback]):
        """
        Register a push-style receiver.

        While a callback is set, messages bypass the queue and `receive()`
        only reports closure.
        """
        self._callback = callback

    async def receive(self) -> Optional[bytes]:
        """Next incoming message, or None once the transport closed."""
        item = await self._incoming.get()
        if item is _CLOSED:
            # Keep reporting closure to any later caller
            self._incoming.put_nowait(_CLOSED)
            return None
        return item

    def _deliver(self, message: bytes):
        """Called by implementations for every message read off the wire."""
        if self._closed:
            return
        self.messages_received += 1
        self.bytes_received += len(message)
        if self._callback is not None:
            try:
                self._callback(message)
            except Exception as e:
                logger.error(f"Receive callback failed: {e}")
            return
        self._incoming.put_nowait(message)

    def _record_sent(self, message: bytes):
        self.messages_sent += 1
        self.bytes_sent += len(message)

    def _remote_closed(self):
        """Called by implementations when the peer or network closed the link."""
        if not self._closed:
            self._closed = True
            self._incoming.put_nowait(_CLOSED)
            logger.info(f"{self.kind} transport closed by remote")

    def get_stats(self) -> dict:
        """Get transport statistics."""
        return {
            'kind': self.kind,
            'open': self.is_open,
            'messages_sent': self.messages_sent,
            'bytes_sent': self.bytes_sent,
            'messages_received': self.messages_received,
            'bytes_received': self.bytes_received,
        }
