"""
Direct Transport

Peer-to-peer data channel negotiated by PeerSession (aiortc).

Properties of this channel:
- Messages are discrete but capped (64KB here; SCTP peers commonly
  advertise 64KB as their maximum message size)
- Opened unordered: the chunk indices, not the channel, carry ordering
- Congestion shows up as a growing `bufferedAmount` rather than an error;
  send() turns that into BufferFull so the sender can back off and shrink
  its segments instead of queueing without bound
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from aiortc.exceptions import InvalidStateError

from ..errors import BufferFull, SendFailed, TransportClosed, TransportUnavailable
from ..file.chunker import DIRECT_CHUNK_SIZE
from .base import Transport

logger = logging.getLogger(__name__)

DIRECT_MAX_MESSAGE_SIZE = 64 * 1024
HIGH_WATER_MARK = 1024 * 1024     # 1MB
LOW_WATER_MARK = 256 * 1024       # 256KB


class DirectTransport(Transport):
    """Transport over an RTCDataChannel."""

    kind = "direct"
    max_message_size = DIRECT_MAX_MESSAGE_SIZE
    default_chunk_size = DIRECT_CHUNK_SIZE

    def __init__(self, channel, high_water: int = HIGH_WATER_MARK,
                 low_water: int = LOW_WATER_MARK,
                 on_closed: Optional[Callable[[], Awaitable[None]]] = None):
        """
        Args:
            channel: aiortc RTCDataChannel (or an object with the same events)
            high_water: bufferedAmount above which send() raises BufferFull
            low_water: bufferedAmount at which wait_drained() returns
            on_closed: Coroutine run after the channel is closed locally,
                e.g. closing the owning peer connection
        """
        super().__init__()
        self.channel = channel
        self.high_water = high_water
        self.low_water = low_water
        self._on_closed = on_closed
        self._open_event = asyncio.Event()
        self._drained = asyncio.Event()
        self._drained.set()

        channel.bufferedAmountLowThreshold = low_water
        channel.on("open", self._handle_open)
        channel.on("message", self._handle_message)
        channel.on("close", self._handle_close)
        channel.on("bufferedamountlow", self._handle_drained)

        if channel.readyState == "open":
            self._open_event.set()

    @property
    def label(self) -> str:
        return getattr(self.channel, 'label', '')

    def _handle_open(self):
        logger.debug(f"Data channel {self.label!r} open")
        self._open_event.set()

    def _handle_message(self, message):
        if isinstance(message, str):
            logger.warning(f"Ignoring text message on data channel {self.label!r}")
            return
        self._deliver(bytes(message))

    def _handle_close(self):
        self._drained.set()
        self._remote_closed()

    def _handle_drained(self):
        self._drained.set()

    async def open(self, timeout: float = 10.0) -> None:
        if self._closed:
            raise TransportUnavailable("Data channel already closed")
        try:
            await asyncio.wait_for(self._open_event.wait(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransportUnavailable(
                f"Data channel did not open within {timeout:.0f}s"
            ) from e
        self._opened = True

    async def send(self, message: bytes) -> None:
        if self._closed or self.channel.readyState != "open":
            raise TransportClosed("Data channel is not open")
        if len(message) > self.max_message_size:
            raise SendFailed(
                f"Message of {len(message):,} bytes exceeds the data channel "
                f"limit of {self.max_message_size:,}"
            )
        if self.channel.bufferedAmount > self.high_water:
            self._drained.clear()
            raise BufferFull(
                f"Send buffer at {self.channel.bufferedAmount:,} bytes"
            )

        try:
            self.channel.send(message)
        except InvalidStateError as e:
            raise TransportClosed(f"Data channel send failed: {e}") from e
        self._record_sent(message)

    async def wait_drained(self, timeout: float = 5.0) -> bool:
        """
        Wait until bufferedAmount falls to the low-water mark.

        Returns:
            False if it didn't drain within timeout
        """
        if self.channel.bufferedAmount <= self.low_water:
            return True
        self._drained.clear()
        try:
            await asyncio.wait_for(self._drained.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _close(self) -> None:
        self.channel.close()
        if self._on_closed is not None:
            await self._on_closed()
