"""
Relayed Transport

Ordered, reliable fallback channel: a TCP stream to the RelayServer,
which pipes it to the other party holding the same code. Every message is
length-prefixed (framing.py) because the stream has no boundaries.
"""

import asyncio
import json
import logging
from typing import Optional

from ..errors import (
    CodeConflict, PeerDropError, ProtocolError, TransportClosed,
    TransportUnavailable, error_from_dict,
)
from ..file.chunker import RELAY_CHUNK_SIZE
from .base import Transport
from .framing import MAX_FRAME_SIZE, FrameDecoder, encode_frame, read_frame

logger = logging.getLogger(__name__)

READ_SIZE = 64 * 1024


class RelayTransport(Transport):
    """Transport over a RelayServer connection."""

    kind = "relay"
    max_message_size = MAX_FRAME_SIZE
    default_chunk_size = RELAY_CHUNK_SIZE

    def __init__(self, host: str, port: int, code: str, role: str):
        super().__init__()
        self.host = host
        self.port = port
        self.code = code
        self.role = role
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self._decoder = FrameDecoder()
        self._reader_task: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()

    async def open(self, timeout: float = 10.0) -> None:
        """
        Connect, join the code, and wait for the other party.

        Raises:
            CodeConflict: our role is already taken for this code
            TransportUnavailable: relay unreachable or the peer never arrived
        """
        try:
            self.reader, self.writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise TransportUnavailable(
                f"Relay {self.host}:{self.port} unreachable: {e}"
            ) from e

        try:
            self.writer.write(encode_frame(json.dumps({
                'type': 'join', 'code': self.code, 'role': self.role,
            }).encode('utf-8')))
            await self.writer.drain()
            await asyncio.wait_for(self._handshake(), timeout=timeout)
        except asyncio.TimeoutError as e:
            await self._abort()
            raise TransportUnavailable(
                f"No peer joined relay code {self.code} within {timeout:.0f}s"
            ) from e
        except PeerDropError:
            await self._abort()
            raise
        except (ConnectionError, OSError) as e:
            await self._abort()
            raise TransportUnavailable(f"Relay handshake failed: {e}") from e

        self._opened = True
        self._reader_task = asyncio.ensure_future(self._read_loop())
        logger.info(f"Relay transport ready for code {self.code} as {self.role}")

    async def _handshake(self):
        while True:
            frame = await read_frame(self.reader)
            if frame is None:
                raise TransportUnavailable("Relay closed the connection during handshake")
            try:
                message = json.loads(frame.decode('utf-8'))
            except (ValueError, UnicodeDecodeError) as e:
                raise ProtocolError(f"Invalid relay control frame: {e}") from e

            msg_type = message.get('type')
            if msg_type == 'joined':
                logger.debug(f"Joined relay code {self.code}, waiting for peer")
            elif msg_type == 'ready':
                return
            elif msg_type == 'error':
                error = error_from_dict(message)
                if isinstance(error, CodeConflict):
                    raise error
                raise TransportUnavailable(f"Relay refused: {error.message}")
            else:
                raise ProtocolError(f"Unexpected relay control frame: {msg_type!r}")

    async def _read_loop(self):
        try:
            while True:
                data = await self.reader.read(READ_SIZE)
                if not data:
                    break
                for frame in self._decoder.feed(data):
                    self._deliver(frame)
        except ProtocolError as e:
            logger.error(f"Corrupt relay stream: {e.message}")
        except (ConnectionError, OSError) as e:
            logger.warning(f"Relay connection lost: {e}")
        finally:
            if self._decoder.pending:
                logger.warning(f"Relay stream ended with {self._decoder.pending} "
                               f"bytes of an incomplete frame")
            self._remote_closed()
            if self.writer is not None:
                self.writer.close()

    async def send(self, message: bytes) -> None:
        if not self.is_open or self.writer.is_closing():
            raise TransportClosed("Relay transport is closed")

        async with self._send_lock:
            try:
                self.writer.write(encode_frame(message))
                await self.writer.drain()
            except (ConnectionError, OSError) as e:
                raise TransportClosed(f"Relay send failed: {e}") from e
        self._record_sent(message)

    async def _abort(self):
        if self.writer is not None:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _close(self) -> None:
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
        await self._abort()
