"""
Stream Framing

A TCP relay carries a continuous byte stream, so each logical message is
prefixed with its length:

```
+----------------+------------------+
| Length (4B BE) | Message bytes    |
+----------------+------------------+
```

`read_frame` works on an asyncio.StreamReader; `FrameDecoder` accepts
arbitrary slices of the stream (a frame may arrive split across reads,
or several frames in one read).
"""

import asyncio
import struct
import logging
from typing import List, Optional

from ..errors import ProtocolError

logger = logging.getLogger(__name__)

LENGTH = struct.Struct('>I')
MAX_FRAME_SIZE = 16 * 1024 * 1024  # 16MB


def encode_frame(payload: bytes) -> bytes:
    """Prefix a message with its 4-byte big-endian length."""
    if len(payload) > MAX_FRAME_SIZE:
        raise ValueError(f"Frame too large: {len(payload)}")
    return LENGTH.pack(len(payload)) + payload


async def read_frame(reader: asyncio.StreamReader) -> Optional[bytes]:
    """
    Read one frame from a stream.

    Returns:
        The frame payload, or None on clean EOF at a frame boundary

    Raises:
        ProtocolError: oversized frame, or EOF in the middle of a frame
    """
    try:
        length_bytes = await reader.readexactly(LENGTH.size)
    except asyncio.IncompleteReadError as e:
        if e.partial:
            raise ProtocolError("Stream ended inside a frame header") from e
        return None

    (length,) = LENGTH.unpack(length_bytes)
    if length > MAX_FRAME_SIZE:
        raise ProtocolError(f"Frame too large: {length}")

    try:
        return await reader.readexactly(length) if length else b''
    except asyncio.IncompleteReadError as e:
        raise ProtocolError(
            f"Stream ended inside a frame ({len(e.partial)}/{length} bytes)"
        ) from e


class FrameDecoder:
    """Incremental decoder: feed() stream bytes, get complete frames back."""

    def __init__(self, max_frame_size: int = MAX_FRAME_SIZE):
        self.max_frame_size = max_frame_size
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Bytes buffered that don't yet form a complete frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[bytes]:
        """
        Raises:
            ProtocolError: a frame header announces more than max_frame_size
        """
        self._buffer.extend(data)
        frames = []

        while len(self._buffer) >= LENGTH.size:
            (length,) = LENGTH.unpack_from(self._buffer)
            if length > self.max_frame_size:
                raise ProtocolError(f"Frame too large: {length}")
            end = LENGTH.size + length
            if len(self._buffer) < end:
                break
            frames.append(bytes(self._buffer[LENGTH.size:end]))
            del self._buffer[:end]

        return frames
