"""
Transfer Message Format

Design Decision: Chunk Wire Format
==================================

Options Considered:
1. Metadata JSON message followed by a separate binary message
   - Two messages per chunk; on an unordered channel the pair can split up

2. Base64 payload inside JSON
   - One text message, but 33% larger

3. One binary message: length-prefixed JSON header + raw payload
   - Self-describing, binary-safe, one message per segment

Decision: Option 3
- Works unchanged on the direct channel (one data channel message) and on
  the relay (where transport/framing.py adds an outer length prefix)
- Header is plain JSON, easy to debug

Message Format:
```
+--------------------+----------------+-----------------+
| Header length (4B) | Header (JSON)  | Payload (binary)|
+--------------------+----------------+-----------------+

CHUNK header:
{
    "type": "CHUNK",
    "transferId": "...",
    "fileName": "report.pdf",
    "mimeType": "application/pdf",
    "totalSize": 10000,
    "totalChunks": 3,
    "chunkSize": 4096,
    "chunkIndex": 2,
    "chunkLength": 1808,
    "checksum": "<sha256 hex of the whole chunk>",
    "offset": 0
}
```
"""

import asyncio
import json
import struct
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..errors import PeerDropError, ProtocolError
from ..file.metadata import TransferMetadata

logger = logging.getLogger(__name__)

HEADER_LENGTH = struct.Struct('>I')
MAX_HEADER_SIZE = 64 * 1024


class TransferMessageType(Enum):
    """Transfer protocol message types."""
    # Data
    START = "START"
    CHUNK = "CHUNK"

    # Control
    ACK = "ACK"
    CANCEL = "CANCEL"
    ERROR = "ERROR"


@dataclass
class TransferMessage:
    """A transfer protocol message."""
    type: TransferMessageType
    headers: Dict[str, Any] = field(default_factory=dict)
    data: bytes = b''

    @property
    def transfer_id(self) -> str:
        return self.headers.get('transferId', '')

    def to_bytes(self) -> bytes:
        """Serialize message to bytes."""
        header_dict = {'type': self.type.value, **self.headers}
        header_bytes = json.dumps(header_dict, separators=(',', ':')).encode('utf-8')
        return HEADER_LENGTH.pack(len(header_bytes)) + header_bytes + self.data

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'TransferMessage':
        """
        Parse one message.

        Raises:
            ProtocolError: truncated, oversized, or non-JSON header, unknown type
        """
        if len(raw) < HEADER_LENGTH.size:
            raise ProtocolError(f"Message too short: {len(raw)} bytes")

        (header_length,) = HEADER_LENGTH.unpack_from(raw)
        if header_length > MAX_HEADER_SIZE:
            raise ProtocolError(f"Header too large: {header_length}")

        end = HEADER_LENGTH.size + header_length
        if len(raw) < end:
            raise ProtocolError(f"Truncated header: need {end} bytes, have {len(raw)}")

        try:
            header_dict = json.loads(bytes(raw[HEADER_LENGTH.size:end]).decode('utf-8'))
        except (ValueError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Malformed header: {e}") from e

        if not isinstance(header_dict, dict):
            raise ProtocolError("Header is not an object")

        try:
            msg_type = TransferMessageType(header_dict.pop('type'))
        except (ValueError, KeyError) as e:
            raise ProtocolError(f"Unknown message type: {e}") from e

        return cls(type=msg_type, headers=header_dict, data=bytes(raw[end:]))

    # === Builders ===

    @classmethod
    def start(cls, metadata: TransferMetadata) -> 'TransferMessage':
        return cls(TransferMessageType.START, metadata_to_headers(metadata))

    @classmethod
    def chunk(cls, metadata: TransferMetadata, index: int, checksum: str,
              chunk_length: int, offset: int, data: bytes) -> 'TransferMessage':
        headers = metadata_to_headers(metadata)
        headers.update({
            'chunkIndex': index,
            'chunkLength': chunk_length,
            'checksum': checksum,
            'offset': offset,
        })
        return cls(TransferMessageType.CHUNK, headers, data)

    @classmethod
    def ack(cls, transfer_id: str) -> 'TransferMessage':
        return cls(TransferMessageType.ACK, {'transferId': transfer_id})

    @classmethod
    def cancel(cls, transfer_id: str, reason: str = "") -> 'TransferMessage':
        return cls(TransferMessageType.CANCEL, {'transferId': transfer_id, 'reason': reason})

    @classmethod
    def error(cls, transfer_id: str, error: PeerDropError) -> 'TransferMessage':
        return cls(TransferMessageType.ERROR, {'transferId': transfer_id, **error.to_dict()})


def metadata_to_headers(metadata: TransferMetadata) -> Dict[str, Any]:
    return {
        'transferId': metadata.transfer_id,
        'fileName': metadata.file_name,
        'mimeType': metadata.mime_type,
        'totalSize': metadata.total_size,
        'totalChunks': metadata.total_chunks,
        'chunkSize': metadata.chunk_size,
    }


def metadata_from_headers(headers: Dict[str, Any]) -> TransferMetadata:
    """
    Raises:
        ProtocolError: missing or ill-typed fields
    """
    try:
        metadata = TransferMetadata(
            file_name=str(headers['fileName']),
            mime_type=str(headers.get('mimeType') or 'application/octet-stream'),
            total_size=int(headers['totalSize']),
            total_chunks=int(headers['totalChunks']),
            chunk_size=int(headers['chunkSize']),
            transfer_id=str(headers['transferId']),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid transfer metadata: {e}") from e

    if metadata.total_size < 0 or metadata.total_chunks < 0 or metadata.chunk_size <= 0:
        raise ProtocolError(f"Invalid transfer metadata: {headers}")
    if metadata.total_chunks != (metadata.total_size + metadata.chunk_size - 1) // metadata.chunk_size:
        raise ProtocolError(
            f"totalChunks {metadata.total_chunks} inconsistent with "
            f"totalSize {metadata.total_size} / chunkSize {metadata.chunk_size}"
        )
    return metadata


async def receive_message(transport, token=None) -> Optional[TransferMessage]:
    """
    Next decoded message from a transport.

    Returns:
        The message, or None once the transport closed

    Raises:
        TransferCancelled: the token was cancelled while waiting
        ProtocolError: the message could not be decoded
    """
    if token is None:
        raw = await transport.receive()
    else:
        token.raise_if_cancelled()
        receiving = asyncio.ensure_future(transport.receive())
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({receiving, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (receiving, cancelled):
                if not waiter.done():
                    waiter.cancel()
        if not receiving.done() or receiving.cancelled():
            token.raise_if_cancelled()
        raw = receiving.result()

    if raw is None:
        return None
    return TransferMessage.from_bytes(raw)
