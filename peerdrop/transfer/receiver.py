"""
File Receiver

Dispatches transfer messages from a Transport into the Assembler.

Receive Flow:
1. START opens the transfer buffer (a 0-chunk file completes right away)
2. CHUNK segments are merged by offset until the chunk is whole, then
   the chunk is handed to the Assembler
3. When every index is present the file is assembled and verified;
   the sender gets ACK on success, ERROR on a checksum failure

Any failure discards the partial file: there is no re-request protocol,
a corrupt or missing chunk fails the whole transfer.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional, Tuple

from ..errors import (
    ChecksumMismatch, PeerDropError, ProtocolError, TransferCancelled,
    TransportClosed, error_from_dict,
)
from ..file.assembler import Assembler
from ..file.metadata import Chunk, TransferMetadata
from ..transport.base import Transport
from .progress import ProgressCallback, ReceivedFile, TransferProgress
from .protocol import (
    TransferMessage, TransferMessageType, metadata_from_headers, receive_message,
)
from .retry import CancellationToken

logger = logging.getLogger(__name__)

# Finished transfer ids remembered to drop their late or duplicated messages
COMPLETED_HISTORY = 64
# Seconds without a chunk after which an abandoned buffer is dropped
STALE_AFTER = 300.0


@dataclass
class PartialChunk:
    """Segments of one chunk received so far, keyed by offset."""
    index: int
    length: int
    checksum: str
    segments: Dict[int, bytes] = field(default_factory=dict)

    def add(self, offset: int, data: bytes):
        if offset < 0 or offset + len(data) > self.length:
            raise ProtocolError(
                f"Segment [{offset}, {offset + len(data)}) outside chunk "
                f"{self.index} of {self.length} bytes"
            )
        self.segments.setdefault(offset, data)

    def complete_payload(self) -> Optional[bytes]:
        """The whole chunk once the segments cover [0, length) without gaps."""
        covered = 0
        for offset in sorted(self.segments):
            if offset > covered:
                return None
            covered = max(covered, offset + len(self.segments[offset]))
        if covered < self.length:
            return None
        payload = bytearray(self.length)
        for offset, data in self.segments.items():
            payload[offset:offset + len(data)] = data
        return bytes(payload)


class FileReceiver:
    """
    Receives one file at a time from a Transport.

    Usage:
        receiver = FileReceiver(transport, Assembler())
        received = await receiver.receive(on_progress=print)
    """

    def __init__(self, transport: Transport, assembler: Optional[Assembler] = None,
                 stale_after: float = STALE_AFTER):
        self.transport = transport
        self.assembler = assembler or Assembler()
        self.stale_after = stale_after
        self.token: Optional[CancellationToken] = None

        self._partials: Dict[Tuple[str, int], PartialChunk] = {}
        self._current: Optional[str] = None
        self._progress: Dict[str, TransferProgress] = {}
        self._finished: Deque[str] = deque(maxlen=COMPLETED_HISTORY)

        # Statistics
        self.files_received = 0
        self.segments_received = 0
        self.bytes_received = 0
        self.late_messages_dropped = 0

    def cancel(self, reason: str = "Cancelled by receiver"):
        if self.token is not None:
            self.token.cancel(reason)

    async def receive(self, on_progress: Optional[ProgressCallback] = None,
                      token: Optional[CancellationToken] = None) -> ReceivedFile:
        """
        Receive and assemble the next file.

        Returns:
            ReceivedFile

        Raises:
            TransportClosed: the transport closed before the file completed
            TransferCancelled: cancelled locally or by the sender
            ChecksumMismatch: the assembled file failed verification
            ProtocolError: the sender sent a malformed message
        """
        self.token = token = token or CancellationToken()
        try:
            while True:
                message = await receive_message(self.transport, token)
                if message is None:
                    raise TransportClosed("Sender closed the connection before the transfer completed")

                received = await self._dispatch(message, on_progress)
                if received is not None:
                    return received

        except TransferCancelled as e:
            self._cleanup()
            if token.cancelled:
                await self._send_control(TransferMessage.cancel(self._current or '', e.message))
            raise
        except (ChecksumMismatch, ProtocolError) as e:
            self._cleanup()
            logger.error(f"Transfer failed: {e.message}")
            await self._send_control(TransferMessage.error(self._current or '', e))
            raise
        except PeerDropError:
            self._cleanup()
            raise
        finally:
            self._current = None

    async def _dispatch(self, message: TransferMessage,
                        on_progress: Optional[ProgressCallback]) -> Optional[ReceivedFile]:
        if message.type == TransferMessageType.START:
            metadata = metadata_from_headers(message.headers)
            if self._already_finished(metadata.transfer_id, message):
                return None
            self.assembler.collect_stale(self.stale_after)
            self._current = metadata.transfer_id
            self.assembler.open_transfer(metadata.transfer_id, metadata)
            progress = self._progress_for(metadata)
            progress.phase = 'transferring'
            logger.info(f"Receiving {metadata.file_name} ({metadata.total_size:,} bytes, "
                        f"{metadata.total_chunks} chunks)")
            if on_progress:
                on_progress(progress)
            return await self._finish_if_complete(metadata.transfer_id, on_progress)

        if message.type == TransferMessageType.CHUNK:
            return await self._handle_chunk(message, on_progress)

        if message.type == TransferMessageType.CANCEL:
            reason = message.headers.get('reason') or "Cancelled by sender"
            logger.info(f"Sender cancelled the transfer: {reason}")
            raise TransferCancelled(reason)

        if message.type == TransferMessageType.ERROR:
            error = error_from_dict(message.headers)
            logger.error(f"Sender reported {error.kind}: {error.message}")
            self._cleanup()
            raise error

        logger.debug(f"Ignoring {message.type.value} on the receiving side")
        return None

    async def _handle_chunk(self, message: TransferMessage,
                            on_progress: Optional[ProgressCallback]) -> Optional[ReceivedFile]:
        headers = message.headers
        metadata = metadata_from_headers(headers)
        if self._already_finished(metadata.transfer_id, message):
            return None
        transfer_id = self._current = metadata.transfer_id
        try:
            index = int(headers['chunkIndex'])
            length = int(headers['chunkLength'])
            offset = int(headers['offset'])
            checksum = str(headers['checksum'])
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Invalid CHUNK header: {e}") from e
        if not 0 <= index < metadata.total_chunks:
            raise ProtocolError(f"Chunk index {index} out of range [0, {metadata.total_chunks})")

        self.segments_received += 1
        self.bytes_received += len(message.data)

        buffer = self.assembler.get_buffer(transfer_id)
        if buffer is not None and index in buffer.chunks:
            logger.debug(f"Segment for already complete chunk {index} ignored")
            return None

        key = (transfer_id, index)
        partial = self._partials.get(key)
        if partial is None:
            partial = PartialChunk(index=index, length=length, checksum=checksum)
            self._partials[key] = partial
        elif partial.length != length or partial.checksum != checksum:
            raise ProtocolError(f"Segments of chunk {index} disagree on its length or checksum")
        partial.add(offset, message.data)

        payload = partial.complete_payload()
        if payload is None:
            return None
        del self._partials[key]

        chunk = Chunk(index=index, total_chunks=metadata.total_chunks,
                      checksum=checksum, payload=payload)
        if self.assembler.add_chunk(transfer_id, chunk, metadata):
            progress = self._progress_for(metadata)
            progress.phase = 'transferring'
            progress.chunks_done = self.assembler.received_count(transfer_id)
            progress.bytes_done += chunk.size
            if on_progress:
                on_progress(progress)

        return await self._finish_if_complete(transfer_id, on_progress)

    async def _finish_if_complete(self, transfer_id: str,
                                  on_progress: Optional[ProgressCallback]) -> Optional[ReceivedFile]:
        if not self.assembler.is_complete(transfer_id):
            return None

        metadata = self.assembler.get_buffer(transfer_id).metadata
        data, file_name = self.assembler.assemble(transfer_id)

        progress = self._progress.pop(transfer_id, None)
        if progress is not None:
            progress.phase = 'complete'
            progress.chunks_done = progress.total_chunks
            if on_progress:
                on_progress(progress)

        self._finished.append(transfer_id)
        await self._send_control(TransferMessage.ack(transfer_id))
        self.files_received += 1
        return ReceivedFile(data=data, file_name=file_name, metadata=metadata)

    def _progress_for(self, metadata: TransferMetadata) -> TransferProgress:
        progress = self._progress.get(metadata.transfer_id)
        if progress is None:
            progress = TransferProgress.for_metadata(metadata)
            self._progress[metadata.transfer_id] = progress
        return progress

    def _already_finished(self, transfer_id: str, message: TransferMessage) -> bool:
        if transfer_id not in self._finished:
            return False
        self.late_messages_dropped += 1
        logger.debug(f"Dropping late {message.type.value} for finished transfer {transfer_id[:8]}")
        return True

    def _cleanup(self):
        if self._current and self._current not in self._finished:
            self._finished.append(self._current)
        self._partials.clear()
        self._progress.clear()
        self.assembler.clear_incomplete()

    async def _send_control(self, message: TransferMessage):
        """Best-effort reply to the sender."""
        if self.transport.closed:
            return
        try:
            await self.transport.send(message.to_bytes())
        except (PeerDropError, ConnectionError, OSError) as e:
            logger.debug(f"Could not send {message.type.value}: {e}")

    def get_stats(self) -> dict:
        """Get receiver statistics."""
        return {
            'files_received': self.files_received,
            'segments_received': self.segments_received,
            'bytes_received': self.bytes_received,
            'partial_chunks': len(self._partials),
            'late_messages_dropped': self.late_messages_dropped,
            'assembler': self.assembler.get_stats(),
        }
