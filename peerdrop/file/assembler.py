"""
File Assembler

Collects chunks per transfer, in whatever order the transport delivers
them, and rebuilds the original bytes once every index is present.

Invariants:
- A chunk index is stored at most once (duplicate deliveries are no-ops)
- Completion requires received_count == total_chunks AND full index coverage
- Assembly concatenates in index order, never arrival order
- Every chunk is re-verified against its checksum at assembly time
- A buffer is released on success, failure, cancellation, or staleness
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..errors import ChecksumMismatch, IncompleteTransfer, ProtocolError
from .metadata import Chunk, TransferMetadata, compute_checksum

logger = logging.getLogger(__name__)


@dataclass
class TransferBuffer:
    """Receiver-side accumulation state for one transfer."""
    total_chunks: int
    metadata: Optional[TransferMetadata] = None
    chunks: Dict[int, Chunk] = field(default_factory=dict)
    received_bytes: int = 0
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    @property
    def received_count(self) -> int:
        return len(self.chunks)

    @property
    def file_name(self) -> str:
        return self.metadata.file_name if self.metadata else "received.bin"

    def missing(self) -> List[int]:
        return [i for i in range(self.total_chunks) if i not in self.chunks]


class Assembler:
    """
    Reassembles transfers from out-of-order, possibly duplicated chunks.

    One Assembler can track several transfers at once; buffers are never
    shared between transfer ids.
    """

    def __init__(self):
        self._buffers: Dict[str, TransferBuffer] = {}

        # Statistics
        self.files_assembled = 0
        self.duplicates_dropped = 0

    def __contains__(self, transfer_id: str) -> bool:
        return transfer_id in self._buffers

    @property
    def active_transfers(self) -> List[str]:
        return list(self._buffers)

    def open_transfer(self, transfer_id: str, metadata: TransferMetadata) -> TransferBuffer:
        """Create (or return) the buffer for a transfer announced ahead of its chunks."""
        buffer = self._buffers.get(transfer_id)
        if buffer is None:
            buffer = TransferBuffer(total_chunks=metadata.total_chunks, metadata=metadata)
            self._buffers[transfer_id] = buffer
            logger.debug(f"Opened transfer {transfer_id[:8]}: {metadata.file_name} "
                         f"({metadata.total_chunks} chunks)")
        else:
            self._check_total(transfer_id, buffer, metadata.total_chunks)
            if buffer.metadata is None:
                buffer.metadata = metadata
        return buffer

    def _check_total(self, transfer_id: str, buffer: TransferBuffer, total_chunks: int):
        if total_chunks != buffer.total_chunks:
            raise ProtocolError(
                f"Transfer {transfer_id[:8]} changed total_chunks "
                f"{buffer.total_chunks} -> {total_chunks}"
            )

    def add_chunk(self, transfer_id: str, chunk: Chunk,
                  metadata: Optional[TransferMetadata] = None) -> bool:
        """
        Store a chunk's payload.

        Returns:
            True if stored, False if this index was already present

        Raises:
            ProtocolError: index out of range or inconsistent total_chunks
        """
        if not 0 <= chunk.index < chunk.total_chunks:
            raise ProtocolError(
                f"Chunk index {chunk.index} out of range [0, {chunk.total_chunks})"
            )

        buffer = self._buffers.get(transfer_id)
        if buffer is None:
            buffer = TransferBuffer(total_chunks=chunk.total_chunks, metadata=metadata)
            self._buffers[transfer_id] = buffer
        else:
            self._check_total(transfer_id, buffer, chunk.total_chunks)
            if buffer.metadata is None and metadata is not None:
                buffer.metadata = metadata

        buffer.last_activity = time.time()

        if chunk.index in buffer.chunks:
            self.duplicates_dropped += 1
            logger.debug(f"Duplicate chunk {chunk.index} for {transfer_id[:8]} ignored")
            return False

        buffer.chunks[chunk.index] = chunk
        buffer.received_bytes += chunk.size
        return True

    def get_buffer(self, transfer_id: str) -> Optional[TransferBuffer]:
        return self._buffers.get(transfer_id)

    def received_count(self, transfer_id: str) -> int:
        buffer = self._buffers.get(transfer_id)
        return buffer.received_count if buffer else 0

    def is_complete(self, transfer_id: str) -> bool:
        """True only when every index in [0, total_chunks) is present."""
        buffer = self._buffers.get(transfer_id)
        if buffer is None:
            return False
        if buffer.received_count != buffer.total_chunks:
            return False
        return all(i in buffer.chunks for i in range(buffer.total_chunks))

    def progress(self, transfer_id: str) -> float:
        """Progress as percentage."""
        buffer = self._buffers.get(transfer_id)
        if buffer is None:
            return 0.0
        if buffer.total_chunks == 0:
            return 100.0
        return buffer.received_count / buffer.total_chunks * 100

    def assemble(self, transfer_id: str) -> Tuple[bytes, str]:
        """
        Concatenate the transfer's payloads in index order.

        Returns:
            (file bytes, file name)

        Raises:
            IncompleteTransfer: some index is missing
            ChecksumMismatch: a stored payload no longer matches its checksum;
                the buffer is dropped
        """
        buffer = self._buffers.get(transfer_id)
        if buffer is None:
            raise IncompleteTransfer(f"Unknown transfer {transfer_id[:8]}")

        if not self.is_complete(transfer_id):
            missing = buffer.missing()
            raise IncompleteTransfer(
                f"Transfer {transfer_id[:8]} missing {len(missing)} of "
                f"{buffer.total_chunks} chunks (first: {missing[0] if missing else '?'})"
            )

        parts = []
        for index in range(buffer.total_chunks):
            chunk = buffer.chunks[index]
            if compute_checksum(chunk.payload) != chunk.checksum:
                self.discard(transfer_id)
                raise ChecksumMismatch(index)
            parts.append(chunk.payload)

        data = b''.join(parts)
        file_name = buffer.file_name

        if buffer.metadata is not None and len(data) != buffer.metadata.total_size:
            self.discard(transfer_id)
            raise ProtocolError(
                f"Assembled {len(data):,} bytes, expected {buffer.metadata.total_size:,}"
            )

        del self._buffers[transfer_id]
        self.files_assembled += 1
        logger.info(f"Assembled {file_name}: {len(data):,} bytes")
        return data, file_name

    def discard(self, transfer_id: str) -> bool:
        """Drop one transfer's buffer."""
        return self._buffers.pop(transfer_id, None) is not None

    def clear_incomplete(self) -> int:
        """
        Drop every in-progress buffer.

        Called on disconnect or cancellation so abandoned transfers don't
        hold memory.

        Returns:
            Number of buffers dropped
        """
        count = len(self._buffers)
        if count:
            logger.info(f"Clearing {count} incomplete transfer(s)")
        self._buffers.clear()
        return count

    def collect_stale(self, max_age: float, now: float = None) -> List[str]:
        """Drop buffers that have not received a chunk for max_age seconds."""
        now = now if now is not None else time.time()
        stale = [tid for tid, buf in self._buffers.items()
                 if now - buf.last_activity > max_age]
        for transfer_id in stale:
            logger.warning(f"Dropping stale transfer {transfer_id[:8]}")
            del self._buffers[transfer_id]
        return stale

    def get_stats(self) -> dict:
        """Get assembler statistics."""
        return {
            'active_transfers': len(self._buffers),
            'files_assembled': self.files_assembled,
            'duplicates_dropped': self.duplicates_dropped,
        }
