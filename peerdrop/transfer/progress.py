"""
Transfer Progress and Results
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..file.metadata import TransferMetadata


@dataclass
class TransferProgress:
    """Progress of one file transfer, on either side."""
    transfer_id: str
    file_name: str
    total_size: int
    total_chunks: int
    chunks_done: int = 0
    bytes_done: int = 0
    start_time: float = field(default_factory=time.time)
    phase: str = 'starting'  # 'starting', 'transferring', 'paused', 'complete', 'failed', 'cancelled'

    @classmethod
    def for_metadata(cls, metadata: TransferMetadata) -> 'TransferProgress':
        return cls(
            transfer_id=metadata.transfer_id,
            file_name=metadata.file_name,
            total_size=metadata.total_size,
            total_chunks=metadata.total_chunks,
        )

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0."""
        if self.total_chunks == 0:
            return 1.0
        return self.chunks_done / self.total_chunks

    @property
    def progress_percent(self) -> float:
        """Progress as percentage."""
        return self.progress * 100

    @property
    def elapsed_seconds(self) -> float:
        """Time elapsed since start."""
        return time.time() - self.start_time

    @property
    def speed_bytes_per_sec(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0
        return self.bytes_done / elapsed

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'transfer_id': self.transfer_id,
            'file_name': self.file_name,
            'total_size': self.total_size,
            'total_chunks': self.total_chunks,
            'chunks_done': self.chunks_done,
            'bytes_done': self.bytes_done,
            'progress_percent': self.progress_percent,
            'speed_bytes_per_sec': self.speed_bytes_per_sec,
            'elapsed_seconds': self.elapsed_seconds,
            'phase': self.phase,
        }


# Progress callback type
ProgressCallback = Callable[[TransferProgress], None]


@dataclass
class TransferResult:
    """Outcome of a completed send."""
    transfer_id: str
    file_name: str
    total_size: int
    total_chunks: int
    transport: str
    elapsed_seconds: float
    segments_sent: int = 0
    retries: int = 0
    final_segment_size: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'transfer_id': self.transfer_id,
            'file_name': self.file_name,
            'total_size': self.total_size,
            'total_chunks': self.total_chunks,
            'transport': self.transport,
            'elapsed_seconds': self.elapsed_seconds,
            'segments_sent': self.segments_sent,
            'retries': self.retries,
            'final_segment_size': self.final_segment_size,
        }


@dataclass
class ReceivedFile:
    """A reassembled file."""
    data: bytes
    file_name: str
    metadata: Optional[TransferMetadata] = None

    @property
    def size(self) -> int:
        return len(self.data)
