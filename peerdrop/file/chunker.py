"""
File Chunker

Design Decision: Chunk Size
===========================

Options Considered:
| Size    | Pros                          | Cons                              |
|---------|-------------------------------|-----------------------------------|
| 16KB    | Fits any data channel message | Many chunks for large files       |
| 256KB   | Good balance on a TCP relay   | Too big for one data channel send |
| 1MB+    | Lower overhead                | Coarse, slow to adapt             |

Decision: Per-transport default
- Direct data channel: 16KB (messages are size-limited)
- Relayed stream: 256KB
- Floor: 1KB for adaptive shrinking

Chunking Strategy: Fixed-Size Chunks, Adaptive Segments
- A file is split into fixed-size chunks once; indices and total_chunks
  never change for the transfer
- The sender slices each chunk into segments whose size is driven by
  AdaptiveChunkSizer: failures and full send buffers shrink it, sustained
  success grows it back toward the default
- The receiver merges segments back into the chunk before verifying its
  checksum, so adaptive sizing never disturbs the chunk bookkeeping
"""

import logging
from pathlib import Path
from typing import AsyncIterator, Iterator, Optional, Union

import aiofiles

from ..errors import FileTooLarge, SendFailed
from .metadata import Chunk, TransferMetadata, guess_mime_type

logger = logging.getLogger(__name__)

# Chunk sizes
DIRECT_CHUNK_SIZE = 16 * 1024     # 16KB
RELAY_CHUNK_SIZE = 256 * 1024     # 256KB
MIN_CHUNK_SIZE = 1024             # 1KB
MAX_CHUNK_SIZE = 5 * 1024 * 1024  # 5MB

# Hard ceiling on chunk bookkeeping per transfer
MAX_CHUNKS = 1024 * 1024


class ChunkStream:
    """
    Lazy, finite, non-restartable sequence of chunks.

    Chunks are read from the source only as the consumer asks for them.
    Iterating a second time raises RuntimeError.
    """

    def __init__(self, source: Union[Path, bytes], metadata: TransferMetadata):
        self.source = source
        self.metadata = metadata
        self._started = False

    def __aiter__(self) -> AsyncIterator[Chunk]:
        if self._started:
            raise RuntimeError("Chunk stream already consumed")
        self._started = True
        if isinstance(self.source, (bytes, bytearray, memoryview)):
            return self._from_bytes(bytes(self.source))
        return self._from_file(Path(self.source))

    async def _from_file(self, file_path: Path) -> AsyncIterator[Chunk]:
        chunk_size = self.metadata.chunk_size
        total = self.metadata.total_chunks

        try:
            async with aiofiles.open(file_path, 'rb') as f:
                for index in range(total):
                    payload = await f.read(chunk_size)
                    if not payload:
                        raise SendFailed(f"{file_path} shrank while being sent "
                                         f"(chunk {index}/{total})")
                    yield Chunk.create(index, total, payload)
        except OSError as e:
            raise SendFailed(f"Could not read {file_path}: {e}") from e

    async def _from_bytes(self, data: bytes) -> AsyncIterator[Chunk]:
        for chunk in iter_chunks(data, self.metadata.chunk_size):
            yield chunk


class FileChunker:
    """
    Splits files into fixed-size, checksummed chunks.

    Features:
    - SHA-256 checksum per chunk
    - Async file reading (aiofiles)
    - Refuses files that would exceed the chunk-count ceiling
    """

    def __init__(self, chunk_size: int = RELAY_CHUNK_SIZE,
                 min_chunk_size: int = MIN_CHUNK_SIZE,
                 max_chunks: int = MAX_CHUNKS):
        if not 0 < min_chunk_size <= chunk_size:
            raise ValueError(f"Invalid chunk sizes: min={min_chunk_size}, size={chunk_size}")
        self.chunk_size = chunk_size
        self.min_chunk_size = min_chunk_size
        self.max_chunks = max_chunks

    def get_chunk_count(self, file_size: int, chunk_size: int = None) -> int:
        """Calculate number of chunks for a file of given size."""
        chunk_size = chunk_size or self.chunk_size
        return (file_size + chunk_size - 1) // chunk_size

    def check_size(self, file_size: int):
        """
        Raise FileTooLarge if even the smallest chunks could overflow the ceiling.

        Raises:
            FileTooLarge
        """
        worst_case = self.get_chunk_count(file_size, self.min_chunk_size)
        if worst_case > self.max_chunks:
            raise FileTooLarge(
                f"{file_size:,} bytes would need up to {worst_case:,} chunks "
                f"(limit {self.max_chunks:,})"
            )

    def plan(self, file_name: str, file_size: int, chunk_size: int = None,
             mime_type: str = None) -> TransferMetadata:
        """Create the metadata for a transfer without reading any data."""
        self.check_size(file_size)
        return TransferMetadata.for_size(
            file_name=file_name,
            total_size=file_size,
            chunk_size=chunk_size or self.chunk_size,
            mime_type=mime_type,
        )

    def split(self, file: Union[Path, str, bytes], chunk_size: int = None,
              file_name: Optional[str] = None,
              mime_type: Optional[str] = None) -> ChunkStream:
        """
        Split a file (path) or in-memory bytes into chunks.

        Args:
            file: Path to the file, or the file's bytes
            chunk_size: Overrides the chunker's default chunk size
            file_name: Name to transfer under (default: path name)
            mime_type: MIME type (default: guessed from the name)

        Returns:
            ChunkStream whose `metadata` describes the transfer

        Raises:
            FileTooLarge, FileNotFoundError
        """
        chunk_size = chunk_size or self.chunk_size
        if chunk_size > MAX_CHUNK_SIZE:
            raise ValueError(f"Chunk size {chunk_size} exceeds {MAX_CHUNK_SIZE}")

        if isinstance(file, (bytes, bytearray, memoryview)):
            size = len(file)
            name = file_name or "data.bin"
            source = bytes(file)
        else:
            path = Path(file)
            if not path.exists():
                raise FileNotFoundError(f"File not found: {path}")
            size = path.stat().st_size
            name = file_name or path.name
            source = path

        metadata = self.plan(name, size, chunk_size,
                             mime_type or guess_mime_type(name))
        logger.info(f"Splitting {name} ({size:,} bytes) into "
                    f"{metadata.total_chunks} chunks of {chunk_size:,} bytes")
        return ChunkStream(source, metadata)


def iter_chunks(data: bytes, chunk_size: int) -> Iterator[Chunk]:
    """Split in-memory bytes into chunks (synchronous version)."""
    total = (len(data) + chunk_size - 1) // chunk_size
    for index in range(total):
        start = index * chunk_size
        yield Chunk.create(index, total, data[start:start + chunk_size])


class AdaptiveChunkSizer:
    """
    Backpressure-driven send size.

    - record_failure(): shrink by shrink_factor (send error)
    - record_overflow(): shrink by overflow_factor (send buffer full)
    - record_success(): after grow_after consecutive successes, grow by
      grow_factor, never above the default
    Sizes never drop below the floor.
    """

    def __init__(self, default: int, floor: int = MIN_CHUNK_SIZE,
                 shrink_factor: float = 0.75, overflow_factor: float = 0.5,
                 grow_after: int = 8, grow_factor: float = 1.25):
        if not 0 < floor <= default:
            raise ValueError(f"Invalid sizer bounds: floor={floor}, default={default}")
        self.default = default
        self.floor = floor
        self.shrink_factor = shrink_factor
        self.overflow_factor = overflow_factor
        self.grow_after = grow_after
        self.grow_factor = grow_factor

        self.current = default
        self._successes = 0
        self.failures = 0

    def _shrink(self, factor: float):
        previous = self.current
        self.current = max(self.floor, int(self.current * factor))
        self._successes = 0
        self.failures += 1
        if self.current != previous:
            logger.debug(f"Send size reduced {previous} -> {self.current}")

    def record_failure(self):
        self._shrink(self.shrink_factor)

    def record_overflow(self):
        self._shrink(self.overflow_factor)

    def record_success(self):
        self._successes += 1
        if self.current < self.default and self._successes >= self.grow_after:
            self.current = min(self.default, int(self.current * self.grow_factor) or 1)
            self._successes = 0

    def reset(self):
        self.current = self.default
        self._successes = 0
