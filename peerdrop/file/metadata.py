"""
Transfer Metadata

Design Decision: What Travels With Each Chunk
=============================================

Options Considered:
1. Send a manifest first, then bare chunks
   - Compact, but the receiver can't do anything until the manifest arrives
     and a lost/reordered manifest stalls the transfer

2. Every chunk carries the transfer's metadata header
   - A few dozen bytes of overhead per chunk
   - Any chunk can open the receiver's buffer; delivery order doesn't matter

Decision: Option 2
- Header: transfer id, file name, MIME type, total size, total chunks,
  chunk index and the chunk's own SHA-256 checksum
- Verification is local and stateless: a chunk proves its own integrity
"""

import hashlib
import mimetypes
import uuid
from dataclasses import dataclass, field, asdict
from typing import Dict
from pathlib import Path


def compute_checksum(data: bytes) -> str:
    """SHA-256 of a chunk payload, as hex."""
    return hashlib.sha256(data).hexdigest()


def new_transfer_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class TransferMetadata:
    """
    Describes one file transfer.

    Immutable for the transfer's duration: total_chunks is fixed at the
    moment the file is split.
    """
    file_name: str
    mime_type: str
    total_size: int
    total_chunks: int
    chunk_size: int
    transfer_id: str = field(default_factory=new_transfer_id)

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'TransferMetadata':
        return cls(**data)

    @classmethod
    def for_size(cls, file_name: str, total_size: int, chunk_size: int,
                 mime_type: str = None, transfer_id: str = None) -> 'TransferMetadata':
        """Build metadata, deriving total_chunks = ceil(total_size / chunk_size)."""
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive: {chunk_size}")
        return cls(
            file_name=file_name,
            mime_type=mime_type or guess_mime_type(file_name),
            total_size=total_size,
            total_chunks=(total_size + chunk_size - 1) // chunk_size,
            chunk_size=chunk_size,
            transfer_id=transfer_id or new_transfer_id(),
        )


@dataclass
class Chunk:
    """A bounded, indexed, checksummed slice of a file."""
    index: int
    total_chunks: int
    checksum: str
    payload: bytes

    @property
    def size(self) -> int:
        return len(self.payload)

    def verify(self) -> bool:
        """Whether the payload still matches the checksum it was created with."""
        return compute_checksum(self.payload) == self.checksum

    @classmethod
    def create(cls, index: int, total_chunks: int, payload: bytes) -> 'Chunk':
        if not 0 <= index < total_chunks:
            raise ValueError(f"Chunk index {index} out of range [0, {total_chunks})")
        return cls(
            index=index,
            total_chunks=total_chunks,
            checksum=compute_checksum(payload),
            payload=payload,
        )


def guess_mime_type(file_name) -> str:
    """Guess MIME type from file extension."""
    mime_type, _ = mimetypes.guess_type(str(Path(file_name).name))
    return mime_type or "application/octet-stream"
