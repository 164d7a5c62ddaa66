"""
File Module - Chunking, Reassembly, and Storage

This module handles file operations for the transfer engine.
"""

from .metadata import Chunk, TransferMetadata, compute_checksum
from .chunker import (
    FileChunker, ChunkStream, AdaptiveChunkSizer, iter_chunks,
    DIRECT_CHUNK_SIZE, RELAY_CHUNK_SIZE, MIN_CHUNK_SIZE, MAX_CHUNKS,
)
from .assembler import Assembler, TransferBuffer
from .storage import save_received_file, safe_file_name

__all__ = [
    'Chunk',
    'TransferMetadata',
    'compute_checksum',
    'FileChunker',
    'ChunkStream',
    'AdaptiveChunkSizer',
    'iter_chunks',
    'DIRECT_CHUNK_SIZE',
    'RELAY_CHUNK_SIZE',
    'MIN_CHUNK_SIZE',
    'MAX_CHUNKS',
    'Assembler',
    'TransferBuffer',
    'save_received_file',
    'safe_file_name',
]
