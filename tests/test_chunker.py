"""Tests for splitting files into chunks and adaptive segment sizing."""

import pytest

from peerdrop.errors import FileTooLarge
from peerdrop.file.chunker import AdaptiveChunkSizer, FileChunker, iter_chunks
from peerdrop.file.metadata import Chunk, compute_checksum


async def collect(stream):
    return [chunk async for chunk in stream]


@pytest.mark.asyncio
async def test_split_file_into_fixed_chunks(sample_file, sample_bytes):
    """A 10,000-byte file at 4096 bytes per chunk gives 4096, 4096, 1808."""
    stream = FileChunker(chunk_size=4096).split(sample_file)
    chunks = await collect(stream)

    assert stream.metadata.total_chunks == 3
    assert stream.metadata.total_size == 10_000
    assert stream.metadata.file_name == 'report.bin'
    assert [c.size for c in chunks] == [4096, 4096, 1808]
    assert [c.index for c in chunks] == [0, 1, 2]
    assert all(c.total_chunks == 3 for c in chunks)
    assert b''.join(c.payload for c in chunks) == sample_bytes


@pytest.mark.asyncio
async def test_chunks_carry_sha256_checksums(sample_file):
    """Each chunk's checksum is the SHA-256 of its payload."""
    chunks = await collect(FileChunker(chunk_size=4096).split(sample_file))

    for chunk in chunks:
        assert chunk.checksum == compute_checksum(chunk.payload)
        assert chunk.verify()


@pytest.mark.asyncio
async def test_split_in_memory_bytes(sample_bytes):
    """Bytes split the same way as a file with the same content."""
    stream = FileChunker(chunk_size=4096).split(sample_bytes, file_name='notes.txt')
    chunks = await collect(stream)

    assert stream.metadata.file_name == 'notes.txt'
    assert stream.metadata.mime_type == 'text/plain'
    assert [c.size for c in chunks] == [4096, 4096, 1808]


@pytest.mark.asyncio
async def test_split_empty_file(tmp_path):
    """A 0-byte file has 0 chunks."""
    empty = tmp_path / 'empty.txt'
    empty.write_bytes(b'')

    stream = FileChunker(chunk_size=4096).split(empty)

    assert stream.metadata.total_chunks == 0
    assert await collect(stream) == []


@pytest.mark.asyncio
async def test_chunk_stream_is_not_restartable(sample_bytes):
    """A second iteration over the same stream raises."""
    stream = FileChunker(chunk_size=4096).split(sample_bytes)
    await collect(stream)

    with pytest.raises(RuntimeError):
        await collect(stream)


def test_split_missing_file(tmp_path):
    """Missing files are reported before any reading starts."""
    with pytest.raises(FileNotFoundError):
        FileChunker().split(tmp_path / 'nope.bin')


def test_file_too_large_is_rejected():
    """Files that could exceed the chunk ceiling at the minimum size are refused."""
    chunker = FileChunker(chunk_size=4096, min_chunk_size=1024, max_chunks=10)

    chunker.check_size(10 * 1024)
    with pytest.raises(FileTooLarge):
        chunker.check_size(10 * 1024 + 1)

    with pytest.raises(FileTooLarge):
        chunker.split(b'x' * (10 * 1024 + 1))


def test_chunk_count():
    chunker = FileChunker(chunk_size=4096)

    assert chunker.get_chunk_count(0) == 0
    assert chunker.get_chunk_count(1) == 1
    assert chunker.get_chunk_count(4096) == 1
    assert chunker.get_chunk_count(4097) == 2


def test_iter_chunks_sync(sample_bytes):
    """The synchronous splitter matches the async one."""
    chunks = list(iter_chunks(sample_bytes, 4096))

    assert [c.size for c in chunks] == [4096, 4096, 1808]
    assert b''.join(c.payload for c in chunks) == sample_bytes


def test_chunk_create_rejects_out_of_range_index():
    with pytest.raises(ValueError):
        Chunk.create(3, 3, b'data')


class TestAdaptiveChunkSizer:
    """Adaptive segment sizing."""

    def test_failure_shrinks_by_a_quarter(self):
        sizer = AdaptiveChunkSizer(default=16 * 1024, floor=1024)

        sizer.record_failure()

        assert sizer.current == 12 * 1024

    def test_overflow_halves(self):
        sizer = AdaptiveChunkSizer(default=16 * 1024, floor=1024)

        sizer.record_overflow()

        assert sizer.current == 8 * 1024

    def test_never_below_floor(self):
        sizer = AdaptiveChunkSizer(default=4096, floor=1024)

        for _ in range(20):
            sizer.record_overflow()
            sizer.record_failure()

        assert sizer.current == 1024

    def test_grows_back_after_consecutive_successes(self):
        sizer = AdaptiveChunkSizer(default=16 * 1024, floor=1024, grow_after=8)
        sizer.record_overflow()

        for _ in range(7):
            sizer.record_success()
        assert sizer.current == 8 * 1024

        sizer.record_success()
        assert sizer.current == 10 * 1024

    def test_never_above_default(self):
        sizer = AdaptiveChunkSizer(default=16 * 1024, floor=1024)
        sizer.record_failure()

        for _ in range(100):
            sizer.record_success()

        assert sizer.current == 16 * 1024

    def test_failure_resets_success_run(self):
        sizer = AdaptiveChunkSizer(default=16 * 1024, floor=1024, grow_after=4)
        sizer.record_overflow()

        for _ in range(3):
            sizer.record_success()
        sizer.record_failure()
        for _ in range(3):
            sizer.record_success()

        assert sizer.current == 6 * 1024

    def test_invalid_bounds(self):
        with pytest.raises(ValueError):
            AdaptiveChunkSizer(default=1024, floor=2048)
