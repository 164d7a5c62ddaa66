"""Tests for the sender/receiver pair over in-memory transports."""

import asyncio

import pytest

from peerdrop.errors import (
    BufferFull, ChecksumMismatch, ProtocolError, SendFailed, TransferCancelled,
    TransportClosed,
)
from peerdrop.file.chunker import AdaptiveChunkSizer
from peerdrop.file.metadata import TransferMetadata
from peerdrop.transfer.protocol import TransferMessage, TransferMessageType
from peerdrop.transfer.receiver import FileReceiver, PartialChunk
from peerdrop.transfer.sender import FileSender

from conftest import memory_pair


def chunk_header(message: bytes):
    """(chunkIndex, offset, payload length) of a CHUNK message, else None."""
    decoded = TransferMessage.from_bytes(message)
    if decoded.type != TransferMessageType.CHUNK:
        return None
    return decoded.headers['chunkIndex'], decoded.headers['offset'], len(decoded.data)


@pytest.fixture
def large_bytes():
    """40,000 bytes: ten chunks at 4096 bytes per chunk."""
    return bytes((i * 31 + i // 7) % 256 for i in range(40_000))


async def transfer(sender, receiver, data, **kwargs):
    return await asyncio.wait_for(
        asyncio.gather(sender.send(data, **kwargs), receiver.receive()),
        timeout=5.0,
    )


@pytest.mark.asyncio
async def test_round_trip_is_byte_identical(transports, fast_retry, sample_bytes):
    a, b = transports
    sender = FileSender(a, retry=fast_retry)
    receiver = FileReceiver(b)
    phases = []

    result, received = await transfer(sender, receiver, sample_bytes,
                                      file_name='report.bin',
                                      on_progress=lambda p: phases.append(p.phase))

    assert received.data == sample_bytes
    assert received.file_name == 'report.bin'
    assert result.total_chunks == 3
    assert result.transport == 'memory'
    assert result.retries == 0
    assert phases[0] == 'transferring'
    assert phases[-1] == 'complete'
    assert receiver.assembler.active_transfers == []


@pytest.mark.asyncio
async def test_send_from_file(transports, fast_retry, sample_file, sample_bytes):
    a, b = transports

    result, received = await transfer(FileSender(a, retry=fast_retry), FileReceiver(b),
                                      sample_file)

    assert received.data == sample_bytes
    assert received.file_name == 'report.bin'
    assert result.total_size == 10_000


@pytest.mark.asyncio
async def test_empty_file_completes_on_start(transports, fast_retry):
    a, b = transports

    result, received = await transfer(FileSender(a, retry=fast_retry), FileReceiver(b),
                                      b'', file_name='empty.txt')

    assert received.data == b''
    assert received.file_name == 'empty.txt'
    assert result.total_chunks == 0
    assert result.segments_sent == 0


@pytest.mark.asyncio
async def test_buffer_full_halves_segment_size(transports, fast_retry, large_bytes):
    """
    BufferFull on chunk 5: the segment size halves, the retry resends chunk 5
    in smaller segments, and the output is still identical.
    """
    a, b = transports
    failed = []

    def fail_once_on_chunk_five(message):
        header = chunk_header(message)
        if header is not None and header[0] == 5 and not failed:
            failed.append(header)
            return BufferFull("send buffer above high-water mark")
        return None

    a.fail_on = fail_once_on_chunk_five
    sender = FileSender(a, retry=fast_retry)

    result, received = await transfer(sender, FileReceiver(b), large_bytes)

    assert received.data == large_bytes
    assert failed == [(5, 0, 4096)]
    assert a.drain_waits == 1
    assert result.retries == 1

    segments = [chunk_header(m) for m in a.sent]
    assert [s for s in segments if s and s[0] == 5] == [(5, 0, 2048), (5, 2048, 2048)]
    assert [s for s in segments if s and s[0] == 4] == [(4, 0, 4096)]
    assert 2048 <= result.final_segment_size < 4096


@pytest.mark.asyncio
async def test_persistent_failure_is_send_failed(transports, fast_retry, sample_bytes):
    """The sender gives up with SendFailed and tells the receiver why."""
    a, b = transports
    a.fail_on = lambda m: BufferFull() if chunk_header(m) else None
    sender = FileSender(a, retry=fast_retry)
    receiver = FileReceiver(b)

    sent, received = await asyncio.wait_for(
        asyncio.gather(sender.send(sample_bytes), receiver.receive(),
                       return_exceptions=True),
        timeout=5.0,
    )

    assert isinstance(sent, SendFailed)
    assert isinstance(received, SendFailed)
    assert sender.sizer.current == sender.sizer.floor
    assert receiver.assembler.active_transfers == []


@pytest.mark.asyncio
async def test_file_shrinking_mid_send_fails_both_sides(transports, fast_retry, sample_file):
    a, b = transports

    def truncate_after_start(progress):
        if progress.chunks_done == 0:
            sample_file.write_bytes(b'')

    sent, received = await asyncio.wait_for(
        asyncio.gather(
            FileSender(a, retry=fast_retry).send(sample_file, on_progress=truncate_after_start),
            FileReceiver(b).receive(),
            return_exceptions=True,
        ),
        timeout=5.0,
    )

    assert isinstance(sent, SendFailed)
    assert 'shrank' in sent.message
    assert isinstance(received, SendFailed)


@pytest.mark.asyncio
async def test_segments_are_merged_by_receiver(transports, fast_retry, sample_bytes):
    a, b = transports
    sender = FileSender(a, retry=fast_retry,
                        sizer=AdaptiveChunkSizer(default=1500, floor=1024))

    result, received = await transfer(sender, FileReceiver(b), sample_bytes)

    assert received.data == sample_bytes
    # 4096 -> 3 segments, 4096 -> 3, 1808 -> 2
    assert result.segments_sent == 8


@pytest.mark.asyncio
async def test_size_limited_transport(fast_retry, sample_bytes):
    """Segments shrink to fit a transport's message size limit."""
    a, b = memory_pair(max_message_size=2048)

    result, received = await transfer(FileSender(a, retry=fast_retry), FileReceiver(b),
                                      sample_bytes)

    assert received.data == sample_bytes
    assert all(len(m) <= 2048 for m in a.sent)
    assert result.final_segment_size == 1024


@pytest.mark.asyncio
async def test_corrupted_chunk_fails_both_sides(transports, fast_retry, sample_bytes):
    """A flipped byte in chunk 1 is a ChecksumMismatch reported back to the sender."""
    a, b = transports

    def flip_last_byte_of_chunk_one(message):
        header = chunk_header(message)
        if header is not None and header[0] == 1:
            return message[:-1] + bytes([message[-1] ^ 0xFF])
        return message

    a.tamper = flip_last_byte_of_chunk_one
    sender = FileSender(a, retry=fast_retry)
    receiver = FileReceiver(b)

    results = await asyncio.wait_for(
        asyncio.gather(sender.send(sample_bytes), receiver.receive(),
                       return_exceptions=True),
        timeout=5.0,
    )

    sent, received = results
    assert isinstance(received, ChecksumMismatch)
    assert received.index == 1
    assert isinstance(sent, ChecksumMismatch)
    assert sent.index == 1
    assert receiver.assembler.active_transfers == []


@pytest.mark.asyncio
async def test_sender_cancel_reaches_receiver(transports, fast_retry, sample_bytes):
    a, b = transports
    sender = FileSender(a, retry=fast_retry)
    receiver = FileReceiver(b)
    sender.pause()

    send_task = asyncio.create_task(sender.send(sample_bytes))
    receive_task = asyncio.create_task(receiver.receive())
    await asyncio.sleep(0.05)
    sender.cancel("changed my mind")

    with pytest.raises(TransferCancelled):
        await asyncio.wait_for(send_task, timeout=2.0)
    with pytest.raises(TransferCancelled) as exc_info:
        await asyncio.wait_for(receive_task, timeout=2.0)

    assert exc_info.value.message == "changed my mind"
    assert receiver.assembler.active_transfers == []


@pytest.mark.asyncio
async def test_receiver_cancel_reaches_sender(transports, fast_retry, sample_bytes):
    a, b = transports
    sender = FileSender(a, retry=fast_retry)
    receiver = FileReceiver(b)
    sender.pause()

    send_task = asyncio.create_task(sender.send(sample_bytes))
    receive_task = asyncio.create_task(receiver.receive())
    await asyncio.sleep(0.05)
    receiver.cancel("no room")

    with pytest.raises(TransferCancelled):
        await asyncio.wait_for(receive_task, timeout=2.0)
    with pytest.raises(TransferCancelled) as exc_info:
        await asyncio.wait_for(send_task, timeout=2.0)

    assert exc_info.value.message == "no room"
    # The sender does not echo a CANCEL back
    cancels = [m for m in a.sent
               if TransferMessage.from_bytes(m).type == TransferMessageType.CANCEL]
    assert cancels == []


@pytest.mark.asyncio
async def test_pause_and_resume(transports, fast_retry, sample_bytes):
    a, b = transports
    sender = FileSender(a, retry=fast_retry)
    receiver = FileReceiver(b)
    phases = []
    sender.pause()

    send_task = asyncio.create_task(
        sender.send(sample_bytes, on_progress=lambda p: phases.append(p.phase)))
    receive_task = asyncio.create_task(receiver.receive())
    await asyncio.sleep(0.05)

    assert sender.paused
    assert not any(chunk_header(m) for m in a.sent)

    sender.resume()
    result, received = await asyncio.wait_for(
        asyncio.gather(send_task, receive_task), timeout=5.0)

    assert received.data == sample_bytes
    assert 'paused' in phases
    assert phases[-1] == 'complete'


@pytest.mark.asyncio
async def test_receiver_closed_transport(transports):
    a, b = transports
    await a.close()

    with pytest.raises(TransportClosed):
        await asyncio.wait_for(FileReceiver(b).receive(), timeout=2.0)


@pytest.mark.asyncio
async def test_late_messages_for_finished_transfer_are_dropped(transports, fast_retry):
    """A replayed START and CHUNK neither reopen the transfer nor earn a second ACK."""
    a, b = transports
    receiver = FileReceiver(b)
    await transfer(FileSender(a, retry=fast_retry), receiver, b'x' * 100)
    acks = [m for m in b.sent
            if TransferMessage.from_bytes(m).type == TransferMessageType.ACK]
    assert len(acks) == 1

    for message in list(a.sent):
        await a.send(message)
    await a.close()

    with pytest.raises(TransportClosed):
        await asyncio.wait_for(receiver.receive(), timeout=2.0)

    assert receiver.late_messages_dropped == 2
    assert receiver.files_received == 1
    assert receiver.assembler.active_transfers == []
    assert len(b.sent) == 1


@pytest.mark.asyncio
async def test_new_transfer_drops_stale_buffers(transports, fast_retry, sample_bytes):
    a, b = transports
    receiver = FileReceiver(b, stale_after=60.0)
    abandoned = TransferMetadata.for_size('old.bin', 10, 4096)
    receiver.assembler.open_transfer(abandoned.transfer_id, abandoned)
    receiver.assembler.get_buffer(abandoned.transfer_id).last_activity -= 120

    _, received = await transfer(FileSender(a, retry=fast_retry), receiver, sample_bytes)

    assert received.data == sample_bytes
    assert abandoned.transfer_id not in receiver.assembler


class TestPartialChunk:
    """Segment merging."""

    def test_out_of_order_segments(self):
        partial = PartialChunk(index=0, length=10, checksum='')
        partial.add(6, b'ghij')
        assert partial.complete_payload() is None

        partial.add(0, b'abcdef')
        assert partial.complete_payload() == b'abcdefghij'

    def test_gap_is_incomplete(self):
        partial = PartialChunk(index=0, length=10, checksum='')
        partial.add(0, b'abc')
        partial.add(5, b'fghij')

        assert partial.complete_payload() is None

    def test_segment_outside_chunk(self):
        partial = PartialChunk(index=0, length=4, checksum='')
        with pytest.raises(ProtocolError):
            partial.add(2, b'xyz')
