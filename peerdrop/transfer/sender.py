"""
File Sender

Design Decision: Fixed Chunks, Adaptive Segments
================================================

Options Considered:
1. Re-chunk the file whenever the send size changes
   - total_chunks would change mid-transfer; the receiver can't know
     when it is done

2. Fixed chunks, each sent as one or more segments
   - Chunk boundaries, checksums and total_chunks are fixed when the file
     is split; the receiver's completeness check stays exact
   - Only the slice of a chunk put into one message varies

Decision: Option 2
- AdaptiveChunkSizer picks each segment's size: halved when the transport
  reports a full buffer, shrunk by a quarter on other send failures,
  grown back after a run of successes
- Every segment send goes through the RetryController; a segment that
  still fails after the last attempt fails the transfer with SendFailed

Send Flow:
1. START (metadata) so the receiver can open its buffer
2. For each chunk, for each segment: CHUNK message
3. Wait for the receiver's ACK (assembled and verified) or ERROR
Between segments the loop honors pause() and the cancellation token.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional, Union

from ..errors import (
    BufferFull, PeerDropError, ProtocolError, SendFailed, TransferCancelled,
    TransportClosed, error_from_dict, is_transient,
)
from ..file.chunker import RELAY_CHUNK_SIZE, AdaptiveChunkSizer, FileChunker
from ..file.metadata import Chunk, TransferMetadata
from ..transport.base import Transport
from .progress import ProgressCallback, TransferProgress, TransferResult
from .protocol import TransferMessage, TransferMessageType, receive_message
from .retry import CancellationToken, RetryController

logger = logging.getLogger(__name__)

# Room left in a size-limited message for the JSON header
HEADER_ALLOWANCE = 1024


class FileSender:
    """
    Streams one file at a time over a Transport.

    Usage:
        sender = FileSender(transport, retry=RetryController())
        result = await sender.send(Path("report.pdf"), on_progress=print)
    """

    def __init__(self, transport: Transport,
                 chunker: Optional[FileChunker] = None,
                 retry: Optional[RetryController] = None,
                 sizer: Optional[AdaptiveChunkSizer] = None,
                 ack_timeout: float = 30.0,
                 drain_timeout: float = 5.0):
        """
        Args:
            transport: Open transport to the receiver
            chunker: Splits the file (default: transport's default chunk size)
            retry: Retry policy for segment sends
            sizer: Segment sizer (default: chunk size, capped by the
                transport's message limit)
            ack_timeout: Seconds to wait for the receiver's ACK
            drain_timeout: Seconds to wait for a full send buffer to drain
        """
        self.transport = transport
        self.chunker = chunker or FileChunker(
            chunk_size=transport.default_chunk_size or RELAY_CHUNK_SIZE)
        self.retry = retry or RetryController()
        self.sizer = sizer or AdaptiveChunkSizer(
            default=self._segment_limit(self.chunker.chunk_size),
            floor=min(self.chunker.min_chunk_size, self._segment_limit(self.chunker.chunk_size)),
        )
        self.ack_timeout = ack_timeout
        self.drain_timeout = drain_timeout

        self.token: Optional[CancellationToken] = None
        self._resumed = asyncio.Event()
        self._resumed.set()

        # Statistics
        self.segments_sent = 0
        self.bytes_sent = 0
        self.files_sent = 0

    def _segment_limit(self, chunk_size: int) -> int:
        limit = self.transport.max_message_size
        if not limit:
            return chunk_size
        return max(1, min(chunk_size, limit - HEADER_ALLOWANCE))

    # === Control ===

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    def pause(self):
        """Stop before the next segment until resume()."""
        if not self.paused:
            self._resumed.clear()
            logger.info("Transfer paused")

    def resume(self):
        if self.paused:
            self._resumed.set()
            logger.info("Transfer resumed")

    def cancel(self, reason: str = "Cancelled by sender"):
        if self.token is not None:
            self.token.cancel(reason)

    async def _wait_if_paused(self, token: CancellationToken, progress: TransferProgress,
                              on_progress: Optional[ProgressCallback]):
        if not self.paused:
            token.raise_if_cancelled()
            return
        progress.phase = 'paused'
        if on_progress:
            on_progress(progress)
        resumed = asyncio.ensure_future(self._resumed.wait())
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({resumed, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            resumed.cancel()
            cancelled.cancel()
        token.raise_if_cancelled()
        progress.phase = 'transferring'

    # === Sending ===

    async def send(self, file: Union[Path, str, bytes],
                   on_progress: Optional[ProgressCallback] = None,
                   token: Optional[CancellationToken] = None,
                   file_name: Optional[str] = None) -> TransferResult:
        """
        Send one file and wait until the receiver confirms it.

        Args:
            file: Path to the file, or its bytes
            on_progress: Called after START and after every chunk
            token: Cancellation token (a fresh one if not provided)
            file_name: Name to send under

        Returns:
            TransferResult

        Raises:
            FileTooLarge, FileNotFoundError: before anything is sent
            SendFailed: a segment kept failing, or no ACK arrived
            TransferCancelled: cancelled locally or by the receiver
            PeerDropError: the receiver reported an error (e.g. ChecksumMismatch)
        """
        stream = self.chunker.split(file, file_name=file_name)
        metadata = stream.metadata
        self.token = token = token or CancellationToken()
        progress = TransferProgress.for_metadata(metadata)
        retries_before = self.retry.retries
        segments_before = self.segments_sent
        start = time.time()

        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()
        listener = asyncio.create_task(self._listen(metadata.transfer_id, outcome, token))

        logger.info(f"Sending {metadata.file_name} ({metadata.total_size:,} bytes, "
                    f"{metadata.total_chunks} chunks) over {self.transport.kind}")
        try:
            await self.retry.run(
                lambda: self.transport.send(TransferMessage.start(metadata).to_bytes()),
                name="start transfer", token=token, exhausted=SendFailed,
            )
            progress.phase = 'transferring'
            if on_progress:
                on_progress(progress)

            async for chunk in stream:
                await self._wait_if_paused(token, progress, on_progress)
                self._check_outcome(outcome)
                await self._send_chunk(metadata, chunk, token, progress, on_progress)
                progress.chunks_done += 1
                progress.bytes_done += chunk.size
                if on_progress:
                    on_progress(progress)

            await self._await_ack(outcome, token)

        except TransferCancelled as e:
            progress.phase = 'cancelled'
            if outcome.done() and isinstance(outcome.exception(), TransferCancelled):
                raise
            await self._send_control(TransferMessage.cancel(metadata.transfer_id, e.message))
            raise
        except PeerDropError as e:
            progress.phase = 'failed'
            if not self._reported_by_receiver(outcome, e):
                await self._send_control(TransferMessage.error(metadata.transfer_id, e))
            raise
        finally:
            listener.cancel()
            await asyncio.gather(listener, return_exceptions=True)
            if on_progress and progress.phase in ('failed', 'cancelled'):
                on_progress(progress)

        progress.phase = 'complete'
        if on_progress:
            on_progress(progress)
        self.files_sent += 1
        elapsed = time.time() - start
        logger.info(f"Sent {metadata.file_name} in {elapsed:.2f}s "
                    f"({self.segments_sent - segments_before} segments)")

        return TransferResult(
            transfer_id=metadata.transfer_id,
            file_name=metadata.file_name,
            total_size=metadata.total_size,
            total_chunks=metadata.total_chunks,
            transport=self.transport.kind,
            elapsed_seconds=elapsed,
            segments_sent=self.segments_sent - segments_before,
            retries=self.retry.retries - retries_before,
            final_segment_size=self.sizer.current,
        )

    async def _send_chunk(self, metadata: TransferMetadata, chunk: Chunk,
                          token: CancellationToken, progress: TransferProgress,
                          on_progress: Optional[ProgressCallback]):
        """Send one chunk as consecutive segments sized by the adaptive sizer."""
        offset = 0
        while offset < chunk.size:
            if offset:
                await self._wait_if_paused(token, progress, on_progress)

            segment_offset = offset

            async def attempt() -> int:
                data = chunk.payload[segment_offset:segment_offset + self.sizer.current]
                message = TransferMessage.chunk(
                    metadata, chunk.index, chunk.checksum, chunk.size, segment_offset, data
                ).to_bytes()
                try:
                    await self.transport.send(message)
                except BufferFull:
                    self.sizer.record_overflow()
                    await self.transport.wait_drained(self.drain_timeout)
                    raise
                except Exception as e:
                    if not is_transient(e):
                        raise
                    if self.transport.closed:
                        raise SendFailed(f"Transport closed during chunk {chunk.index}") from e
                    self.sizer.record_failure()
                    raise
                self.sizer.record_success()
                return len(data)

            sent = await self.retry.run(
                attempt, name=f"chunk {chunk.index}", token=token, exhausted=SendFailed,
            )
            offset += sent
            self.segments_sent += 1
            self.bytes_sent += sent

    # === Receiver replies ===

    async def _listen(self, transfer_id: str, outcome: asyncio.Future,
                      token: CancellationToken):
        """Watch for ACK / ERROR / CANCEL from the receiver."""
        while not outcome.done():
            try:
                message = await receive_message(self.transport)
            except ProtocolError as e:
                logger.warning(f"Ignoring malformed reply: {e.message}")
                continue

            if message is None:
                self._resolve(outcome, TransportClosed("Receiver closed the connection"))
                return
            if message.transfer_id and message.transfer_id != transfer_id:
                logger.debug(f"Ignoring {message.type.value} for another transfer")
                continue

            if message.type == TransferMessageType.ACK:
                self._resolve(outcome, None)
            elif message.type == TransferMessageType.ERROR:
                error = error_from_dict(message.headers)
                logger.error(f"Receiver reported {error.kind}: {error.message}")
                self._resolve(outcome, error)
            elif message.type == TransferMessageType.CANCEL:
                reason = message.headers.get('reason') or "Cancelled by receiver"
                error = TransferCancelled(reason)
                self._resolve(outcome, error)
                token.cancel(reason)

    @staticmethod
    def _resolve(outcome: asyncio.Future, error: Optional[PeerDropError]):
        if outcome.done():
            return
        if error is None:
            outcome.set_result(True)
        else:
            outcome.set_exception(error)

    @staticmethod
    def _reported_by_receiver(outcome: asyncio.Future, error: PeerDropError) -> bool:
        return (outcome.done() and not outcome.cancelled()
                and outcome.exception() is error)

    @staticmethod
    def _check_outcome(outcome: asyncio.Future):
        """Stop early if the receiver already failed or cancelled the transfer."""
        if outcome.done() and not outcome.cancelled() and outcome.exception() is not None:
            raise outcome.exception()

    async def _await_ack(self, outcome: asyncio.Future, token: CancellationToken):
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({outcome, cancelled}, timeout=self.ack_timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
        if outcome in done:
            outcome.result()
            return
        token.raise_if_cancelled()
        raise SendFailed(f"Receiver did not acknowledge within {self.ack_timeout:.0f}s")

    async def _send_control(self, message: TransferMessage):
        """Best-effort control message; the transfer is already ending."""
        try:
            await self.transport.send(message.to_bytes())
        except (PeerDropError, ConnectionError, OSError) as e:
            logger.debug(f"Could not send {message.type.value}: {e}")

    def get_stats(self) -> dict:
        """Get sender statistics."""
        return {
            'files_sent': self.files_sent,
            'segments_sent': self.segments_sent,
            'bytes_sent': self.bytes_sent,
            'segment_size': self.sizer.current,
            'paused': self.paused,
            'retry': self.retry.get_stats(),
        }
