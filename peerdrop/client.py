"""
PeerDrop Client - Core API

This is the entry point that orchestrates all components:
- Rendezvous with the other party by code (signaling service)
- Direct channel negotiation (PeerSession), with relay fallback
- Sending (FileSender) and receiving (FileReceiver + Assembler)

Design Decision: Transport Selection
====================================
The transport is chosen once, in connect():
1. Join the code on the signaling service and wait for the peer
2. Negotiate the direct channel, restarting a failed attempt up to
   `negotiation_attempts` times
3. If that still fails (or direct is disabled), open the relay with the
   same code
4. If the relay can't be opened either -> TransportUnavailable
Nothing after connect() looks at which transport was picked.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Union

from .config import Config
from .errors import (
    CodeConflict, NegotiationTimeout, PeerDropError, TransferCancelled,
    TransportClosed, TransportUnavailable, describe,
)
from .file.assembler import Assembler
from .file.chunker import FileChunker
from .file.storage import save_received_file
from .session.peer import PeerSession, SessionState
from .signaling.client import RendezvousClient, init_transfer
from .signaling.registry import normalize_code
from .transfer.progress import ProgressCallback, ReceivedFile, TransferResult
from .transfer.receiver import FileReceiver
from .transfer.retry import CancellationToken, RetryController, RetryPolicy
from .transfer.sender import FileSender
from .transport.base import Transport
from .transport.relay import RelayTransport

logger = logging.getLogger(__name__)

FileReceivedCallback = Callable[[bytes, str], None]
ErrorCallback = Callable[[str, str], None]


@dataclass
class TransferSession:
    """A connected pair: one code, one role, one open transport."""
    code: str
    role: str
    transport: Optional[Transport]
    signaling: Optional[RendezvousClient] = None
    peer_session: Optional[PeerSession] = None
    token: CancellationToken = field(default_factory=CancellationToken)
    created_at: float = field(default_factory=time.time)

    @property
    def kind(self) -> str:
        return self.transport.kind

    @property
    def is_open(self) -> bool:
        return self.transport is not None and self.transport.is_open

    def get_stats(self) -> dict:
        return {
            'code': self.code,
            'role': self.role,
            'transport': self.transport.get_stats(),
            'session': self.peer_session.get_stats() if self.peer_session else None,
            'cancelled': self.token.cancelled,
        }


class PeerDropClient:
    """
    Send or receive a file by code.

    Usage:
        client = PeerDropClient(load_config())
        code = await client.init_transfer()
        session = await client.connect(code, "sender")
        result = await client.send_file(session, Path("report.pdf"))
        await client.disconnect(session)
    """

    def __init__(self, config: Config = None, *,
                 signaling_factory: Optional[Callable[[], RendezvousClient]] = None,
                 relay_factory: Optional[Callable[[str, str], Transport]] = None,
                 pc_factory=None,
                 retry: Optional[RetryController] = None,
                 assembler: Optional[Assembler] = None):
        """
        Args:
            config: Client configuration (uses defaults if not provided)
            signaling_factory: Builds a RendezvousClient
            relay_factory: Builds the relay transport for (code, role)
            pc_factory: Builds aiortc peer connections (see PeerSession)
            retry: Shared retry controller
            assembler: Receiver-side assembler
        """
        self.config = config or Config()
        self._signaling_factory = signaling_factory or (
            lambda: RendezvousClient(self.config.signaling_url,
                                     connect_timeout=self.config.connect_timeout)
        )
        self._relay_factory = relay_factory or (
            lambda code, role: RelayTransport(self.config.relay_host, self.config.relay_port,
                                              code, role)
        )
        self._pc_factory = pc_factory
        self.retry = retry or RetryController(RetryPolicy(
            max_attempts=self.config.retry_max_attempts,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
        ))
        self.assembler = assembler or Assembler()

        self._file_callbacks: List[FileReceivedCallback] = []
        self._error_callbacks: List[ErrorCallback] = []
        self._sessions: List[TransferSession] = []
        self._sender: Optional[FileSender] = None

    # === Callbacks ===

    def on_file_received(self, callback: FileReceivedCallback):
        """Register a callback(data, file_name) run for every assembled file."""
        self._file_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback):
        """Register a callback(kind, message) run for every terminal error."""
        self._error_callbacks.append(callback)

    def _emit_error(self, error: PeerDropError):
        for callback in self._error_callbacks:
            try:
                callback(error.kind, error.message)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")

    def _emit_file(self, received: ReceivedFile):
        for callback in self._file_callbacks:
            try:
                callback(received.data, received.file_name)
            except Exception as e:
                logger.error(f"File callback failed: {e}")

    # === Connecting ===

    async def init_transfer(self) -> str:
        """Ask the signaling service for a fresh code."""
        return await init_transfer(self.config.signaling_http_url,
                                   timeout=self.config.connect_timeout)

    async def connect(self, code: str, role: str) -> TransferSession:
        """
        Pair with the other party of `code` and open a transport.

        Args:
            code: Code shared between the two parties
            role: "sender" or "receiver"

        Returns:
            TransferSession with an open transport

        Raises:
            CodeConflict: our role is already taken for this code
            TransportUnavailable: neither direct nor relay could be opened
            TransferCancelled: cancel() was called while connecting
        """
        code = normalize_code(code)
        if role not in ('sender', 'receiver'):
            raise ValueError(f"Invalid role: {role!r}")
        token = CancellationToken()
        pending = TransferSession(code=code, role=role, transport=None, token=token)
        self._sessions.append(pending)

        try:
            transport = peer_session = signaling = None
            if self.config.prefer_direct:
                try:
                    signaling = await self._open_signaling(code, role, token)
                    pending.signaling = signaling
                    transport, peer_session = await self._negotiate_direct(signaling, role, token)
                except (CodeConflict, TransferCancelled):
                    raise
                except PeerDropError as e:
                    logger.warning(f"Direct channel unavailable ({describe(e)}), "
                                   f"falling back to relay")

            if transport is None:
                transport = await self._open_relay(code, role, token)

        except PeerDropError as e:
            self._sessions.remove(pending)
            if pending.signaling is not None:
                await pending.signaling.close()
            self._emit_error(e)
            raise

        pending.transport = transport
        pending.peer_session = peer_session
        logger.info(f"Connected to {code} as {role} over {transport.kind}")
        return pending

    async def _open_signaling(self, code: str, role: str,
                              token: CancellationToken) -> RendezvousClient:
        async def attempt() -> RendezvousClient:
            signaling = self._signaling_factory()
            try:
                await signaling.connect()
                await signaling.join(code, role)
            except TransportUnavailable as e:
                await signaling.close()
                raise TransportClosed(e.message) from e
            except BaseException:
                await signaling.close()
                raise
            return signaling

        signaling = await self.retry.run(
            attempt, name="signaling registration", token=token,
            exhausted=TransportUnavailable,
        )

        logger.info(f"Waiting for the other party of {code}...")
        try:
            await self._until_cancelled(
                signaling.wait_for_peer(timeout=self.config.code_ttl), token
            )
        except asyncio.TimeoutError as e:
            await signaling.close()
            raise TransportUnavailable(f"Nobody joined {code} within {self.config.code_ttl:.0f}s") from e
        except BaseException:
            await signaling.close()
            raise
        return signaling

    async def _negotiate_direct(self, signaling: RendezvousClient, role: str,
                                token: CancellationToken):
        stale_sessions = set()
        attempts = 0

        async def attempt():
            nonlocal attempts
            attempts += 1
            session = PeerSession(
                signaling, role,
                ice_servers=self.config.ice_servers,
                negotiation_timeout=self.config.negotiation_timeout,
                pc_factory=self._pc_factory,
                stale_sessions=stale_sessions,
                attempt=attempts,
            )
            transport = await self._until_cancelled(session.negotiate(), token)
            return transport, session

        policy = RetryPolicy(
            max_attempts=self.config.negotiation_attempts,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
        )
        return await self.retry.run(
            attempt, name="direct negotiation", token=token,
            exhausted=NegotiationTimeout, policy=policy,
        )

    async def _open_relay(self, code: str, role: str,
                          token: CancellationToken) -> Transport:
        async def attempt() -> Transport:
            transport = self._relay_factory(code, role)
            try:
                await self._until_cancelled(transport.open(self.config.connect_timeout), token)
            except TransportUnavailable as e:
                raise TransportClosed(e.message) from e
            except BaseException:
                await transport.close()
                raise
            return transport

        return await self.retry.run(
            attempt, name="relay connect", token=token, exhausted=TransportUnavailable,
        )

    @staticmethod
    async def _until_cancelled(awaitable, token: CancellationToken):
        """Await `awaitable` unless the token is cancelled first."""
        token.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
        if work.cancelled():
            token.raise_if_cancelled()
        return work.result()

    def _chunker_for(self, transport: Transport) -> FileChunker:
        chunk_size = (self.config.direct_chunk_size if transport.kind == "direct"
                      else self.config.relay_chunk_size)
        return FileChunker(chunk_size=chunk_size,
                           min_chunk_size=min(self.config.min_chunk_size, chunk_size),
                           max_chunks=self.config.max_chunks)

    # === Transfers ===

    async def send_file(self, session: TransferSession, path: Union[Path, str, bytes],
                        on_progress: Optional[ProgressCallback] = None,
                        file_name: Optional[str] = None) -> TransferResult:
        """
        Send one file over a connected session.

        Raises:
            FileTooLarge, SendFailed, TransferCancelled, or an error the
            receiver reported (e.g. ChecksumMismatch)
        """
        sender = FileSender(
            session.transport,
            chunker=self._chunker_for(session.transport),
            retry=self.retry,
            ack_timeout=self.config.ack_timeout,
        )
        self._sender = sender
        self._mark_transferring(session)
        try:
            return await sender.send(path, on_progress=on_progress,
                                     token=session.token, file_name=file_name)
        except PeerDropError as e:
            await self._release(session, e)
            raise
        finally:
            self._sender = None

    async def receive(self, session: TransferSession,
                      on_progress: Optional[ProgressCallback] = None) -> ReceivedFile:
        """
        Run the receiver until one file is assembled.

        Registered on_file_received callbacks get (data, file_name).
        """
        receiver = FileReceiver(session.transport, self.assembler)
        self._mark_transferring(session)
        try:
            received = await receiver.receive(on_progress=on_progress, token=session.token)
        except PeerDropError as e:
            self.assembler.clear_incomplete()
            await self._release(session, e)
            raise
        self._emit_file(received)
        return received

    async def _release(self, session: TransferSession, error: PeerDropError):
        """
        End a session after a cancelled or failed transfer.

        The CANCEL / ERROR message has already been sent; closing the
        transport, the peer connection and the signaling socket follows.
        """
        logger.info(f"Closing session {session.code} after {error.kind}")
        try:
            await self.disconnect(session)
        finally:
            self._emit_error(error)

    async def save(self, received: ReceivedFile, directory: Optional[Path] = None) -> Path:
        """Write a received file into the download directory."""
        return await save_received_file(received.data, received.file_name,
                                        directory or self.config.download_dir)

    @staticmethod
    def _mark_transferring(session: TransferSession):
        peer = session.peer_session
        if peer is not None and peer.can_transition(SessionState.TRANSFERRING):
            peer.mark_transferring()

    # === Control ===

    def pause(self):
        """Pause the active send before its next segment."""
        if self._sender is not None:
            self._sender.pause()

    def resume(self):
        if self._sender is not None:
            self._sender.resume()

    def cancel(self, session: Optional[TransferSession] = None,
               reason: str = "Transfer cancelled"):
        """Cancel one session, or every session of this client."""
        for s in ([session] if session is not None else list(self._sessions)):
            s.token.cancel(reason)

    async def disconnect(self, session: Optional[TransferSession] = None):
        """Close one session (or all): transport, peer connection, signaling."""
        targets = [session] if session is not None else list(self._sessions)
        for s in targets:
            if s.transport is not None:
                await s.transport.close()
            if s.peer_session is not None:
                await s.peer_session.close()
            if s.signaling is not None:
                await s.signaling.close()
            if s in self._sessions:
                self._sessions.remove(s)
        if not self._sessions:
            self.assembler.clear_incomplete()
        logger.debug(f"Disconnected {len(targets)} session(s)")

    def get_stats(self) -> dict:
        """Get client statistics."""
        return {
            'sessions': [s.get_stats() for s in self._sessions if s.transport is not None],
            'retry': self.retry.get_stats(),
            'assembler': self.assembler.get_stats(),
        }
