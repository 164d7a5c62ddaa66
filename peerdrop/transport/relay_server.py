"""
Relay Server

Fallback path when no direct peer channel can be negotiated: both parties
open a TCP connection to this server, name their code and role, and the
server pipes bytes between them. It never parses or stores file data.

Handshake (each line is one length-prefixed JSON frame, see framing.py):
```
client -> {"type": "join", "code": "AB12C9", "role": "sender"}
server -> {"type": "joined", "code": "AB12C9"}
server -> {"type": "ready"}                     # once the other role joined
... raw byte pipe in both directions ...

server -> {"type": "error", "kind": "CodeConflict", "message": "..."}
```
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from ..errors import CodeConflict, ProtocolError
from .framing import encode_frame, read_frame

logger = logging.getLogger(__name__)

ROLES = ('sender', 'receiver')
PIPE_BUFFER = 64 * 1024


@dataclass
class RelayEndpoint:
    """One side of a relayed pairing."""
    role: str
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter

    @property
    def is_open(self) -> bool:
        return not self.writer.is_closing()


@dataclass
class RelayPair:
    """Sender and receiver waiting on (or piping through) one code."""
    code: str
    endpoints: Dict[str, RelayEndpoint] = field(default_factory=dict)
    ready: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def complete(self) -> bool:
        return all(role in self.endpoints for role in ROLES)

    def other(self, role: str) -> Optional[RelayEndpoint]:
        for r, endpoint in self.endpoints.items():
            if r != role:
                return endpoint
        return None


def _control(message: dict) -> bytes:
    return encode_frame(json.dumps(message).encode('utf-8'))


class RelayServer:
    """
    TCP server pairing two connections by code and relaying bytes between them.

    A role already held by an open connection is rejected with CodeConflict.
    """

    def __init__(self, host: str = '0.0.0.0', port: int = 8470,
                 join_timeout: float = 10.0, pair_timeout: float = 300.0):
        self.host = host
        self.port = port
        self.join_timeout = join_timeout
        self.pair_timeout = pair_timeout
        self.server: Optional[asyncio.AbstractServer] = None
        self._pairs: Dict[str, RelayPair] = {}
        self._lock = asyncio.Lock()
        self._running = False

        # Statistics
        self.bytes_relayed = 0
        self.pairs_completed = 0

    @property
    def bound_port(self) -> int:
        """Actual listening port (useful when started with port 0)."""
        if self.server and self.server.sockets:
            return self.server.sockets[0].getsockname()[1]
        return self.port

    async def start(self):
        """Start the relay server."""
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )
        self._running = True

        addr = self.server.sockets[0].getsockname()
        logger.info(f"Relay server listening on {addr}")

    async def stop(self):
        """Stop the relay server."""
        self._running = False
        if self.server:
            self.server.close()
            for pair in list(self._pairs.values()):
                for endpoint in pair.endpoints.values():
                    endpoint.writer.close()
            await self.server.wait_closed()
            logger.info("Relay server stopped")

    async def _read_join(self, reader: asyncio.StreamReader) -> tuple:
        frame = await asyncio.wait_for(read_frame(reader), timeout=self.join_timeout)
        if frame is None:
            raise ProtocolError("Connection closed before join")
        try:
            message = json.loads(frame.decode('utf-8'))
        except (ValueError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Invalid join frame: {e}") from e

        if not isinstance(message, dict) or message.get('type') != 'join':
            raise ProtocolError("Expected a join message")
        code = message.get('code')
        role = message.get('role')
        if not isinstance(code, str) or not code:
            raise ProtocolError("Join without code")
        if role not in ROLES:
            raise ProtocolError(f"Invalid role: {role!r}")
        return code, role

    async def _register(self, code: str, role: str,
                        endpoint: RelayEndpoint) -> RelayPair:
        async with self._lock:
            pair = self._pairs.setdefault(code, RelayPair(code))
            existing = pair.endpoints.get(role)
            if existing is not None and existing.is_open:
                raise CodeConflict(f"Role {role} already joined for code {code}")

            pair.endpoints[role] = endpoint
            endpoint.writer.write(_control({'type': 'joined', 'code': code}))

            if pair.complete and not pair.ready.is_set():
                # Both READY frames go out before either side starts piping
                for peer in pair.endpoints.values():
                    peer.writer.write(_control({'type': 'ready'}))
                pair.ready.set()
                self.pairs_completed += 1
                logger.info(f"Relay paired for code {code}")

        await endpoint.writer.drain()
        return pair

    async def _unregister(self, code: str, endpoint: RelayEndpoint):
        async with self._lock:
            pair = self._pairs.get(code)
            if pair is None:
                return
            if pair.endpoints.get(endpoint.role) is endpoint:
                del pair.endpoints[endpoint.role]
            if not pair.endpoints:
                del self._pairs[code]

    async def _await_pair(self, pair: RelayPair, endpoint: RelayEndpoint) -> bool:
        """
        Wait for the other role to join while watching for this side leaving.

        Returns:
            True once paired, False if the client disconnected first

        Raises:
            asyncio.TimeoutError: nobody joined within pair_timeout
            ProtocolError: the client sent data before the pair was ready
        """
        if pair.ready.is_set():
            return True

        ready_task = asyncio.ensure_future(pair.ready.wait())
        eof_task = asyncio.ensure_future(endpoint.reader.read(1))
        try:
            done, _ = await asyncio.wait(
                {ready_task, eof_task},
                timeout=self.pair_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready_task.cancel()
            eof_task.cancel()

        if eof_task in done and not eof_task.cancelled():
            if eof_task.result():
                raise ProtocolError("Data sent before the relay was ready")
            logger.debug(f"{endpoint.role} left code {pair.code} before pairing")
            return False
        if ready_task in done:
            return True
        raise asyncio.TimeoutError()

    async def _pipe(self, source: RelayEndpoint, target: RelayEndpoint):
        """Copy bytes from source to target until source reaches EOF."""
        try:
            while self._running:
                data = await source.reader.read(PIPE_BUFFER)
                if not data:
                    break
                target.writer.write(data)
                await target.writer.drain()
                self.bytes_relayed += len(data)
        except (ConnectionError, OSError) as e:
            logger.debug(f"Relay pipe {source.role} -> {target.role} ended: {e}")
        finally:
            target.writer.close()

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Handle an incoming relay connection."""
        peer = writer.get_extra_info('peername')
        logger.debug(f"New relay connection from {peer}")
        code = None
        endpoint = None

        try:
            code, role = await self._read_join(reader)
            endpoint = RelayEndpoint(role=role, reader=reader, writer=writer)
            pair = await self._register(code, role, endpoint)

            if await self._await_pair(pair, endpoint):
                other = pair.other(role)
                if other is not None:
                    await self._pipe(endpoint, other)

        except CodeConflict as e:
            logger.warning(f"Relay join rejected from {peer}: {e.message}")
            writer.write(_control({'type': 'error', **e.to_dict()}))
        except ProtocolError as e:
            logger.warning(f"Bad relay handshake from {peer}: {e.message}")
            writer.write(_control({'type': 'error', **e.to_dict()}))
        except asyncio.TimeoutError:
            logger.info(f"Relay connection from {peer} timed out waiting (code {code})")
        except (ConnectionError, OSError) as e:
            logger.debug(f"Relay connection from {peer} failed: {e}")
        finally:
            if endpoint is not None:
                await self._unregister(code, endpoint)
            writer.close()
            logger.debug(f"Relay connection closed: {peer}")

    def get_stats(self) -> dict:
        """Get relay statistics."""
        return {
            'waiting_codes': sum(1 for p in self._pairs.values() if not p.complete),
            'active_pairs': sum(1 for p in self._pairs.values() if p.complete),
            'pairs_completed': self.pairs_completed,
            'bytes_relayed': self.bytes_relayed,
        }
