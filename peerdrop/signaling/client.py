"""
Rendezvous Client

Peer-side connection to the signaling service.

Lifecycle:
```
client = RendezvousClient(config.signaling_url)
await client.connect()                  # waits for connection-success
await client.join("AB12C9", "sender")   # waits for join-success
await client.wait_for_peer()            # waits for peer-joined
await client.send("offer", {...})
msg = await client.next_message(("answer",))
await client.close()
```

Incoming messages are read by one background task and queued; callers
pull them with `next_message`, optionally filtered by type. Messages of
other types stay queued for a later caller.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

import aiohttp

from ..errors import (
    CodeConflict, PeerDropError, ProtocolError, TransportClosed,
    TransportUnavailable, error_from_dict,
)
from .registry import normalize_code

logger = logging.getLogger(__name__)

# Unconsumed messages kept before the oldest is dropped
MAX_PENDING = 256


async def init_transfer(http_url: str, timeout: float = 10.0) -> str:
    """
    Ask the signaling service for a fresh code.

    Args:
        http_url: Base URL, e.g. http://localhost:8080

    Returns:
        Issued code
    """
    url = f"{http_url.rstrip('/')}/api/transfer/init"
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                url, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                if response.status != 200:
                    raise TransportUnavailable(
                        f"Signaling service answered {response.status} for {url}"
                    )
                payload = await response.json()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TransportUnavailable(f"Signaling service unreachable at {url}: {e}") from e

    code = payload.get('data', {}).get('code')
    if not payload.get('success') or not code:
        raise ProtocolError(f"Unexpected init response: {payload}")
    logger.info(f"Signaling service issued code {code}")
    return code


class RendezvousClient:
    """WebSocket client for the signaling service."""

    def __init__(self, url: str, connect_timeout: float = 10.0):
        """
        Args:
            url: WebSocket URL, e.g. ws://localhost:8080/ws
            connect_timeout: Seconds to wait for the server's greeting and replies
        """
        self.url = url
        self.connect_timeout = connect_timeout
        self.connection_id: Optional[str] = None
        self.code: Optional[str] = None
        self.role: Optional[str] = None
        self.peer_present = False

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: List[Dict[str, Any]] = []
        self._ignored: Set[str] = set()
        self._arrived = asyncio.Condition()
        self._closed = False

        # Statistics
        self.messages_sent = 0
        self.messages_received = 0
        self.messages_dropped = 0

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed and not self._closed

    # === Connection ===

    async def connect(self):
        """
        Open the WebSocket and wait for `connection-success`.

        Raises:
            TransportUnavailable: server unreachable or silent
        """
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, heartbeat=30.0),
                timeout=self.connect_timeout,
            )
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            await self._session.close()
            self._session = None
            raise TransportUnavailable(f"Cannot reach signaling service at {self.url}: {e}") from e

        self._closed = False
        self._reader = asyncio.create_task(self._read_loop())
        try:
            greeting = await self.next_message(('connection-success',),
                                               timeout=self.connect_timeout)
        except (asyncio.TimeoutError, TransportClosed) as e:
            await self.close()
            raise TransportUnavailable(f"No greeting from signaling service at {self.url}") from e
        self.connection_id = greeting.get('data', {}).get('id')
        logger.info(f"Connected to signaling service {self.url} as {self.connection_id}")

    async def join(self, code: str, role: str):
        """
        Register under a code.

        Raises:
            CodeConflict: the role is taken
            ProtocolError: the server rejected the code or role
        """
        code = normalize_code(code)
        await self.send('join', {'role': role}, code=code)
        reply = await self.next_message(('join-success', 'error'), timeout=self.connect_timeout)
        if reply['type'] == 'error':
            raise self._error_from(reply)
        self.code = code
        self.role = role
        logger.info(f"Joined {code} as {role}")

    async def wait_for_peer(self, timeout: Optional[float] = None):
        """Wait until the other party of the code has joined."""
        if self.peer_present:
            await self.discard(('peer-joined',))
            return
        await self.next_message(('peer-joined',), timeout=timeout)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if self._ws is not None:
            await self._ws.close()
        if self._session is not None:
            await self._session.close()
        async with self._arrived:
            self._arrived.notify_all()
        logger.debug("Signaling connection closed")

    # === Messages ===

    async def send(self, msg_type: str, data: Any = None, code: Optional[str] = None):
        """Send an envelope `{type, code, data}` on the signaling channel."""
        if not self.is_connected:
            raise TransportClosed("Signaling connection is closed")
        message = {'type': msg_type, 'code': code or self.code, 'data': data}
        try:
            await self._ws.send_json(message)
        except (ConnectionError, RuntimeError) as e:
            raise TransportClosed(f"Signaling send failed: {e}") from e
        self.messages_sent += 1

    async def next_message(self, types: Optional[Iterable[str]] = None,
                           timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Next queued message whose type is in `types` (any type if None).

        Raises:
            asyncio.TimeoutError: nothing matching arrived in time
            TransportClosed: the signaling connection closed first
        """
        wanted = set(types) if types is not None else None

        async def _take():
            async with self._arrived:
                while True:
                    for i, message in enumerate(self._pending):
                        if wanted is None or message.get('type') in wanted:
                            return self._pending.pop(i)
                    if self._closed or (self._reader is not None and self._reader.done()):
                        raise TransportClosed("Signaling connection closed")
                    await self._arrived.wait()

        return await asyncio.wait_for(_take(), timeout=timeout)

    async def discard(self, types: Iterable[str]) -> int:
        """Drop queued messages of the given types. Returns how many were dropped."""
        unwanted = set(types)
        async with self._arrived:
            kept = [m for m in self._pending if m.get('type') not in unwanted]
            dropped = len(self._pending) - len(kept)
            self._pending = kept
        self.messages_dropped += dropped
        return dropped

    async def ignore(self, types: Iterable[str]):
        """Stop queueing messages of the given types, dropping any already queued."""
        self._ignored.update(types)
        dropped = await self.discard(self._ignored)
        if dropped:
            logger.debug(f"Dropped {dropped} unconsumed signaling message(s)")

    async def _read_loop(self):
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        message = json.loads(msg.data)
                    except ValueError:
                        logger.warning("Dropping malformed signaling message")
                        continue
                    if isinstance(message, dict):
                        await self._enqueue(message)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        finally:
            logger.debug("Signaling reader stopped")
            async with self._arrived:
                self._arrived.notify_all()

    async def _enqueue(self, message: Dict[str, Any]):
        msg_type = message.get('type')
        self.messages_received += 1
        if msg_type == 'peer-joined':
            self.peer_present = True
        elif msg_type == 'peer-left':
            self.peer_present = False
            logger.info(f"Peer left code {message.get('code')}")
        elif msg_type == 'error':
            logger.warning(f"Signaling error: {message.get('message')}")

        if msg_type in self._ignored:
            self.messages_dropped += 1
            return

        async with self._arrived:
            self._pending.append(message)
            if len(self._pending) > MAX_PENDING:
                oldest = self._pending.pop(0)
                self.messages_dropped += 1
                logger.warning(f"Signaling queue full, dropped unconsumed {oldest.get('type')}")
            self._arrived.notify_all()

    @staticmethod
    def _error_from(message: Dict[str, Any]) -> PeerDropError:
        error = error_from_dict(message)
        if isinstance(error, (CodeConflict, ProtocolError)):
            return error
        return ProtocolError(error.message)

    def get_stats(self) -> dict:
        """Get signaling client statistics."""
        return {
            'connected': self.is_connected,
            'code': self.code,
            'role': self.role,
            'peer_present': self.peer_present,
            'messages_sent': self.messages_sent,
            'messages_received': self.messages_received,
            'pending': len(self._pending),
            'messages_dropped': self.messages_dropped,
        }
