"""Shared pytest fixtures for all tests."""

import asyncio
from typing import Callable, List, Optional

import pytest

from peerdrop.errors import SendFailed, TransportClosed
from peerdrop.signaling.client import RendezvousClient
from peerdrop.transfer.retry import RetryController, RetryPolicy
from peerdrop.transport.base import Transport


class MemoryTransport(Transport):
    """
    In-process transport; one end of a pair made by memory_pair().

    Hooks:
        fail_on: called with each outgoing message; an exception it returns
            is raised instead of sending
        tamper: rewrites each outgoing message before delivery
    """

    kind = "memory"

    def __init__(self, max_message_size: int = 0, default_chunk_size: int = 4096):
        super().__init__()
        self.max_message_size = max_message_size
        self.default_chunk_size = default_chunk_size
        self.peer: Optional['MemoryTransport'] = None
        self.fail_on: Optional[Callable[[bytes], Optional[BaseException]]] = None
        self.tamper: Optional[Callable[[bytes], bytes]] = None
        self.sent: List[bytes] = []
        self.drain_waits = 0

    async def open(self, timeout: float = 10.0) -> None:
        self._opened = True

    async def send(self, message: bytes) -> None:
        if self._closed:
            raise TransportClosed("Memory transport closed")
        if self.fail_on is not None:
            error = self.fail_on(message)
            if error is not None:
                raise error
        if self.max_message_size and len(message) > self.max_message_size:
            raise SendFailed(f"Message of {len(message)} bytes too large")
        self._record_sent(message)
        self.sent.append(message)
        if self.tamper is not None:
            message = self.tamper(message)
        self.peer._deliver(bytes(message))

    async def wait_drained(self, timeout: float = 5.0) -> bool:
        self.drain_waits += 1
        return True

    async def _close(self) -> None:
        if self.peer is not None:
            self.peer._remote_closed()


class FakeChannel:
    """Stand-in for an aiortc RTCDataChannel."""

    def __init__(self, label: str = 'peerdrop', ready_state: str = 'connecting'):
        self.label = label
        self.readyState = ready_state
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.handlers = {}
        self.sent: List[bytes] = []
        self.send_error: Optional[BaseException] = None

    def on(self, event, handler):
        self.handlers[event] = handler

    def emit(self, event, *args):
        handler = self.handlers.get(event)
        if handler is not None:
            handler(*args)

    def open(self):
        self.readyState = 'open'
        self.emit('open')

    def send(self, message):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)

    def close(self):
        if self.readyState != 'closed':
            self.readyState = 'closed'
            self.emit('close')


class FakeDescription:
    def __init__(self, sdp, type):
        self.sdp = sdp
        self.type = type


class FakePeerConnection:
    """
    Stand-in for RTCPeerConnection.

    The offerer's channel opens once the answer is applied; the answerer
    is handed an open channel once its answer is set locally. With
    open_channel=False no channel ever opens, so negotiation times out.
    """

    def __init__(self, config=None, open_channel: bool = True):
        self.config = config
        self.open_channel = open_channel
        self.handlers = {}
        self.channel = None
        self.localDescription = None
        self.remoteDescription = None
        self.candidates = []
        self.connectionState = 'new'
        self.closed = False

    def on(self, event, handler):
        self.handlers[event] = handler

    def createDataChannel(self, label, ordered=True):
        self.channel = FakeChannel(label)
        self.channel.ordered = ordered
        return self.channel

    async def createOffer(self):
        return FakeDescription('offer-sdp', 'offer')

    async def createAnswer(self):
        return FakeDescription('answer-sdp', 'answer')

    async def setLocalDescription(self, description):
        self.localDescription = description
        if description.type == 'answer' and self.open_channel:
            remote = FakeChannel(ready_state='open')
            asyncio.get_running_loop().call_soon(self.handlers['datachannel'], remote)

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        if description.type == 'answer' and self.channel is not None and self.open_channel:
            asyncio.get_running_loop().call_soon(self.channel.open)

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = 'closed'


class FakeSignaling(RendezvousClient):
    """Rendezvous client whose wire is replaced by an in-test callback."""

    def __init__(self, on_send=None, peer_present: bool = True,
                 join_error: Optional[BaseException] = None):
        super().__init__('ws://signaling.invalid/ws')
        self.code = 'AB12C9'
        self.sent = []
        self.on_send = on_send
        self.peer_present = peer_present
        self.join_error = join_error

    async def connect(self):
        self.connection_id = 'fake'

    async def join(self, code, role):
        if self.join_error is not None:
            raise self.join_error
        self.code = code
        self.role = role

    async def send(self, msg_type, data=None, code=None):
        self.sent.append({'type': msg_type, 'data': data})
        if self.on_send is not None:
            await self.on_send(self, msg_type, data)

    async def push(self, msg_type, data=None):
        await self._enqueue({'type': msg_type, 'code': self.code, 'data': data})


def memory_pair(**kwargs):
    """Two connected, open MemoryTransports."""
    a, b = MemoryTransport(**kwargs), MemoryTransport(**kwargs)
    a.peer, b.peer = b, a
    a._opened = b._opened = True
    return a, b


@pytest.fixture
def transports():
    """Connected (sender side, receiver side) memory transports."""
    return memory_pair()


@pytest.fixture
def fast_retry():
    """Retry controller with the default attempt count and no waiting."""
    return RetryController(RetryPolicy(max_attempts=5, base_delay=0.0, max_delay=0.0))


@pytest.fixture
def sample_bytes():
    """10,000 bytes with a non-repeating pattern."""
    return bytes((i * 7 + i // 256) % 256 for i in range(10_000))


@pytest.fixture
def sample_file(tmp_path, sample_bytes):
    """
    Create a sample file for transfer tests.

    Returns:
        Path to a 10,000-byte binary file
    """
    file_path = tmp_path / 'report.bin'
    file_path.write_bytes(sample_bytes)
    return file_path
