"""Tests for the rendezvous client's message queue."""

import asyncio

import pytest

from peerdrop.errors import CodeConflict, ProtocolError, TransportClosed, TransportUnavailable
from peerdrop.signaling.client import MAX_PENDING, RendezvousClient


@pytest.fixture
def client():
    return RendezvousClient('ws://signaling.invalid/ws', connect_timeout=0.5)


@pytest.mark.asyncio
async def test_next_message_filters_by_type(client):
    await client._enqueue({'type': 'ice-candidate', 'data': {'n': 1}})
    await client._enqueue({'type': 'answer', 'data': {}})
    await client._enqueue({'type': 'ice-candidate', 'data': {'n': 2}})

    assert (await client.next_message(('answer',)))['type'] == 'answer'
    # Other types stay queued, in arrival order
    assert (await client.next_message())['data'] == {'n': 1}
    assert (await client.next_message(('ice-candidate',)))['data'] == {'n': 2}


@pytest.mark.asyncio
async def test_next_message_waits_for_arrival(client):
    waiter = asyncio.create_task(client.next_message(('offer',), timeout=1.0))
    await asyncio.sleep(0.01)
    await client._enqueue({'type': 'peer-joined'})
    await asyncio.sleep(0.01)
    assert not waiter.done()

    await client._enqueue({'type': 'offer', 'data': {'sdp': 'v=0'}})

    assert (await waiter)['data'] == {'sdp': 'v=0'}


@pytest.mark.asyncio
async def test_next_message_timeout(client):
    with pytest.raises(asyncio.TimeoutError):
        await client.next_message(('offer',), timeout=0.05)


@pytest.mark.asyncio
async def test_close_wakes_waiters(client):
    waiter = asyncio.create_task(client.next_message(('offer',)))
    await asyncio.sleep(0.01)

    await client.close()

    with pytest.raises(TransportClosed):
        await asyncio.wait_for(waiter, timeout=1.0)


@pytest.mark.asyncio
async def test_peer_presence_tracking(client):
    await client._enqueue({'type': 'peer-joined', 'data': {'role': 'receiver'}})
    assert client.peer_present
    await client.wait_for_peer(timeout=0.05)

    await client._enqueue({'type': 'peer-left', 'data': {'role': 'receiver'}})
    assert not client.peer_present
    assert client.get_stats()['messages_received'] == 2


@pytest.mark.asyncio
async def test_wait_for_present_peer_consumes_notification(client):
    await client._enqueue({'type': 'peer-joined', 'data': {'role': 'receiver'}})

    await client.wait_for_peer(timeout=0.05)

    assert client.get_stats()['pending'] == 0


@pytest.mark.asyncio
async def test_ignored_types_are_dropped(client):
    await client._enqueue({'type': 'ice-candidate', 'data': {}})
    await client._enqueue({'type': 'peer-left', 'data': {'role': 'sender'}})

    await client.ignore(('ice-candidate',))
    await client._enqueue({'type': 'ice-candidate', 'data': {}})

    assert (await client.next_message(timeout=0.05))['type'] == 'peer-left'
    assert client.get_stats()['pending'] == 0
    assert client.messages_dropped == 2


@pytest.mark.asyncio
async def test_unconsumed_queue_is_bounded(client):
    for n in range(MAX_PENDING + 5):
        await client._enqueue({'type': 'ice-candidate', 'data': {'n': n}})

    assert client.get_stats()['pending'] == MAX_PENDING
    assert client.messages_dropped == 5
    # Oldest messages went first
    assert (await client.next_message())['data'] == {'n': 5}


@pytest.mark.asyncio
async def test_send_requires_connection(client):
    with pytest.raises(TransportClosed):
        await client.send('offer', {})


@pytest.mark.asyncio
async def test_connect_to_unreachable_service():
    client = RendezvousClient('ws://127.0.0.1:9/ws', connect_timeout=1.0)

    with pytest.raises(TransportUnavailable):
        await client.connect()


@pytest.mark.parametrize('message,expected', [
    ({'type': 'error', 'kind': 'CodeConflict', 'message': 'taken'}, CodeConflict),
    ({'type': 'error', 'kind': 'ProtocolError', 'message': 'bad code'}, ProtocolError),
    ({'type': 'error', 'message': 'no kind'}, ProtocolError),
])
def test_error_replies(message, expected):
    error = RendezvousClient._error_from(message)

    assert type(error) is expected
