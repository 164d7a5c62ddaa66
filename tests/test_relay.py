"""Tests for the relay server and relayed transport over real sockets."""

import asyncio
from contextlib import asynccontextmanager

import pytest

from peerdrop.errors import CodeConflict, TransportClosed, TransportUnavailable
from peerdrop.transport.relay import RelayTransport
from peerdrop.transport.relay_server import RelayServer

HOST = '127.0.0.1'


@asynccontextmanager
async def running_relay(**kwargs):
    server = RelayServer(host=HOST, port=0, **kwargs)
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


async def open_pair(server, code='AB12C9'):
    sender = RelayTransport(HOST, server.bound_port, code, 'sender')
    receiver = RelayTransport(HOST, server.bound_port, code, 'receiver')
    await asyncio.gather(sender.open(timeout=5.0), receiver.open(timeout=5.0))
    return sender, receiver


@pytest.mark.asyncio
async def test_messages_flow_both_ways():
    async with running_relay() as server:
        sender, receiver = await open_pair(server)

        await sender.send(b'hello')
        await receiver.send(b'world')

        assert await asyncio.wait_for(receiver.receive(), 5.0) == b'hello'
        assert await asyncio.wait_for(sender.receive(), 5.0) == b'world'
        assert server.get_stats()['pairs_completed'] == 1

        await sender.close()
        await receiver.close()


@pytest.mark.asyncio
async def test_message_boundaries_survive_the_stream():
    """Large and small messages arrive intact and in order."""
    async with running_relay() as server:
        sender, receiver = await open_pair(server)
        messages = [b'a', bytes(range(256)) * 1200, b'', b'tail']

        for message in messages:
            await sender.send(message)

        received = [await asyncio.wait_for(receiver.receive(), 5.0) for _ in messages]
        assert received == messages

        await sender.close()
        await receiver.close()


@pytest.mark.asyncio
async def test_close_is_seen_by_peer():
    async with running_relay() as server:
        sender, receiver = await open_pair(server)

        await sender.close()

        assert await asyncio.wait_for(receiver.receive(), 5.0) is None
        assert not receiver.is_open
        with pytest.raises(TransportClosed):
            await receiver.send(b'late')


@pytest.mark.asyncio
async def test_duplicate_role_is_a_code_conflict():
    async with running_relay() as server:
        sender, receiver = await open_pair(server)
        intruder = RelayTransport(HOST, server.bound_port, 'AB12C9', 'sender')

        with pytest.raises(CodeConflict):
            await intruder.open(timeout=5.0)

        await sender.close()
        await receiver.close()


@pytest.mark.asyncio
async def test_no_peer_within_timeout():
    async with running_relay() as server:
        lonely = RelayTransport(HOST, server.bound_port, 'ZZ99ZZ', 'sender')

        with pytest.raises(TransportUnavailable):
            await lonely.open(timeout=0.2)


@pytest.mark.asyncio
async def test_unreachable_relay():
    async with running_relay() as server:
        port = server.bound_port

    transport = RelayTransport(HOST, port, 'AB12C9', 'sender')
    with pytest.raises(TransportUnavailable):
        await transport.open(timeout=1.0)
