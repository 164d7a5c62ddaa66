"""
Tests for the signaling service endpoints.

Every test enters the TestClient as a context manager so all WebSocket
sessions share one event loop (and therefore one registry lock table).
"""

import pytest
from fastapi.testclient import TestClient

from peerdrop.api.rest import create_app
from peerdrop.signaling.registry import SignalingRegistry


@pytest.fixture
def registry():
    return SignalingRegistry(code_ttl=120.0)


@pytest.fixture
def client(registry):
    with TestClient(create_app(registry)) as test_client:
        yield test_client


def join(ws, code, role):
    ws.send_json({'type': 'join', 'code': code, 'data': {'role': role}})
    return ws.receive_json()


class TestRestEndpoints:
    """Test the HTTP surface."""

    def test_root(self, client):
        response = client.get('/')

        assert response.status_code == 200
        assert response.json()['status'] == 'running'

    def test_init_issues_reserved_code(self, client, registry):
        response = client.post('/api/transfer/init')

        assert response.status_code == 200
        body = response.json()
        assert body['success'] is True
        assert len(body['data']['code']) == 6
        assert body['data']['expires_in'] == 120.0
        assert registry.is_active(body['data']['code'])

    def test_status(self, client):
        client.post('/api/transfer/init')

        status = client.get('/status').json()

        assert status['reserved_codes'] == 1
        assert status['active_codes'] == 0
        assert status['connections'] == 0


class TestSignalingSocket:
    """Test matchmaking over /ws."""

    def test_greeting(self, client):
        with client.websocket_connect('/ws') as ws:
            greeting = ws.receive_json()

        assert greeting['type'] == 'connection-success'
        assert greeting['data']['id']

    def test_pairing_and_relay(self, client):
        with client.websocket_connect('/ws') as sender, \
                client.websocket_connect('/ws') as receiver:
            sender.receive_json()
            receiver.receive_json()

            assert join(sender, 'ab12c9', 'sender') == {
                'type': 'join-success', 'code': 'AB12C9', 'data': {'role': 'sender'}
            }
            assert join(receiver, 'AB12C9', 'receiver')['type'] == 'join-success'
            assert receiver.receive_json()['type'] == 'peer-joined'
            assert sender.receive_json() == {
                'type': 'peer-joined', 'code': 'AB12C9', 'data': {'role': 'receiver'}
            }

            offer = {'type': 'offer', 'code': 'AB12C9',
                     'data': {'session': 's1', 'sdp': 'v=0', 'type': 'offer'}}
            sender.send_json(offer)
            assert receiver.receive_json() == offer

    def test_second_sender_gets_code_conflict(self, client):
        with client.websocket_connect('/ws') as first, \
                client.websocket_connect('/ws') as second:
            first.receive_json()
            second.receive_json()
            join(first, 'AB12C9', 'sender')

            reply = join(second, 'AB12C9', 'sender')

            assert reply['type'] == 'error'
            assert reply['kind'] == 'CodeConflict'

    def test_peer_left_on_disconnect(self, client):
        with client.websocket_connect('/ws') as receiver:
            receiver.receive_json()
            with client.websocket_connect('/ws') as sender:
                sender.receive_json()
                join(sender, 'AB12C9', 'sender')
                join(receiver, 'AB12C9', 'receiver')
                receiver.receive_json()  # peer-joined

            assert receiver.receive_json() == {
                'type': 'peer-left', 'code': 'AB12C9', 'data': {'role': 'sender'}
            }

    @pytest.mark.parametrize('message,kind', [
        ({'type': 'join', 'code': 'AB12C9', 'data': {'role': 'observer'}}, 'ProtocolError'),
        ({'type': 'join', 'code': 'nope', 'data': {'role': 'sender'}}, 'ProtocolError'),
        ({'type': 'offer', 'code': 'AB12C9', 'data': {}}, 'ProtocolError'),
        ({'type': 'teleport'}, 'ProtocolError'),
    ])
    def test_rejected_messages(self, client, message, kind):
        with client.websocket_connect('/ws') as ws:
            ws.receive_json()
            ws.send_json(message)

            reply = ws.receive_json()

        assert reply['type'] == 'error'
        assert reply['kind'] == kind

    def test_invalid_json(self, client):
        with client.websocket_connect('/ws') as ws:
            ws.receive_json()
            ws.send_text('{not json')

            reply = ws.receive_json()

        assert reply == {'type': 'error', 'message': 'Invalid JSON', 'kind': 'ProtocolError'}

    def test_ping(self, client):
        with client.websocket_connect('/ws') as ws:
            ws.receive_json()
            ws.send_json({'type': 'ping'})

            assert ws.receive_json() == {'type': 'pong'}
