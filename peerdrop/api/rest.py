"""
Signaling Service API

Design Decision: API Framework
==============================

Options Considered:
1. FastAPI - async, WebSocket support, Pydantic models, auto-docs
2. Bare websocket server library - no HTTP endpoints for code issuing
3. aiohttp server - async, but less features

Decision: FastAPI
- One app serves the WebSocket matchmaking channel and the small REST
  surface (code issuing, status)
- Native async, matches the rest of the engine

Signaling Wire Protocol (JSON over WebSocket at /ws):
```
server -> {"type": "connection-success", "data": {"id": "..."}}
client -> {"type": "join", "code": "AB12C9", "data": {"role": "sender"}}
server -> {"type": "join-success", "code": "AB12C9", "data": {"role": "sender"}}
server -> {"type": "peer-joined", "code": "AB12C9", "data": {"role": "receiver"}}
client -> {"type": "offer"|"answer"|"ice-candidate", "code": "AB12C9", "data": {...}}
          (forwarded verbatim to the other party)
server -> {"type": "peer-left", "code": "AB12C9", "data": {"role": "receiver"}}
server -> {"type": "error", "message": "...", "kind": "CodeConflict"}
```
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.websockets import WebSocketState
from pydantic import BaseModel

from ..config import Config
from ..errors import PeerDropError, ProtocolError
from ..signaling.registry import SignalingRegistry
from ..transport.relay_server import RelayServer

logger = logging.getLogger(__name__)

RELAYED_TYPES = ('offer', 'answer', 'ice-candidate')


# === Pydantic Models ===

class InitData(BaseModel):
    """Issued code."""
    code: str
    expires_in: float


class InitResponse(BaseModel):
    """Response to a transfer initialization."""
    success: bool
    message: str
    data: InitData


class ServiceStatus(BaseModel):
    """Signaling service status."""
    active_codes: int
    paired_codes: int
    reserved_codes: int
    messages_relayed: int
    messages_dropped: int
    connections: int


# === Connections ===

class WebSocketConnection:
    """Adapts a FastAPI WebSocket to the registry's Connection protocol."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.id = uuid.uuid4().hex[:12]
        self._closed = False
        self._send_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return (not self._closed and
                self.websocket.client_state == WebSocketState.CONNECTED)

    def mark_closed(self):
        self._closed = True

    async def send_json(self, message: Dict[str, Any]) -> None:
        async with self._send_lock:
            try:
                await self.websocket.send_json(message)
            except WebSocketDisconnect as e:
                self._closed = True
                raise ConnectionError(f"WebSocket {self.id} disconnected ({e.code})") from e


def _error(message: str, kind: Optional[str] = None) -> Dict[str, Any]:
    payload = {'type': 'error', 'message': message}
    if kind:
        payload['kind'] = kind
    return payload


async def handle_signaling_message(registry: SignalingRegistry,
                                   connection: WebSocketConnection,
                                   raw: str) -> None:
    """Dispatch one client message; protocol problems are answered with an error envelope."""
    try:
        message = json.loads(raw)
    except ValueError:
        await connection.send_json(_error("Invalid JSON", ProtocolError.kind))
        return

    if not isinstance(message, dict):
        await connection.send_json(_error("Message must be a JSON object", ProtocolError.kind))
        return

    msg_type = message.get('type')
    code = message.get('code')

    try:
        if msg_type == 'join':
            data = message.get('data') or {}
            role = data.get('role') if isinstance(data, dict) else None
            await registry.register(code, role or message.get('role'), connection)
        elif msg_type in RELAYED_TYPES:
            await registry.relay(code, message, connection)
        elif msg_type == 'ping':
            await connection.send_json({'type': 'pong'})
        else:
            await connection.send_json(_error(f"Unknown message type: {msg_type!r}",
                                              ProtocolError.kind))
    except PeerDropError as e:
        logger.info(f"Signaling request {msg_type!r} from {connection.id} rejected: {e.message}")
        await connection.send_json(_error(e.message, e.kind))


# === API Creation ===

def create_app(registry: SignalingRegistry = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        registry: Rendezvous table to serve (a fresh one if not provided)

    Returns:
        FastAPI application
    """
    registry = registry or SignalingRegistry()
    connections: Dict[str, WebSocketConnection] = {}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("Signaling service starting...")
        yield
        logger.info("Signaling service stopping...")

    app = FastAPI(
        title="PeerDrop Signaling Service",
        description="Rendezvous and negotiation relay for code-paired file transfers",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Endpoints ===

    @app.get("/", tags=["General"])
    async def root():
        """API root - basic info."""
        return {
            "name": "PeerDrop Signaling Service",
            "version": "1.0.0",
            "status": "running",
        }

    @app.get("/status", response_model=ServiceStatus, tags=["General"])
    async def get_status():
        """Get registry status."""
        return ServiceStatus(connections=len(connections), **registry.get_stats())

    @app.post("/api/transfer/init", response_model=InitResponse, tags=["Transfer"])
    async def init_transfer():
        """Issue a fresh connection code."""
        code = registry.issue_code()
        return InitResponse(
            success=True,
            message="Transfer session initialized",
            data=InitData(code=code, expires_in=registry.code_ttl),
        )

    @app.websocket("/ws")
    async def signaling(websocket: WebSocket):
        """Matchmaking channel."""
        await websocket.accept()
        connection = WebSocketConnection(websocket)
        connections[connection.id] = connection
        logger.debug(f"Signaling client connected: {connection.id}")

        try:
            await connection.send_json({'type': 'connection-success',
                                        'data': {'id': connection.id}})
            while True:
                event = await websocket.receive()
                if event['type'] == 'websocket.disconnect':
                    break
                raw = event.get('text')
                if raw is None:
                    raw = (event.get('bytes') or b'').decode('utf-8', errors='replace')
                await handle_signaling_message(registry, connection, raw)
        except (ConnectionError, RuntimeError, WebSocketDisconnect) as e:
            logger.warning(f"Signaling connection {connection.id} failed: {e}")
        finally:
            connection.mark_closed()
            connections.pop(connection.id, None)
            await registry.unregister(connection)
            logger.debug(f"Signaling client disconnected: {connection.id}")

    return app


async def run_signaling_server(config: Config = None,
                               registry: SignalingRegistry = None):
    """
    Run the signaling API and the relay server until cancelled.

    Args:
        config: Host/port settings
        registry: Shared rendezvous table
    """
    import uvicorn

    config = config or Config()
    registry = registry or SignalingRegistry(code_ttl=config.code_ttl)

    relay = RelayServer(host=config.api_host, port=config.relay_port)
    await relay.start()

    app = create_app(registry)
    server_config = uvicorn.Config(
        app,
        host=config.api_host,
        port=config.api_port,
        log_level=config.log_level.lower(),
    )
    server = uvicorn.Server(server_config)
    try:
        await server.serve()
    finally:
        await relay.stop()
