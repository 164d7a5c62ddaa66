"""
Peer Session - Negotiating the Direct Channel

Design Decision: Explicit Negotiation State Machine
===================================================

Options Considered:
1. Callback soup: react to whatever aiortc / the signaling socket emits
   - Easy to start, very hard to reason about retries and timeouts

2. One object per negotiation attempt with an explicit state enum
   - Every transition is checked against a table
   - A timed-out or failed attempt is simply discarded; a retry builds a
     fresh session with the same code

Decision: Option 2

State Machine:
```
IDLE -> SIGNALING_CONNECTED -> OFFER_SENT     -> ANSWER_EXCHANGED
                            -> OFFER_RECEIVED -> ANSWER_EXCHANGED
ANSWER_EXCHANGED -> CANDIDATES_EXCHANGING -> CONNECTED -> TRANSFERRING -> CLOSED
(any non-terminal state) -> FAILED
```

Negotiation Messages (relayed by the signaling service):
```
offer          {"session": nonce, "sdp": "...", "type": "offer"}
answer         {"session": nonce, "sdp": "...", "type": "answer"}
ice-candidate  {"session": nonce, "candidate": "candidate:...",
                "sdpMid": "0", "sdpMLineIndex": 0}
```
The sender picks a fresh nonce per attempt; the receiver adopts the nonce
of the offer it answers. Messages carrying any other nonce belong to an
abandoned attempt and are ignored.

Candidates may trickle in before the remote description is known; they
are queued and applied right after it. aiortc itself gathers candidates
into the SDP, so a peer built on it never trickles, but it accepts them.
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from ..errors import (
    InvalidStateTransition, NegotiationTimeout, PeerDropError, ProtocolError,
    TransferCancelled, TransportClosed,
)
from ..transport.direct import DirectTransport

logger = logging.getLogger(__name__)

CHANNEL_LABEL = "peerdrop"
NEGOTIATION_TYPES = ('offer', 'answer', 'ice-candidate')


class SessionState(Enum):
    IDLE = "idle"
    SIGNALING_CONNECTED = "signaling_connected"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    ANSWER_EXCHANGED = "answer_exchanged"
    CANDIDATES_EXCHANGING = "candidates_exchanging"
    CONNECTED = "connected"
    TRANSFERRING = "transferring"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.CLOSED, SessionState.FAILED})

TRANSITIONS: Dict[SessionState, Set[SessionState]] = {
    SessionState.IDLE: {SessionState.SIGNALING_CONNECTED},
    SessionState.SIGNALING_CONNECTED: {SessionState.OFFER_SENT, SessionState.OFFER_RECEIVED},
    SessionState.OFFER_SENT: {SessionState.ANSWER_EXCHANGED},
    SessionState.OFFER_RECEIVED: {SessionState.ANSWER_EXCHANGED},
    SessionState.ANSWER_EXCHANGED: {SessionState.CANDIDATES_EXCHANGING},
    SessionState.CANDIDATES_EXCHANGING: {SessionState.CONNECTED},
    SessionState.CONNECTED: {SessionState.TRANSFERRING, SessionState.CLOSED},
    SessionState.TRANSFERRING: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
    SessionState.FAILED: set(),
}


def build_rtc_configuration(ice_servers: List[str]) -> RTCConfiguration:
    """RTCConfiguration from a list of STUN/TURN URLs."""
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])


def parse_candidate(data: Dict[str, Any]):
    """
    Turn an `ice-candidate` payload into an aiortc RTCIceCandidate.

    Raises:
        ProtocolError: missing or unparsable candidate line
    """
    line = data.get('candidate')
    if not isinstance(line, str) or not line:
        raise ProtocolError("ice-candidate without a candidate line")
    if line.startswith('candidate:'):
        line = line.split(':', 1)[1]
    # foundation component transport priority address port "typ" type
    if len(line.split()) < 8:
        raise ProtocolError(f"Truncated ICE candidate {line!r}")
    try:
        candidate = candidate_from_sdp(line)
    except (ValueError, IndexError) as e:
        raise ProtocolError(f"Unparsable ICE candidate {line!r}: {e}") from e
    candidate.sdpMid = data.get('sdpMid')
    candidate.sdpMLineIndex = data.get('sdpMLineIndex')
    return candidate


class PeerSession:
    """
    One negotiation attempt of the direct channel.

    Usage:
        session = PeerSession(rendezvous, "sender", ice_servers=[...])
        transport = await session.negotiate()   # CONNECTED, or raises
        session.mark_transferring()
        ...
        await session.close()
    """

    def __init__(self, signaling, role: str,
                 ice_servers: Optional[List[str]] = None,
                 negotiation_timeout: float = 10.0,
                 pc_factory: Optional[Callable[[RTCConfiguration], Any]] = None,
                 stale_sessions: Optional[Set[str]] = None,
                 attempt: int = 1):
        """
        Args:
            signaling: Joined RendezvousClient (anything with send/next_message)
            role: "sender" makes the offer, "receiver" answers it
            ice_servers: STUN/TURN URLs
            negotiation_timeout: Seconds from SIGNALING_CONNECTED to CONNECTED
            pc_factory: Builds the peer connection from an RTCConfiguration
            stale_sessions: Nonces of earlier attempts; shared across retries
            attempt: Attempt number, for logging
        """
        if role not in ('sender', 'receiver'):
            raise ValueError(f"Invalid role: {role!r}")
        self.signaling = signaling
        self.role = role
        self.ice_servers = ice_servers or []
        self.negotiation_timeout = negotiation_timeout
        self._pc_factory = pc_factory or (lambda config: RTCPeerConnection(configuration=config))
        self.stale_sessions = stale_sessions if stale_sessions is not None else set()
        self.attempt = attempt

        self.state = SessionState.IDLE
        self.nonce: Optional[str] = None
        self.error: Optional[PeerDropError] = None
        self.pc = None
        self.transport: Optional[DirectTransport] = None

        self._remote_described = False
        self._queued_candidates: List[Dict[str, Any]] = []
        self._failure: Optional[asyncio.Future] = None
        self._channel_ready: Optional[asyncio.Future] = None

        # Statistics
        self.candidates_applied = 0
        self.messages_ignored = 0

    # === State ===

    def can_transition(self, new_state: SessionState) -> bool:
        if self.state in TERMINAL_STATES:
            return False
        return new_state == SessionState.FAILED or new_state in TRANSITIONS[self.state]

    def _transition(self, new_state: SessionState):
        if not self.can_transition(new_state):
            raise InvalidStateTransition(
                f"{self.state.value} -> {new_state.value} is not a valid transition"
            )
        logger.debug(f"[{self.role} #{self.attempt}] {self.state.value} -> {new_state.value}")
        self.state = new_state

    def fail(self, error: PeerDropError):
        """Move to FAILED, remembering why. No-op once terminal."""
        if self.state in TERMINAL_STATES:
            return
        self.error = error
        self._transition(SessionState.FAILED)
        logger.warning(f"[{self.role} #{self.attempt}] negotiation failed: {error.message}")

    def mark_transferring(self):
        self._transition(SessionState.TRANSFERRING)

    @property
    def is_connected(self) -> bool:
        return self.state in (SessionState.CONNECTED, SessionState.TRANSFERRING)

    # === Negotiation ===

    async def negotiate(self) -> DirectTransport:
        """
        Run the attempt until the data channel is open.

        Returns:
            Open DirectTransport

        Raises:
            NegotiationTimeout: CONNECTED not reached within negotiation_timeout
            TransportClosed: peer or signaling went away mid-negotiation
            ProtocolError: malformed negotiation message
        """
        self._transition(SessionState.SIGNALING_CONNECTED)
        loop = asyncio.get_running_loop()
        self._failure = loop.create_future()
        self._channel_ready = loop.create_future()

        self.pc = self._pc_factory(build_rtc_configuration(self.ice_servers))
        self.pc.on("connectionstatechange", self._on_connection_state)
        if self.role == 'receiver':
            self.pc.on("datachannel", self._on_datachannel)

        pump = asyncio.create_task(self._pump_signaling())
        main = asyncio.create_task(self._offer() if self.role == 'sender' else self._answer())
        try:
            done, _ = await asyncio.wait(
                {main, self._failure}, timeout=self.negotiation_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if main in done:
                try:
                    transport = main.result()
                except PeerDropError:
                    raise
                except Exception as e:
                    raise TransportClosed(f"Negotiation failed: {e}") from e
                self._transition(SessionState.CONNECTED)
                # Late candidates and answers have no consumer once connected
                await self.signaling.ignore(NEGOTIATION_TYPES)
                logger.info(f"[{self.role} #{self.attempt}] direct channel connected")
                return transport
            if self._failure in done:
                raise self._failure.result()
            raise NegotiationTimeout(
                f"Direct channel not connected within {self.negotiation_timeout:.0f}s"
            )
        except PeerDropError as e:
            self.fail(e)
            await self._teardown()
            raise
        except BaseException:
            self.fail(TransferCancelled("Negotiation interrupted"))
            await self._teardown()
            raise
        finally:
            for task in (main, pump):
                if not task.done():
                    task.cancel()
            await asyncio.gather(main, pump, return_exceptions=True)
            if self.nonce:
                self.stale_sessions.add(self.nonce)

    async def _offer(self) -> DirectTransport:
        self.nonce = uuid.uuid4().hex[:12]
        channel = self.pc.createDataChannel(CHANNEL_LABEL, ordered=False)
        transport = DirectTransport(channel, on_closed=self._close_pc)
        self.transport = transport

        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        await self._send_description('offer')
        self._transition(SessionState.OFFER_SENT)

        answer = await self._next_for_session('answer')
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=answer['sdp'], type='answer')
        )
        self._transition(SessionState.ANSWER_EXCHANGED)
        await self._remote_description_applied()

        await transport.open(timeout=self.negotiation_timeout)
        return transport

    async def _answer(self) -> DirectTransport:
        offer = await self._next_for_session('offer')
        self.nonce = offer['session']
        self._transition(SessionState.OFFER_RECEIVED)

        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=offer['sdp'], type='offer')
        )
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        await self._send_description('answer')
        self._transition(SessionState.ANSWER_EXCHANGED)
        await self._remote_description_applied()

        channel = await self._channel_ready
        transport = DirectTransport(channel, on_closed=self._close_pc)
        self.transport = transport
        await transport.open(timeout=self.negotiation_timeout)
        return transport

    async def _send_description(self, kind: str):
        description = self.pc.localDescription
        await self.signaling.send(kind, {
            'session': self.nonce,
            'sdp': description.sdp,
            'type': description.type,
        })

    async def _next_for_session(self, msg_type: str) -> Dict[str, Any]:
        """Next `msg_type` message of this attempt, skipping abandoned attempts."""
        while True:
            message = await self.signaling.next_message((msg_type,))
            data = message.get('data')
            if not isinstance(data, dict) or not isinstance(data.get('sdp'), str):
                raise ProtocolError(f"Malformed {msg_type} message")
            session = data.get('session')
            if msg_type == 'offer':
                if session and session not in self.stale_sessions:
                    return data
            elif session == self.nonce:
                return data
            self.messages_ignored += 1
            logger.debug(f"Ignoring {msg_type} from abandoned attempt {session}")

    async def _remote_description_applied(self):
        self._remote_described = True
        queued, self._queued_candidates = self._queued_candidates, []
        for data in queued:
            await self._apply_candidate(data)
        self._transition(SessionState.CANDIDATES_EXCHANGING)

    async def _apply_candidate(self, data: Dict[str, Any]):
        if data.get('session') != self.nonce:
            self.messages_ignored += 1
            return
        await self.pc.addIceCandidate(parse_candidate(data))
        self.candidates_applied += 1

    async def _pump_signaling(self):
        """Background consumer for trickled candidates and peer departure."""
        while True:
            try:
                message = await self.signaling.next_message(('ice-candidate', 'peer-left'))
            except TransportClosed as e:
                self._set_failure(e)
                return

            if message.get('type') == 'peer-left':
                self._set_failure(TransportClosed("Peer left during negotiation"))
                return

            data = message.get('data')
            if not isinstance(data, dict):
                logger.warning("Dropping malformed ice-candidate message")
                continue
            if not self._remote_described:
                self._queued_candidates.append(data)
                continue
            try:
                await self._apply_candidate(data)
            except ProtocolError as e:
                self._set_failure(e)
                return

    def _set_failure(self, error: PeerDropError):
        if self._failure is not None and not self._failure.done():
            self._failure.set_result(error)

    # === aiortc events ===

    def _on_datachannel(self, channel):
        logger.debug(f"Remote data channel {channel.label!r} announced")
        if self._channel_ready is not None and not self._channel_ready.done():
            self._channel_ready.set_result(channel)

    def _on_connection_state(self):
        state = self.pc.connectionState
        logger.debug(f"[{self.role} #{self.attempt}] peer connection {state}")
        if state == "failed":
            self._set_failure(TransportClosed("Peer connection failed"))

    # === Teardown ===

    async def _close_pc(self):
        if self.pc is not None:
            pc, self.pc = self.pc, None
            await pc.close()

    async def _teardown(self):
        if self.transport is not None:
            await self.transport.close()
        # A channel closed by the remote never ran its close hook
        await self._close_pc()

    async def close(self):
        """Close the session and its channel."""
        if self.state in TERMINAL_STATES:
            return
        if self.is_connected:
            self._transition(SessionState.CLOSED)
        else:
            self.fail(TransferCancelled("Session closed before connecting"))
        await self._teardown()

    def get_stats(self) -> dict:
        """Get session statistics."""
        return {
            'role': self.role,
            'state': self.state.value,
            'attempt': self.attempt,
            'session': self.nonce,
            'candidates_applied': self.candidates_applied,
            'messages_ignored': self.messages_ignored,
            'error': self.error.to_dict() if self.error else None,
        }
