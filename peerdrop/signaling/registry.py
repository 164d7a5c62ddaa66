"""
Signaling Registry

Design Decision: Matchmaking State
==================================

Options Considered:
1. One dict of code -> socket (first writer wins)
   - Simple, but a second party on the same code overwrites or is ignored,
     and nothing stops two senders claiming one code

2. Per-code registration table with explicit roles
   - At most one sender and one receiver per code
   - Conflicts are detected instead of silently misrouting

Decision: Option 2, serialized per code
- Every mutation for a code (register / relay / unregister) holds that
  code's asyncio.Lock, so two peers racing for the same role can't both win
- Different codes never contend
- The registry routes opaque JSON envelopes; it never sees file bytes

Registry Layout:
```
_registrations = {
    "AB12C9": {"sender": PeerRegistration, "receiver": PeerRegistration},
    ...
}
_reserved = {"XY34Z7": <expiry timestamp>}   # issued, nobody joined yet
```
"""

import asyncio
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from fastapi import WebSocketDisconnect

from ..errors import CodeConflict, ProtocolError

logger = logging.getLogger(__name__)

ROLES = ('sender', 'receiver')
CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6


def generate_code(length: int = CODE_LENGTH) -> str:
    """Random human-shareable code, e.g. 'AB12C9'."""
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: Any) -> str:
    """
    Upper-case and validate a code typed by a human.

    Raises:
        ProtocolError: not a 6-character alphanumeric string
    """
    if not isinstance(code, str):
        raise ProtocolError("Code must be a string")
    code = code.strip().upper()
    if len(code) != CODE_LENGTH or any(c not in CODE_ALPHABET for c in code):
        raise ProtocolError(f"Invalid code {code!r}: expected {CODE_LENGTH} letters or digits")
    return code


def other_role(role: str) -> str:
    return 'receiver' if role == 'sender' else 'sender'


class Connection(Protocol):
    """What the registry needs from a client connection."""

    @property
    def id(self) -> str: ...

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, message: Dict[str, Any]) -> None: ...


@dataclass
class PeerRegistration:
    """A participant bound to a code."""
    code: str
    role: str
    connection: Connection
    registered_at: float = field(default_factory=time.time)


class SignalingRegistry:
    """
    In-memory rendezvous table for the signaling service.

    Constructed once per server process and passed to the app; there is
    no module-level instance.
    """

    def __init__(self, code_ttl: float = 300.0):
        """
        Args:
            code_ttl: Seconds an issued code stays reserved before anyone joins
        """
        self.code_ttl = code_ttl
        self._registrations: Dict[str, Dict[str, PeerRegistration]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._reserved: Dict[str, float] = {}

        # Statistics
        self.messages_relayed = 0
        self.messages_dropped = 0

    def _lock_for(self, code: str) -> asyncio.Lock:
        lock = self._locks.get(code)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[code] = lock
        return lock

    def _forget_if_empty(self, code: str):
        if not self._registrations.get(code):
            self._registrations.pop(code, None)
            lock = self._locks.get(code)
            if lock is not None and not lock.locked():
                del self._locks[code]

    # === Codes ===

    def _expire_reservations(self, now: float = None):
        now = now if now is not None else time.time()
        for code in [c for c, expiry in self._reserved.items() if expiry <= now]:
            del self._reserved[code]

    def is_active(self, code: str) -> bool:
        """Whether a code is reserved or has at least one registered party."""
        self._expire_reservations()
        return code in self._reserved or bool(self._registrations.get(code))

    def issue_code(self) -> str:
        """Reserve and return a code not currently in use."""
        self._expire_reservations()
        while True:
            code = generate_code()
            if not self.is_active(code):
                self._reserved[code] = time.time() + self.code_ttl
                logger.info(f"Issued code {code}")
                return code

    # === Registration ===

    async def register(self, code: str, role: str,
                       connection: Connection) -> PeerRegistration:
        """
        Bind a connection to a code under a role.

        Sends `join-success` to the caller and, once both roles are
        present, `peer-joined` to both parties.

        Raises:
            ProtocolError: invalid code or role
            CodeConflict: the role is held by another open connection
        """
        code = normalize_code(code)
        if role not in ROLES:
            raise ProtocolError(f"Invalid role {role!r}: expected sender or receiver")

        async with self._lock_for(code):
            parties = self._registrations.setdefault(code, {})

            existing = parties.get(role)
            if existing is not None and existing.connection is not connection:
                if existing.connection.is_open:
                    self._forget_if_empty(code)
                    raise CodeConflict(f"A {role} is already connected for code {code}")
                logger.info(f"Replacing stale {role} registration for {code}")

            for r, registration in list(parties.items()):
                if r != role and registration.connection is connection:
                    raise ProtocolError(f"Connection already joined {code} as {r}")

            registration = PeerRegistration(code=code, role=role, connection=connection)
            parties[role] = registration
            self._reserved.pop(code, None)
            logger.info(f"{role} joined code {code}")

            await connection.send_json({'type': 'join-success', 'code': code,
                                        'data': {'role': role}})

            peer = parties.get(other_role(role))
            if peer is not None and peer.connection.is_open:
                await self._notify(peer, {'type': 'peer-joined', 'code': code,
                                          'data': {'role': role}})
                await self._notify(registration, {'type': 'peer-joined', 'code': code,
                                                  'data': {'role': peer.role}})

            return registration

    async def unregister(self, connection: Connection) -> List[PeerRegistration]:
        """
        Remove every registration held by a connection (socket closed).

        The remaining party of each code is told with `peer-left`.
        """
        removed = []
        codes = [code for code, parties in self._registrations.items()
                 if any(r.connection is connection for r in parties.values())]

        for code in codes:
            async with self._lock_for(code):
                parties = self._registrations.get(code, {})
                for role, registration in list(parties.items()):
                    if registration.connection is connection:
                        del parties[role]
                        removed.append(registration)
                        logger.info(f"{role} left code {code}")

                        peer = parties.get(other_role(role))
                        if peer is not None:
                            await self._notify(peer, {'type': 'peer-left', 'code': code,
                                                      'data': {'role': role}})
            self._forget_if_empty(code)

        return removed

    # === Routing ===

    def registration_of(self, code: str, connection: Connection) -> Optional[PeerRegistration]:
        for registration in self._registrations.get(code, {}).values():
            if registration.connection is connection:
                return registration
        return None

    async def relay(self, code: str, message: Dict[str, Any],
                    sender: Connection) -> bool:
        """
        Forward a message verbatim to the other party of `code`.

        A missing peer is logged, not surfaced: the sending side retries at
        a higher layer.

        Returns:
            True if delivered

        Raises:
            ProtocolError: sender is not registered under the code
        """
        code = normalize_code(code)
        async with self._lock_for(code):
            registration = self.registration_of(code, sender)
            if registration is None:
                self._forget_if_empty(code)
                raise ProtocolError(f"Join code {code} before sending messages")

            peer = self._registrations.get(code, {}).get(other_role(registration.role))
            if peer is None or not peer.connection.is_open:
                self.messages_dropped += 1
                logger.warning(f"No peer for {code} yet, dropping {message.get('type')} "
                               f"from {registration.role}")
                return False

            delivered = await self._notify(peer, message)
            if delivered:
                self.messages_relayed += 1
            return delivered

    async def _notify(self, registration: PeerRegistration, message: Dict[str, Any]) -> bool:
        try:
            await registration.connection.send_json(message)
            return True
        except (ConnectionError, RuntimeError, OSError, WebSocketDisconnect) as e:
            # Peer socket died before its disconnect frame was read
            self.messages_dropped += 1
            logger.warning(f"Could not deliver {message.get('type')} to "
                           f"{registration.role} of {registration.code}: {e}")
            return False

    def get_stats(self) -> dict:
        """Get registry statistics."""
        self._expire_reservations()
        return {
            'active_codes': len(self._registrations),
            'paired_codes': sum(1 for p in self._registrations.values() if len(p) == 2),
            'reserved_codes': len(self._reserved),
            'messages_relayed': self.messages_relayed,
            'messages_dropped': self.messages_dropped,
        }
