"""
Error Taxonomy

Every failure the core surfaces to callers is a PeerDropError with a
stable `kind` string and a human-readable message.

Errors are split into two families:
- TransientError: network-layer hiccups that the RetryController retries
  locally (timeouts, full send buffers, dropped connections).
- Everything else is terminal: it stops the transfer immediately and is
  never retried silently.
"""

import asyncio
import errno
import socket

# OSError numbers that mean the network, not the local machine, failed
NETWORK_ERRNOS = frozenset({
    errno.ECONNREFUSED, errno.ECONNRESET, errno.ECONNABORTED, errno.EPIPE,
    errno.ETIMEDOUT, errno.EHOSTUNREACH, errno.ENETUNREACH, errno.ENETDOWN,
    errno.EHOSTDOWN,
})


class PeerDropError(Exception):
    """Base class for all peerdrop errors."""

    kind = "PeerDropError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {'kind': self.kind, 'message': self.message}


class TransientError(PeerDropError):
    """A failure that may succeed if the operation is attempted again."""

    kind = "TransientError"


# === Transient ===

class NegotiationTimeout(TransientError):
    """Peer connection did not reach CONNECTED within the negotiation window."""

    kind = "NegotiationTimeout"


class BufferFull(TransientError):
    """The transport's send buffer is above its high-water mark."""

    kind = "BufferFull"


class TransportClosed(TransientError):
    """The transport closed underneath an operation."""

    kind = "TransportClosed"


# === Terminal ===

class SendFailed(PeerDropError):
    """Sending kept failing after every retry attempt."""

    kind = "SendFailed"


class TransportUnavailable(PeerDropError):
    """Neither the direct nor the relayed transport could be opened."""

    kind = "TransportUnavailable"


class CodeConflict(PeerDropError):
    """The same role registered twice for one code."""

    kind = "CodeConflict"


class FileTooLarge(PeerDropError):
    """The file would need more chunks than the configured ceiling."""

    kind = "FileTooLarge"


class IncompleteTransfer(PeerDropError):
    """Assembly was requested before every chunk arrived."""

    kind = "IncompleteTransfer"


class ChecksumMismatch(PeerDropError):
    """A stored chunk's payload does not match its checksum."""

    kind = "ChecksumMismatch"

    def __init__(self, index: int, message: str = ""):
        super().__init__(message or f"Checksum mismatch at chunk {index}")
        self.index = index

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['index'] = self.index
        return data


class TransferCancelled(PeerDropError):
    """The transfer was cancelled by the user or the peer."""

    kind = "TransferCancelled"


class ProtocolError(PeerDropError):
    """The peer sent a malformed or inconsistent message."""

    kind = "ProtocolError"


class InvalidStateTransition(PeerDropError):
    """A peer session was asked to move along an undefined transition."""

    kind = "InvalidStateTransition"


_KINDS = {
    cls.kind: cls for cls in (
        NegotiationTimeout, BufferFull, TransportClosed, SendFailed,
        TransportUnavailable, CodeConflict, FileTooLarge, IncompleteTransfer,
        TransferCancelled, ProtocolError, InvalidStateTransition,
    )
}


def error_from_dict(data: dict) -> PeerDropError:
    """Rebuild an error reported by the peer (see `PeerDropError.to_dict`)."""
    kind = data.get('kind', '')
    message = data.get('message', '')
    if kind == ChecksumMismatch.kind:
        return ChecksumMismatch(int(data.get('index', -1)), message)
    cls = _KINDS.get(kind)
    if cls is None:
        return PeerDropError(message or kind)
    return cls(message)


def is_transient(error: BaseException) -> bool:
    """Whether the RetryController should try the operation again."""
    if isinstance(error, PeerDropError):
        return isinstance(error, TransientError)
    if isinstance(error, (ConnectionError, asyncio.TimeoutError, TimeoutError, socket.gaierror)):
        return True
    # Local file-system errors are terminal
    return isinstance(error, OSError) and error.errno in NETWORK_ERRNOS


def describe(error: BaseException) -> str:
    """Single-line message suitable for an interface layer."""
    if isinstance(error, PeerDropError):
        return f"{error.kind}: {error.message}"
    return str(error) or error.__class__.__name__
