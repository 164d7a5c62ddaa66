"""
Transport Module - Direct and Relayed Channels

Both implementations share the Transport contract; the transfer engine
never needs to know which one it was given.
"""

from .base import Transport
from .direct import DirectTransport
from .relay import RelayTransport
from .relay_server import RelayServer
from .framing import encode_frame, read_frame, FrameDecoder

__all__ = [
    'Transport',
    'DirectTransport',
    'RelayTransport',
    'RelayServer',
    'encode_frame',
    'read_frame',
    'FrameDecoder',
]
