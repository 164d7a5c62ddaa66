"""
PeerDrop - Code-Paired Peer-to-Peer File Transfer

Two parties share a short code, meet on a signaling service, and move the
file over a direct data channel (or a relay when that fails). No server
ever stores the file.
"""

from .client import PeerDropClient, TransferSession
from .config import Config, load_config
from .errors import PeerDropError

__version__ = "1.0.0"

__all__ = [
    'PeerDropClient',
    'TransferSession',
    'Config',
    'load_config',
    'PeerDropError',
]
