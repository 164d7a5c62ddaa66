"""
Signaling Module - Rendezvous by Short Code

Server side: SignalingRegistry (served by peerdrop.api).
Peer side: RendezvousClient.
"""

from .registry import SignalingRegistry, generate_code, normalize_code
from .client import RendezvousClient, init_transfer

__all__ = [
    'SignalingRegistry',
    'RendezvousClient',
    'init_transfer',
    'generate_code',
    'normalize_code',
]
