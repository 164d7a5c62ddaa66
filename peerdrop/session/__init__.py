"""
Session Module - Direct Channel Negotiation
"""

from .peer import PeerSession, SessionState

__all__ = ['PeerSession', 'SessionState']
