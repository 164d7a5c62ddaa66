"""
API Module - Signaling Service

Provides the WebSocket matchmaking channel and HTTP endpoints.
"""

from .rest import create_app, run_signaling_server

__all__ = ['create_app', 'run_signaling_server']
