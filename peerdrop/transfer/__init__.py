"""
Transfer Module - Chunk Protocol, Send Loop, Receive Dispatcher

Moves one file across an open Transport.
"""

from .protocol import TransferMessage, TransferMessageType
from .retry import CancellationToken, RetryController, RetryPolicy
from .progress import TransferProgress, TransferResult, ReceivedFile
from .sender import FileSender
from .receiver import FileReceiver

__all__ = [
    'TransferMessage',
    'TransferMessageType',
    'CancellationToken',
    'RetryController',
    'RetryPolicy',
    'TransferProgress',
    'TransferResult',
    'ReceivedFile',
    'FileSender',
    'FileReceiver',
]
