"""
Transfer Module - Resumable Upload/Download

Wire protocol, offset negotiation and the two drivers that speak it.
"""

from .protocol import (
    TransferConnection,
    TransferServer,
    TransferRequest,
    OffsetAgreement,
    TransferMode,
    TransferState,
    TransferError,
    ConnectionFailed,
    TransferTimeout,
    ProtocolViolation,
    StorageError,
    connect_to_peer,
)
from .negotiation import negotiate
from .session import TransferSession
from .initiator import TransferInitiator
from .responder import TransferResponder

__all__ = [
    'TransferConnection',
    'TransferServer',
    'TransferRequest',
    'OffsetAgreement',
    'TransferMode',
    'TransferState',
    'TransferError',
    'ConnectionFailed',
    'TransferTimeout',
    'ProtocolViolation',
    'StorageError',
    'connect_to_peer',
    'negotiate',
    'TransferSession',
    'TransferInitiator',
    'TransferResponder',
]
