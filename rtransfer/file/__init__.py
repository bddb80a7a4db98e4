"""
File Module - Canonical Storage and Progress Ledger

Local file handling shared by the initiator and responder.
"""

from .storage import FileStore, file_size, open_for_resume, fsync_file
from .ledger import ProgressLedger, LEDGER_SUFFIX

__all__ = [
    'FileStore',
    'file_size',
    'open_for_resume',
    'fsync_file',
    'ProgressLedger',
    'LEDGER_SUFFIX',
]
