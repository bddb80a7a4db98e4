"""
Transfer Session

Per-connection bookkeeping for one transfer attempt. A session is owned
by the driver that created it and is never shared across connections.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Callable

from .protocol import (
    OffsetAgreement, TransferRequest, TransferState, TransferError
)

logger = logging.getLogger(__name__)


@dataclass
class TransferSession:
    """Track one transfer's state and progress."""
    role: str  # 'initiator' or 'responder'
    state: TransferState = TransferState.CONNECTED
    request: Optional[TransferRequest] = None
    agreement: Optional[OffsetAgreement] = None
    bytes_this_session: int = 0
    error: Optional[str] = None
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None

    @property
    def filename(self) -> str:
        return self.request.filename if self.request else ''

    @property
    def transferred(self) -> int:
        """Bytes the receiver holds: agreed offset + bytes moved this session."""
        offset = self.agreement.offset if self.agreement else 0
        return offset + self.bytes_this_session

    @property
    def total_size(self) -> int:
        return self.agreement.size if self.agreement else 0

    @property
    def is_complete(self) -> bool:
        return (
            self.agreement is not None and
            self.transferred == self.agreement.size
        )

    @property
    def progress_percent(self) -> float:
        if not self.agreement or self.agreement.size == 0:
            return 100.0 if self.is_complete else 0.0
        return self.transferred / self.agreement.size * 100

    @property
    def elapsed_seconds(self) -> float:
        end = self.end_time or time.time()
        return end - self.start_time

    def advance(self, state: TransferState):
        """Move to the next state."""
        if self.state.is_final:
            raise RuntimeError(f"Session already {self.state.value}")
        logger.debug(f"{self.role}: {self.state.value} -> {state.value}")
        self.state = state

    def record(self, nbytes: int):
        """Count bytes moved during the streaming phase."""
        self.bytes_this_session += nbytes

    def complete(self):
        """Mark the transfer finished; the full byte range must be accounted for."""
        if not self.is_complete:
            raise TransferError(
                f"Transfer incomplete: {self.transferred} of {self.total_size} bytes"
            )
        self.advance(TransferState.COMPLETED)
        self.end_time = time.time()

    def abort(self, reason: str):
        if self.state.is_final:
            return
        self.error = reason
        self.state = TransferState.ABORTED
        self.end_time = time.time()

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/JSON output."""
        return {
            'role': self.role,
            'state': self.state.value,
            'mode': self.request.mode.value if self.request else None,
            'filename': self.filename,
            'offset': self.agreement.offset if self.agreement else None,
            'size': self.total_size,
            'bytes_this_session': self.bytes_this_session,
            'transferred': self.transferred,
            'elapsed_seconds': self.elapsed_seconds,
            'error': self.error,
        }


# Progress callback type
ProgressCallback = Callable[[TransferSession], None]
