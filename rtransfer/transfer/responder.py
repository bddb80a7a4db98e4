"""
Transfer Responder

Accepts connections, reads the transfer request, decides the resume
offset from its own copy of the file and then receives (upload) or
serves (download) the remaining byte range.

Connections are serviced concurrently, but two transfers naming the same
file are serialized: the second waits until the first has finished.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Optional, Tuple

import aiofiles

from .negotiation import negotiate
from .protocol import (
    TransferServer, TransferConnection, TransferMode, TransferState,
    TransferError, ConnectionFailed, ProtocolViolation, StorageError, read_request,
    DEFAULT_PORT, DEFAULT_CHUNK_SIZE, DEFAULT_MAX_MODE_LENGTH,
    DEFAULT_MAX_FILENAME_LENGTH,
)
from .session import TransferSession
from ..file.storage import FileStore, file_size, open_for_resume, fsync_file

logger = logging.getLogger(__name__)


class TransferResponder:
    """
    Server-side driver of the resumable transfer protocol.

    Integrates with the transfer server to handle each connection.
    """

    def __init__(self, store: FileStore, host: str = '0.0.0.0',
                 port: int = DEFAULT_PORT,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 io_timeout: Optional[float] = None,
                 max_mode_length: int = DEFAULT_MAX_MODE_LENGTH,
                 max_filename_length: int = DEFAULT_MAX_FILENAME_LENGTH):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive: {chunk_size}")
        self.store = store
        self.chunk_size = chunk_size
        self.max_mode_length = max_mode_length
        self.max_filename_length = max_filename_length
        self.server = TransferServer(
            self.handle, host=host, port=port, io_timeout=io_timeout
        )

        # path -> (lock, number of connections using it)
        self._file_locks: Dict[Path, Tuple[asyncio.Lock, int]] = {}

        # Statistics
        self.transfers_completed = 0
        self.transfers_failed = 0
        self.bytes_received = 0
        self.bytes_sent = 0

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        return self.server.address

    async def start(self):
        """Start accepting connections."""
        await self.server.start()

    async def serve_forever(self):
        await self.server.serve_forever()

    async def stop(self):
        """Stop the server."""
        await self.server.stop()
        logger.info(
            f"Responder stopped. {self.transfers_completed} completed, "
            f"{self.transfers_failed} failed, {self.bytes_received:,} bytes received, "
            f"{self.bytes_sent:,} bytes sent"
        )

    @asynccontextmanager
    async def _exclusive(self, path: Path):
        """Hold the per-file lock for one transfer."""
        lock, users = self._file_locks.get(path, (asyncio.Lock(), 0))
        self._file_locks[path] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._file_locks[path]
            if users <= 1:
                del self._file_locks[path]
            else:
                self._file_locks[path] = (lock, users - 1)

    async def handle(self, conn: TransferConnection) -> TransferSession:
        """
        Service one connection from request to completion.

        Failures are logged and counted; they never propagate to the
        accept loop. The caller closes the connection.
        """
        session = TransferSession(role='responder')
        peer = conn.remote_address

        try:
            request = await read_request(
                conn,
                max_mode_length=self.max_mode_length,
                max_filename_length=self.max_filename_length,
                on_state=session.advance,
            )
            session.request = request
            logger.info(
                f"{peer}: {request.mode.value} {request.filename!r} "
                f"(value={request.value})"
            )

            try:
                path = self.store.resolve(request.filename)
            except ValueError as e:
                raise ProtocolViolation(str(e))

            async with self._exclusive(path):
                if request.mode is TransferMode.UPLOAD:
                    await self._receive_upload(conn, session, path)
                else:
                    await self._serve_download(conn, session, path)

            self.transfers_completed += 1
            logger.info(
                f"{peer}: {request.mode.value} of {request.filename!r} complete "
                f"({session.bytes_this_session:,} bytes this session, "
                f"{session.total_size:,} total)"
            )

        except TransferError as e:
            session.abort(str(e))
            self.transfers_failed += 1
            logger.error(f"{peer}: transfer aborted in state {session.state.value}: {e}")

        return session

    async def _receive_upload(self, conn: TransferConnection,
                              session: TransferSession, path: Path):
        """Receive bytes [agreed_offset, declared_size) into the canonical copy."""
        declared_size = session.request.value

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            existing = file_size(path)
            agreement = negotiate(TransferMode.UPLOAD, existing, declared_size)

            async with open_for_resume(path) as f:
                if existing > agreement.offset:
                    # Existing copy is longer than the declared file
                    await f.truncate(agreement.offset)
                await f.seek(agreement.offset)

                await conn.send_uint64(agreement.offset)
                session.agreement = agreement
                session.advance(TransferState.OFFSET_NEGOTIATED)
                logger.debug(
                    f"Upload {path.name}: have {existing}, agreed offset "
                    f"{agreement.offset} of {agreement.size}"
                )

                session.advance(TransferState.STREAMING)
                remaining = agreement.remaining
                try:
                    while remaining > 0:
                        try:
                            chunk = await conn.recv_exact(min(self.chunk_size, remaining))
                        except ConnectionFailed as e:
                            if e.partial:
                                await f.write(e.partial)
                                session.record(len(e.partial))
                                self.bytes_received += len(e.partial)
                            raise
                        await f.write(chunk)
                        await f.flush()
                        remaining -= len(chunk)
                        session.record(len(chunk))
                        self.bytes_received += len(chunk)
                finally:
                    # Keep whatever arrived so a retry can resume from it
                    await f.flush()
                    await fsync_file(f)

        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e

        session.complete()

    async def _serve_download(self, conn: TransferConnection,
                              session: TransferSession, path: Path):
        """Send bytes [server_offset, file_size) from the canonical copy."""
        client_offset = session.request.value

        try:
            async with aiofiles.open(path, 'rb') as f:
                size = os.fstat(f.fileno()).st_size
                agreement = negotiate(TransferMode.DOWNLOAD, size, client_offset)

                await conn.send_uint64(agreement.size)
                await conn.send_uint64(agreement.offset)
                session.agreement = agreement
                session.advance(TransferState.OFFSET_NEGOTIATED)

                if agreement.remaining == 0:
                    logger.debug(f"Download {path.name}: client already complete")
                    session.complete()
                    return

                await f.seek(agreement.offset)
                session.advance(TransferState.STREAMING)
                remaining = agreement.remaining
                while remaining > 0:
                    chunk = await f.read(min(self.chunk_size, remaining))
                    if not chunk:
                        raise StorageError(f"{path} shrank during download")
                    await conn.send_all(chunk)
                    remaining -= len(chunk)
                    session.record(len(chunk))
                    self.bytes_sent += len(chunk)

        except FileNotFoundError as e:
            raise StorageError(f"No such file: {session.request.filename!r}") from e
        except IsADirectoryError as e:
            raise StorageError(f"Not a file: {session.request.filename!r}") from e
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

        session.complete()

    def get_stats(self) -> dict:
        """Get responder statistics."""
        return {
            'transfers_completed': self.transfers_completed,
            'transfers_failed': self.transfers_failed,
            'bytes_received': self.bytes_received,
            'bytes_sent': self.bytes_sent,
            'active_files': len(self._file_locks),
            'address': self.address,
        }
