"""
Transfer Initiator

Design Decision: Local Progress Signal
======================================

Options Considered:
1. Trust the progress ledger
   - Survives a crash between "chunk written" and "length updated"
   - A stale or lost ledger would make us claim bytes we never wrote

2. Trust the target file's length on disk
   - Always reflects what is actually stored
   - Requires fsync before counting a chunk as done

Decision: The file's own length is authoritative
- Downloads report the local file's length as the resume offset
- Uploads let the responder decide from its copy
- The ledger is written after every chunk and removed on success, but it
  is only read to log a hint about the previous attempt

Upload Flow:
1. Send mode, filename, declared size
2. Receive agreed offset (must not exceed declared size)
3. Stream [agreed_offset, size) from the local file

Download Flow:
1. Send mode, filename, local offset
2. Receive file size and server offset
3. Receive [server_offset, size), fsync and record progress per chunk
"""

import logging
import os
from pathlib import Path
from typing import Optional

import aiofiles

from .protocol import (
    TransferConnection, TransferRequest, OffsetAgreement, TransferMode,
    TransferState, TransferError, ConnectionFailed, ProtocolViolation, StorageError,
    connect_to_peer, DEFAULT_PORT, DEFAULT_CHUNK_SIZE,
)
from .session import TransferSession, ProgressCallback
from ..file.ledger import ProgressLedger
from ..file.storage import file_size, open_for_resume, fsync_file

logger = logging.getLogger(__name__)


class TransferInitiator:
    """
    Client-side driver of the resumable transfer protocol.

    Each call to upload() or download() opens its own connection and
    closes it before returning, whatever the outcome.
    """

    def __init__(self, host: str, port: int = DEFAULT_PORT,
                 chunk_size: int = DEFAULT_CHUNK_SIZE,
                 io_timeout: Optional[float] = None,
                 ledger: Optional[ProgressLedger] = None):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be positive: {chunk_size}")
        self.host = host
        self.port = port
        self.chunk_size = chunk_size
        self.io_timeout = io_timeout
        self.ledger = ledger or ProgressLedger()

    async def upload(self, path: Path, remote_name: Optional[str] = None,
                     progress_callback: ProgressCallback = None) -> TransferSession:
        """
        Push a local file to the responder, resuming where it left off.

        Args:
            path: Local file to send
            remote_name: Name on the responder (default: the file's base name)
            progress_callback: Called after negotiation and after every chunk

        Returns:
            The completed session

        Raises:
            TransferError: if the transfer did not complete
        """
        path = Path(path)
        if not path.is_file():
            raise StorageError(f"No such file: {path}")
        remote_name = remote_name or path.name

        previous = await self._read_hint(path)
        if previous is not None:
            logger.info(f"Previous upload attempt of {path} recorded {previous:,} bytes")

        session = TransferSession(role='initiator')
        conn = await connect_to_peer(self.host, self.port, timeout=self.io_timeout)
        try:
            async with aiofiles.open(path, 'rb') as f:
                declared_size = os.fstat(f.fileno()).st_size
                request = TransferRequest(TransferMode.UPLOAD, remote_name, declared_size)
                await self._send_request(conn, session, request)

                agreed = await conn.recv_uint64()
                if agreed > declared_size:
                    raise ProtocolViolation(
                        f"Server agreed offset ({agreed}) > filesize ({declared_size})"
                    )
                session.agreement = OffsetAgreement(offset=agreed, size=declared_size)
                session.advance(TransferState.OFFSET_NEGOTIATED)
                if agreed:
                    logger.info(f"Resuming upload of {path} at byte {agreed:,}")
                if progress_callback:
                    progress_callback(session)

                await f.seek(agreed)
                session.advance(TransferState.STREAMING)
                remaining = session.agreement.remaining
                while remaining > 0:
                    chunk = await f.read(min(self.chunk_size, remaining))
                    if not chunk:
                        raise StorageError(f"{path} shrank during upload")
                    await conn.send_all(chunk)
                    remaining -= len(chunk)
                    session.record(len(chunk))

                    await self._record_progress(path, session.transferred)
                    if progress_callback:
                        progress_callback(session)

            session.complete()
        except TransferError as e:
            session.abort(str(e))
            raise
        except OSError as e:
            session.abort(str(e))
            raise StorageError(f"Cannot read {path}: {e}") from e
        finally:
            await conn.close()

        await self._clear_progress(path)
        logger.info(f"Upload finished: sent={session.transferred}")
        return session

    async def download(self, path: Path, remote_name: Optional[str] = None,
                       progress_callback: ProgressCallback = None) -> TransferSession:
        """
        Pull a file from the responder, appending to any partial local copy.

        Args:
            path: Local destination
            remote_name: Name on the responder (default: the file's base name)
            progress_callback: Called after negotiation and after every chunk

        Returns:
            The completed session

        Raises:
            TransferError: if the transfer did not complete
        """
        path = Path(path)
        remote_name = remote_name or path.name
        local_offset = file_size(path)

        hint = await self._read_hint(path)
        if hint is not None and hint != local_offset:
            logger.warning(
                f"Progress record for {path} says {hint:,} bytes but the file "
                f"holds {local_offset:,}; resuming from the file length"
            )

        session = TransferSession(role='initiator')
        conn = await connect_to_peer(self.host, self.port, timeout=self.io_timeout)
        try:
            request = TransferRequest(TransferMode.DOWNLOAD, remote_name, local_offset)
            await self._send_request(conn, session, request)

            size = await conn.recv_uint64()
            server_offset = await conn.recv_uint64()
            if server_offset > size:
                raise ProtocolViolation(
                    f"Server offset ({server_offset}) > filesize ({size})"
                )
            if server_offset > local_offset:
                raise ProtocolViolation(
                    f"Server offset ({server_offset}) beyond local data ({local_offset})"
                )
            session.agreement = OffsetAgreement(offset=server_offset, size=size)
            session.advance(TransferState.OFFSET_NEGOTIATED)
            if server_offset:
                logger.info(f"Resuming download of {remote_name!r} at byte {server_offset:,}")
            if progress_callback:
                progress_callback(session)

            path.parent.mkdir(parents=True, exist_ok=True)

            async with open_for_resume(path) as f:
                if local_offset > server_offset:
                    # Local copy is longer than the server's file
                    await f.truncate(server_offset)
                await f.seek(server_offset)

                session.advance(TransferState.STREAMING)
                remaining = session.agreement.remaining
                while remaining > 0:
                    try:
                        chunk = await conn.recv_exact(min(self.chunk_size, remaining))
                    except ConnectionFailed as e:
                        if e.partial:
                            await self._keep_partial(f, path, session, e.partial)
                        raise
                    await f.write(chunk)
                    await f.flush()
                    await fsync_file(f)
                    remaining -= len(chunk)
                    session.record(len(chunk))

                    await self._record_progress(path, session.transferred)
                    if progress_callback:
                        progress_callback(session)

            session.complete()
        except TransferError as e:
            session.abort(str(e))
            raise
        except OSError as e:
            session.abort(str(e))
            raise StorageError(f"Cannot write {path}: {e}") from e
        finally:
            await conn.close()

        await self._clear_progress(path)
        logger.info(f"Download complete: {path} (size={session.total_size})")
        return session

    async def _send_request(self, conn: TransferConnection,
                            session: TransferSession, request: TransferRequest):
        """Send mode, filename and the mode-specific value."""
        session.request = request
        await conn.send_field(request.mode.value.encode('ascii'))
        session.advance(TransferState.MODE_SENT)
        await conn.send_field(request.filename.encode('utf-8'))
        session.advance(TransferState.FILENAME_SENT)
        await conn.send_uint64(request.value)

    async def _keep_partial(self, f, path: Path, session: TransferSession, data: bytes):
        """Store the bytes of an interrupted chunk so a retry resumes after them."""
        await f.write(data)
        await f.flush()
        await fsync_file(f)
        session.record(len(data))
        await self._record_progress(path, session.transferred)

    async def _read_hint(self, path: Path) -> Optional[int]:
        try:
            return await self.ledger.read(path)
        except OSError as e:
            logger.warning(f"Could not read progress record for {path}: {e}")
            return None

    async def _record_progress(self, path: Path, transferred: int):
        try:
            await self.ledger.record(path, transferred)
        except OSError as e:
            logger.warning(f"Could not record progress for {path}: {e}")

    async def _clear_progress(self, path: Path):
        try:
            await self.ledger.clear(path)
        except OSError as e:
            logger.warning(f"Could not remove progress record for {path}: {e}")
