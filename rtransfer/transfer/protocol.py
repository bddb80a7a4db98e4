"""
Resumable Transfer Protocol

Design Decision: Wire Format
============================

Options Considered:
1. JSON header + binary body (length-prefixed)
   - Flexible, self-describing
   - Overkill for a fixed sequence of four or five fields

2. Line-based text commands ("UPLOAD name size\\n")
   - Easy to debug with telnet
   - Filenames with spaces/newlines need escaping

3. Fixed sequence of binary fields
   - Smallest, no parsing ambiguity
   - Both sides must agree on the exact order

Decision: Fixed sequence of binary fields, network byte order
- Variable-length fields: 4-byte unsigned length + raw bytes, no terminator
- Sizes and offsets: 8-byte unsigned integers
- Field order is fixed per mode (see table below)

Message Sequence:
```
Step  Direction  Field                               Type
1     C -> S     mode length                         uint32
2     C -> S     mode bytes ("upload"/"download")    raw
3     C -> S     filename length                     uint32
4     C -> S     filename bytes                      raw

upload:
5a    C -> S     declared file size                  uint64
6a    S -> C     agreed offset                       uint64
7a    C -> S     file bytes [agreed_offset, size)    raw

download:
5b    C -> S     local offset                        uint64
6b    S -> C     file size, server offset            uint64, uint64
7b    S -> C     file bytes [server_offset, size)    raw
```

The receiving side always decides the resume offset from the bytes it
already holds, so a sender never skips bytes the receiver lacks.
"""

import asyncio
import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Callable, Awaitable

logger = logging.getLogger(__name__)

UINT32 = struct.Struct('>I')
UINT64 = struct.Struct('>Q')

UINT64_MAX = (1 << 64) - 1

DEFAULT_PORT = 9000
DEFAULT_CHUNK_SIZE = 8 * 1024  # 8KB
DEFAULT_MAX_MODE_LENGTH = 32
DEFAULT_MAX_FILENAME_LENGTH = 4096


# === Errors ===

class TransferError(Exception):
    """Base class for every failure that aborts a transfer."""


class ConnectionFailed(TransferError):
    """
    Peer closed the stream early or a socket-level error occurred.

    `partial` holds any bytes of an interrupted receive that did arrive.
    """

    def __init__(self, message: str = "", partial: bytes = b""):
        super().__init__(message)
        self.partial = partial


class TransferTimeout(ConnectionFailed):
    """A blocking read or write did not complete within the I/O timeout."""


class ProtocolViolation(TransferError):
    """A malformed or out-of-range field was received."""


class StorageError(TransferError):
    """The local target file could not be opened, read, written or flushed."""


# === Protocol vocabulary ===

class TransferMode(Enum):
    """Transfer direction, as seen from the initiator."""
    UPLOAD = "upload"
    DOWNLOAD = "download"

    @classmethod
    def parse(cls, raw: bytes) -> 'TransferMode':
        """Decode the mode field received from the wire."""
        try:
            return cls(raw.decode('ascii'))
        except (UnicodeDecodeError, ValueError):
            raise ProtocolViolation(f"Unknown transfer mode: {raw[:32]!r}")


class TransferState(Enum):
    """States shared by the initiator and responder drivers."""
    CONNECTED = "connected"
    MODE_SENT = "mode_sent"
    MODE_RECEIVED = "mode_received"
    FILENAME_SENT = "filename_sent"
    FILENAME_RECEIVED = "filename_received"
    OFFSET_NEGOTIATED = "offset_negotiated"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_final(self) -> bool:
        return self in (TransferState.COMPLETED, TransferState.ABORTED)


def pack_uint32(value: int) -> bytes:
    """Encode an unsigned 32-bit integer in network byte order."""
    return UINT32.pack(value)


def unpack_uint32(data: bytes) -> int:
    return UINT32.unpack(data)[0]


def pack_uint64(value: int) -> bytes:
    """Encode an unsigned 64-bit integer in network byte order."""
    return UINT64.pack(value)


def unpack_uint64(data: bytes) -> int:
    return UINT64.unpack(data)[0]


def encode_field(data: bytes) -> bytes:
    """Length-prefix a variable-length field."""
    return pack_uint32(len(data)) + data


@dataclass(frozen=True)
class TransferRequest:
    """
    The request an initiator sends at the start of a connection.

    `value` is the declared file size for uploads and the initiator's
    local offset for downloads.
    """
    mode: TransferMode
    filename: str
    value: int

    def __post_init__(self):
        if not self.filename:
            raise ValueError("filename must not be empty")
        if not 0 <= self.value <= UINT64_MAX:
            raise ValueError(f"value out of range: {self.value}")

    def to_bytes(self) -> bytes:
        """Serialize steps 1-5 of the message sequence."""
        return (
            encode_field(self.mode.value.encode('ascii')) +
            encode_field(self.filename.encode('utf-8')) +
            pack_uint64(self.value)
        )


@dataclass(frozen=True)
class OffsetAgreement:
    """Resume point and total size agreed for one transfer."""
    offset: int
    size: int

    def __post_init__(self):
        if not 0 <= self.offset <= self.size:
            raise ProtocolViolation(
                f"Offset {self.offset} outside file size {self.size}"
            )

    @property
    def remaining(self) -> int:
        """Bytes still to stream, [offset, size)."""
        return self.size - self.offset


# === Reliable byte stream ===

class TransferConnection:
    """
    One stream connection between initiator and responder.

    Every send either delivers the whole buffer or raises, and every
    receive either returns exactly the requested number of bytes or
    raises. Interrupted and would-block socket calls are retried by the
    event loop, so callers never see a partial result.

    Owned by exactly one driver; not reused across transfers.
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter,
                 io_timeout: Optional[float] = None):
        self.reader = reader
        self.writer = writer
        self.io_timeout = io_timeout or None
        self._closed = False

    @property
    def remote_address(self) -> Tuple[str, int]:
        """Get remote peer address."""
        return self.writer.get_extra_info('peername')

    async def _with_timeout(self, awaitable, what: str):
        try:
            if self.io_timeout is None:
                return await awaitable
            return await asyncio.wait_for(awaitable, timeout=self.io_timeout)
        except asyncio.TimeoutError:
            raise TransferTimeout(f"Timed out after {self.io_timeout}s while {what}")

    async def send_all(self, data: bytes):
        """Send the whole buffer, or raise ConnectionFailed."""
        if self._closed:
            raise ConnectionFailed("Connection closed")
        try:
            self.writer.write(data)
            await self._with_timeout(self.writer.drain(), f"sending {len(data)} bytes")
        except (ConnectionError, OSError) as e:
            raise ConnectionFailed(f"Send failed: {e}") from e

    async def recv_exact(self, length: int) -> bytes:
        """Receive exactly `length` bytes, or raise ConnectionFailed."""
        if self._closed:
            raise ConnectionFailed("Connection closed")
        if length == 0:
            return b''
        try:
            return await self._with_timeout(
                self.reader.readexactly(length),
                f"receiving {length} bytes"
            )
        except asyncio.IncompleteReadError as e:
            raise ConnectionFailed(
                f"Peer closed the stream after {len(e.partial)} of {length} bytes",
                partial=e.partial,
            ) from e
        except (ConnectionError, OSError) as e:
            raise ConnectionFailed(f"Receive failed: {e}") from e

    async def send_uint32(self, value: int):
        await self.send_all(pack_uint32(value))

    async def recv_uint32(self) -> int:
        return unpack_uint32(await self.recv_exact(UINT32.size))

    async def send_uint64(self, value: int):
        await self.send_all(pack_uint64(value))

    async def recv_uint64(self) -> int:
        return unpack_uint64(await self.recv_exact(UINT64.size))

    async def send_field(self, data: bytes):
        await self.send_all(encode_field(data))

    async def recv_field(self, max_length: int, name: str = 'field') -> bytes:
        """
        Receive a length-prefixed field.

        The length is checked before any body bytes are read, so an
        oversized prefix never causes a large allocation.
        """
        length = await self.recv_uint32()
        if length == 0:
            raise ProtocolViolation(f"Empty {name}")
        if length > max_length:
            raise ProtocolViolation(
                f"{name.capitalize()} length {length} exceeds limit {max_length}"
            )
        return await self.recv_exact(length)

    async def close(self):
        """Close the connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error while closing connection: {e}")


async def read_request(conn: TransferConnection,
                       max_mode_length: int = DEFAULT_MAX_MODE_LENGTH,
                       max_filename_length: int = DEFAULT_MAX_FILENAME_LENGTH,
                       on_state: Optional[Callable[[TransferState], None]] = None
                       ) -> TransferRequest:
    """
    Read steps 1-5 of the message sequence from the initiator.

    `on_state` is told about each state the responder passes through.
    """
    mode = TransferMode.parse(await conn.recv_field(max_mode_length, 'mode'))
    if on_state:
        on_state(TransferState.MODE_RECEIVED)

    raw_name = await conn.recv_field(max_filename_length, 'filename')
    try:
        filename = raw_name.decode('utf-8')
    except UnicodeDecodeError:
        raise ProtocolViolation("Filename is not valid UTF-8")
    if '\x00' in filename:
        raise ProtocolViolation("Filename contains a NUL byte")
    if on_state:
        on_state(TransferState.FILENAME_RECEIVED)

    value = await conn.recv_uint64()
    return TransferRequest(mode=mode, filename=filename, value=value)


# Type for connection handlers
ConnectionHandler = Callable[[TransferConnection], Awaitable[None]]


class TransferServer:
    """
    TCP server that hands each accepted connection to a handler.

    Each connection is serviced independently; the handler owns the
    connection and the server closes it once the handler returns.
    """

    def __init__(self, handler: ConnectionHandler, host: str = '0.0.0.0',
                 port: int = DEFAULT_PORT, io_timeout: Optional[float] = None):
        self.handler = handler
        self.host = host
        self.port = port
        self.io_timeout = io_timeout
        self.server: Optional[asyncio.AbstractServer] = None
        self._running = False

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Actual bound address (useful when port 0 was requested)."""
        if not self.server or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[:2]

    async def start(self):
        """Start the transfer server."""
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )
        self._running = True
        logger.info(f"Transfer server listening on {self.address}")

    async def serve_forever(self):
        if self.server is None:
            await self.start()
        await self.server.serve_forever()

    async def stop(self):
        """Stop the transfer server."""
        self._running = False
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            logger.info("Transfer server stopped")

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Handle an incoming connection."""
        conn = TransferConnection(reader, writer, io_timeout=self.io_timeout)
        peer = conn.remote_address
        logger.info(f"Client connected: {peer}")

        try:
            await self.handler(conn)
        except Exception as e:
            logger.exception(f"Error handling connection from {peer}: {e}")
        finally:
            await conn.close()
            logger.debug(f"Connection closed: {peer}")


async def connect_to_peer(host: str, port: int,
                          timeout: Optional[float] = None) -> TransferConnection:
    """
    Connect to a responder.

    Raises:
        ConnectionFailed: if the connection cannot be established
    """
    try:
        open_conn = asyncio.open_connection(host, port)
        if timeout:
            reader, writer = await asyncio.wait_for(open_conn, timeout=timeout)
        else:
            reader, writer = await open_conn
    except asyncio.TimeoutError:
        raise TransferTimeout(f"Timed out connecting to {host}:{port}")
    except OSError as e:
        raise ConnectionFailed(f"Failed to connect to {host}:{port}: {e}") from e
    return TransferConnection(reader, writer, io_timeout=timeout)
