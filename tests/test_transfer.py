import asyncio

import pytest
import pytest_asyncio

from rtransfer.file import FileStore, ProgressLedger
from rtransfer.transfer import (
    ConnectionFailed, ProtocolViolation, StorageError, TransferConnection, TransferInitiator,
    TransferMode, TransferRequest, TransferResponder, TransferState, TransferTimeout,
)
from rtransfer.transfer.protocol import read_request

pytestmark = pytest.mark.asyncio


# === Upload ===

async def test_upload_to_empty_server(initiator, responder, server_root, client_dir,
                                      make_payload, wait_until):
    src = client_dir / 'data.bin'
    src.write_bytes(make_payload(100))

    session = await initiator.upload(src)
    await wait_until(lambda: responder.transfers_completed == 1)

    assert session.state is TransferState.COMPLETED
    assert session.agreement.offset == 0
    assert session.bytes_this_session == 100
    assert (server_root / 'data.bin').read_bytes() == src.read_bytes()
    assert not ProgressLedger().path_for(src).exists()


async def test_upload_resumes_from_server_copy(initiator, responder, server_root, client_dir,
                                              make_payload, wait_until):
    data = make_payload(100)
    src = client_dir / 'data.bin'
    src.write_bytes(data)
    (server_root / 'data.bin').write_bytes(data[:40])

    session = await initiator.upload(src)
    await wait_until(lambda: responder.transfers_completed == 1)

    assert session.agreement.offset == 40
    assert session.bytes_this_session == 60
    assert (server_root / 'data.bin').read_bytes() == data


async def test_upload_of_already_complete_file(initiator, server_root, client_dir, make_payload):
    data = make_payload(100)
    src = client_dir / 'data.bin'
    src.write_bytes(data)
    (server_root / 'data.bin').write_bytes(data)

    session = await initiator.upload(src)

    assert session.agreement.offset == 100
    assert session.bytes_this_session == 0
    assert session.state is TransferState.COMPLETED


async def test_upload_truncates_longer_server_copy(initiator, server_root, client_dir, make_payload):
    data = make_payload(100)
    src = client_dir / 'data.bin'
    src.write_bytes(data)
    (server_root / 'data.bin').write_bytes(data + b'stale tail' * 5)

    await initiator.upload(src)

    assert (server_root / 'data.bin').read_bytes() == data


async def test_upload_empty_file(initiator, server_root, client_dir):
    src = client_dir / 'empty.bin'
    src.write_bytes(b'')

    session = await initiator.upload(src)

    assert session.is_complete
    assert (server_root / 'empty.bin').read_bytes() == b''


async def test_upload_into_subdirectory(initiator, responder, server_root, client_dir,
                                        make_payload, wait_until):
    src = client_dir / 'cat.jpg'
    src.write_bytes(make_payload(50))

    await initiator.upload(src, remote_name='photos/cat.jpg')
    await wait_until(lambda: responder.transfers_completed == 1)

    assert (server_root / 'photos' / 'cat.jpg').read_bytes() == src.read_bytes()


@pytest.mark.parametrize('held', [0, 1, 15, 16, 17, 57, 99, 100])
async def test_resume_at_any_offset_matches_source(initiator, responder, server_root, client_dir,
                                                    make_payload, wait_until, held):
    data = make_payload(100, seed=held)
    src = client_dir / 'data.bin'
    src.write_bytes(data)
    (server_root / 'data.bin').write_bytes(data[:held])

    session = await initiator.upload(src)
    await wait_until(lambda: responder.transfers_completed == 1)

    assert session.agreement.offset == held
    assert (server_root / 'data.bin').read_bytes() == data


async def test_interrupted_upload_then_resume(initiator, responder, server_root, client_dir,
                                              make_payload, wait_until):
    data = make_payload(200)
    src = client_dir / 'data.bin'
    src.write_bytes(data)

    # A client that dies after sending two full chunks
    reader, writer = await asyncio.open_connection('127.0.0.1', responder.address[1])
    writer.write(TransferRequest(TransferMode.UPLOAD, 'data.bin', 200).to_bytes())
    await writer.drain()
    assert await reader.readexactly(8) == (0).to_bytes(8, 'big')
    writer.write(data[:32])
    await writer.drain()
    writer.close()
    await writer.wait_closed()

    await wait_until(lambda: responder.transfers_failed == 1)
    assert (server_root / 'data.bin').read_bytes() == data[:32]

    session = await initiator.upload(src)
    await wait_until(lambda: responder.transfers_completed == 1)

    assert session.agreement.offset == 32
    assert session.bytes_this_session == 168
    assert (server_root / 'data.bin').read_bytes() == data
    assert responder.transfers_completed == 1


async def test_interrupted_upload_keeps_partial_chunk(initiator, responder, server_root,
                                                     client_dir, make_payload, wait_until):
    data = make_payload(200)
    src = client_dir / 'data.bin'
    src.write_bytes(data)

    # Two full chunks and half of the third
    reader, writer = await asyncio.open_connection('127.0.0.1', responder.address[1])
    writer.write(TransferRequest(TransferMode.UPLOAD, 'data.bin', 200).to_bytes())
    await writer.drain()
    assert await reader.readexactly(8) == (0).to_bytes(8, 'big')
    writer.write(data[:40])
    await writer.drain()
    writer.close()
    await writer.wait_closed()

    await wait_until(lambda: responder.transfers_failed == 1)
    assert (server_root / 'data.bin').read_bytes() == data[:40]
    assert responder.bytes_received == 40

    session = await initiator.upload(src)
    await wait_until(lambda: responder.transfers_completed == 1)

    assert session.agreement.offset == 40
    assert (server_root / 'data.bin').read_bytes() == data


async def test_missing_upload_source_fails_before_connecting(client_dir):
    initiator = TransferInitiator('127.0.0.1', 1)
    with pytest.raises(StorageError):
        await initiator.upload(client_dir / 'nope.bin')


async def test_concurrent_uploads_of_same_file_are_serialized(initiator, responder, server_root,
                                                              client_dir, make_payload,
                                                              wait_until):
    data = make_payload(500)
    src = client_dir / 'data.bin'
    src.write_bytes(data)

    first, second = await asyncio.gather(initiator.upload(src), initiator.upload(src))
    await wait_until(lambda: responder.transfers_completed == 2)

    assert first.is_complete and second.is_complete
    assert first.bytes_this_session + second.bytes_this_session == 500
    assert (server_root / 'data.bin').read_bytes() == data
    assert responder.get_stats()['active_files'] == 0


# === Download ===

async def test_download_into_empty_client(initiator, server_root, client_dir, make_payload):
    data = make_payload(100)
    (server_root / 'data.bin').write_bytes(data)
    dst = client_dir / 'data.bin'

    session = await initiator.download(dst)

    assert session.agreement.offset == 0
    assert session.total_size == 100
    assert dst.read_bytes() == data
    assert not ProgressLedger().path_for(dst).exists()


async def test_download_resumes_from_client_copy(initiator, server_root, client_dir, make_payload):
    data = make_payload(100)
    (server_root / 'data.bin').write_bytes(data)
    dst = client_dir / 'data.bin'
    dst.write_bytes(data[:40])

    session = await initiator.download(dst)

    assert (session.agreement.offset, session.agreement.size) == (40, 100)
    assert session.bytes_this_session == 60
    assert dst.read_bytes() == data


async def test_download_already_complete(initiator, responder, server_root, client_dir,
                                         make_payload):
    data = make_payload(100)
    (server_root / 'data.bin').write_bytes(data)
    dst = client_dir / 'data.bin'
    dst.write_bytes(data)

    session = await initiator.download(dst)

    assert session.state is TransferState.COMPLETED
    assert session.agreement.offset == 100
    assert session.bytes_this_session == 0
    assert dst.read_bytes() == data
    assert responder.bytes_sent == 0


async def test_download_truncates_longer_client_copy(initiator, server_root, client_dir,
                                                     make_payload):
    data = make_payload(100)
    (server_root / 'data.bin').write_bytes(data)
    dst = client_dir / 'data.bin'
    dst.write_bytes(data + b'x' * 20)

    session = await initiator.download(dst)

    assert session.agreement.offset == 100
    assert dst.read_bytes() == data


async def test_download_trusts_file_length_over_ledger(initiator, server_root, client_dir,
                                                       make_payload):
    data = make_payload(100)
    (server_root / 'data.bin').write_bytes(data)
    dst = client_dir / 'data.bin'
    dst.write_bytes(data[:40])
    ProgressLedger().path_for(dst).write_text('90\n')

    session = await initiator.download(dst)

    assert session.agreement.offset == 40
    assert dst.read_bytes() == data
    assert not ProgressLedger().path_for(dst).exists()


async def test_download_ignores_unreadable_ledger(initiator, server_root, client_dir,
                                                  make_payload):
    data = make_payload(100)
    (server_root / 'data.bin').write_bytes(data)
    dst = client_dir / 'data.bin'
    ProgressLedger().path_for(dst).write_bytes(b'\xff\xfe\x00garbage')

    session = await initiator.download(dst)

    assert session.is_complete
    assert dst.read_bytes() == data
    assert not ProgressLedger().path_for(dst).exists()


@pytest_asyncio.fixture
async def dropping_server(make_payload):
    """Serves 40 bytes of a 100-byte file, then hangs up."""

    async def handle(reader, writer):
        conn = TransferConnection(reader, writer)
        await read_request(conn)
        await conn.send_uint64(100)
        await conn.send_uint64(0)
        await conn.send_all(make_payload(100)[:40])
        await conn.close()

    server = await asyncio.start_server(handle, '127.0.0.1', 0)
    yield server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()


async def test_interrupted_download_then_resume(dropping_server, initiator, server_root,
                                                client_dir, make_payload):
    data = make_payload(100)
    (server_root / 'data.bin').write_bytes(data)
    dst = client_dir / 'data.bin'
    ledger = ProgressLedger()

    dropped = TransferInitiator('127.0.0.1', dropping_server, chunk_size=16, io_timeout=5.0)
    with pytest.raises(ConnectionFailed):
        await dropped.download(dst)

    # Ledger survives the abort and agrees with what reached the disk
    assert await ledger.read(dst) == 40
    assert dst.read_bytes() == data[:40]

    session = await initiator.download(dst)

    assert session.agreement.offset == 40
    assert session.bytes_this_session == 60
    assert dst.read_bytes() == data
    assert not ledger.path_for(dst).exists()


async def test_download_keeps_prefix_unchanged(initiator, server_root, client_dir, make_payload):
    data = make_payload(100)
    (server_root / 'data.bin').write_bytes(data)
    dst = client_dir / 'data.bin'
    dst.write_bytes(data[:64])
    before = dst.read_bytes()

    await initiator.download(dst)

    assert dst.read_bytes()[:64] == before


async def test_download_missing_file(initiator, responder, client_dir, wait_until):
    with pytest.raises(ConnectionFailed):
        await initiator.download(client_dir / 'ghost.bin')

    await wait_until(lambda: responder.transfers_failed == 1)
    assert not (client_dir / 'ghost.bin').exists()


# === Protocol violations ===

async def test_path_escape_is_rejected(initiator, responder, server_root, client_dir,
                                       make_payload, wait_until):
    src = client_dir / 'evil.bin'
    src.write_bytes(make_payload(10))

    with pytest.raises(ConnectionFailed):
        await initiator.upload(src, remote_name='../evil.bin')

    await wait_until(lambda: responder.transfers_failed == 1)
    assert not (server_root.parent / 'evil.bin').exists()


async def test_unknown_mode_is_rejected(responder, wait_until):
    reader, writer = await asyncio.open_connection('127.0.0.1', responder.address[1])
    writer.write(b"\x00\x00\x00\x06delete")
    await writer.drain()

    assert await reader.read() == b''
    await wait_until(lambda: responder.transfers_failed == 1)
    writer.close()


@pytest_asyncio.fixture
async def lying_server():
    """A responder that always claims an offset one past the end."""

    async def handle(reader, writer):
        conn = TransferConnection(reader, writer)
        request = await read_request(conn)
        if request.mode is TransferMode.UPLOAD:
            await conn.send_uint64(request.value + 1)
        else:
            await conn.send_uint64(10)
            await conn.send_uint64(11)
        await conn.close()

    server = await asyncio.start_server(handle, '127.0.0.1', 0)
    yield server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()


async def test_upload_rejects_offset_beyond_size(lying_server, client_dir, make_payload):
    src = client_dir / 'data.bin'
    src.write_bytes(make_payload(10))
    initiator = TransferInitiator('127.0.0.1', lying_server, io_timeout=5.0)

    with pytest.raises(ProtocolViolation):
        await initiator.upload(src)


async def test_download_rejects_offset_beyond_size(lying_server, client_dir):
    dst = client_dir / 'data.bin'
    initiator = TransferInitiator('127.0.0.1', lying_server, io_timeout=5.0)

    with pytest.raises(ProtocolViolation):
        await initiator.download(dst)

    assert not dst.exists()


async def test_silent_server_times_out(client_dir):
    async def handle(reader, writer):
        await reader.read()

    server = await asyncio.start_server(handle, '127.0.0.1', 0)
    port = server.sockets[0].getsockname()[1]
    initiator = TransferInitiator('127.0.0.1', port, io_timeout=0.2)

    try:
        with pytest.raises(TransferTimeout):
            await initiator.download(client_dir / 'data.bin')
    finally:
        server.close()


async def test_connection_refused(unused_tcp_port, client_dir):
    initiator = TransferInitiator('127.0.0.1', unused_tcp_port, io_timeout=1.0)
    with pytest.raises(ConnectionFailed):
        await initiator.download(client_dir / 'data.bin')


@pytest.mark.parametrize('chunk_size', [0, -1])
async def test_drivers_reject_non_positive_chunk_size(server_root, chunk_size):
    with pytest.raises(ValueError):
        TransferInitiator('127.0.0.1', 9000, chunk_size=chunk_size)
    with pytest.raises(ValueError):
        TransferResponder(FileStore(server_root), chunk_size=chunk_size)


async def test_progress_callback_and_stats(initiator, responder, client_dir, make_payload,
                                          wait_until):
    src = client_dir / 'data.bin'
    src.write_bytes(make_payload(100))
    seen = []

    await initiator.upload(src, progress_callback=lambda s: seen.append(s.transferred))
    await wait_until(lambda: responder.transfers_completed == 1)

    # Once after negotiation, then once per 16-byte chunk
    assert seen[0] == 0
    assert seen[-1] == 100
    assert seen == sorted(seen)
    assert len(seen) == 1 + 7
    stats = responder.get_stats()
    assert stats['transfers_completed'] == 1
    assert stats['bytes_received'] == 100
