import asyncio
import threading
from pathlib import Path

import pytest
import pytest_asyncio

from rtransfer.file import FileStore
from rtransfer.transfer import TransferInitiator, TransferResponder

CHUNK = 16


def pattern(size: int, seed: int = 0) -> bytes:
    """Deterministic, non-repeating-per-chunk test content."""
    return bytes((i * 7 + seed) % 251 for i in range(size))


@pytest.fixture
def server_root(tmp_path) -> Path:
    root = tmp_path / 'server'
    root.mkdir()
    return root


@pytest.fixture
def client_dir(tmp_path) -> Path:
    d = tmp_path / 'client'
    d.mkdir()
    return d


@pytest_asyncio.fixture
async def responder(server_root):
    r = TransferResponder(
        FileStore(server_root), host='127.0.0.1', port=0,
        chunk_size=CHUNK, io_timeout=5.0,
    )
    await r.start()
    yield r
    await r.stop()


@pytest.fixture
def initiator(responder):
    return TransferInitiator('127.0.0.1', responder.address[1],
                             chunk_size=CHUNK, io_timeout=5.0)


async def wait_for(predicate, timeout: float = 5.0):
    """Poll until the server side has caught up."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def threaded_responder(server_root):
    """A responder running on its own event loop, for blocking callers like the CLI."""
    loop = asyncio.new_event_loop()
    ready = threading.Event()
    holder = {}

    def run():
        asyncio.set_event_loop(loop)
        r = TransferResponder(FileStore(server_root), host='127.0.0.1', port=0,
                              io_timeout=5.0)
        loop.run_until_complete(r.start())
        holder['r'] = r
        ready.set()
        loop.run_forever()

    t = threading.Thread(target=run, daemon=True)
    t.start()
    assert ready.wait(5)
    yield holder['r']

    asyncio.run_coroutine_threadsafe(holder['r'].stop(), loop).result(5)
    loop.call_soon_threadsafe(loop.stop)
    t.join(5)
    loop.close()


@pytest.fixture
def make_payload():
    return pattern


@pytest.fixture
def wait_until():
    return wait_for
