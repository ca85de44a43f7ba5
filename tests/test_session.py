import asyncio
import logging

import pytest
from websockets.exceptions import ConnectionClosedError

from streamproxy.session import RelaySession, SessionState

from .conftest import FakeTunnel

TIMEOUT = 2.0


def start(session: RelaySession, shutdown: asyncio.Event) -> asyncio.Task:
    return asyncio.create_task(session.run(shutdown))


async def test_single_local_read_becomes_single_message(local_pair, tunnel, shutdown):
    (reader, writer), (_, peer_writer) = local_pair
    session = RelaySession("s1", reader, writer, tunnel, buffer_size=16384)
    task = start(session, shutdown)

    peer_writer.write(bytes([0x01, 0x02, 0x03]))
    await peer_writer.drain()

    message = await asyncio.wait_for(tunnel.outgoing.get(), TIMEOUT)
    assert message == b"\x01\x02\x03"
    assert tunnel.sent == [b"\x01\x02\x03"]

    shutdown.set()
    await asyncio.wait_for(task, TIMEOUT)


async def test_tunnel_messages_are_concatenated_in_order(local_pair, tunnel, shutdown):
    (reader, writer), (peer_reader, _) = local_pair
    session = RelaySession("s1", reader, writer, tunnel)
    task = start(session, shutdown)

    tunnel.incoming.put_nowait(b"\xaa")
    tunnel.incoming.put_nowait(b"\xbb\xcc")

    data = await asyncio.wait_for(peer_reader.readexactly(3), TIMEOUT)
    assert data == b"\xaa\xbb\xcc"

    shutdown.set()
    await asyncio.wait_for(task, TIMEOUT)
    assert session.bytes_inbound == 3


async def test_large_transfer_keeps_byte_order(local_pair, tunnel, shutdown):
    (reader, writer), (peer_reader, peer_writer) = local_pair
    session = RelaySession("s1", reader, writer, tunnel, buffer_size=8192)
    task = start(session, shutdown)

    payload = bytes(range(256)) * 400
    peer_writer.write(payload)
    await peer_writer.drain()

    received = b""
    while len(received) < len(payload):
        message = await asyncio.wait_for(tunnel.outgoing.get(), TIMEOUT)
        assert 0 < len(message) <= 8192
        received += message
    assert received == payload

    chunks = [payload[i : i + 1000] for i in range(0, len(payload), 1000)]
    for chunk in chunks:
        tunnel.incoming.put_nowait(chunk)
    echoed = await asyncio.wait_for(peer_reader.readexactly(len(payload)), TIMEOUT)
    assert echoed == payload

    shutdown.set()
    await asyncio.wait_for(task, TIMEOUT)


async def test_text_and_empty_messages_are_forwarded_as_bytes(local_pair, tunnel, shutdown):
    (reader, writer), (peer_reader, _) = local_pair
    session = RelaySession("s1", reader, writer, tunnel)
    task = start(session, shutdown)

    tunnel.incoming.put_nowait(b"")
    tunnel.incoming.put_nowait("RTSP")

    assert await asyncio.wait_for(peer_reader.readexactly(4), TIMEOUT) == b"RTSP"

    shutdown.set()
    await asyncio.wait_for(task, TIMEOUT)


async def test_local_eof_closes_tunnel(local_pair, tunnel, shutdown):
    (reader, writer), (peer_reader, peer_writer) = local_pair
    session = RelaySession("s1", reader, writer, tunnel)
    task = start(session, shutdown)

    peer_writer.write(b"bye")
    peer_writer.write_eof()

    await asyncio.wait_for(task, TIMEOUT)

    assert session.state is SessionState.CLOSED
    assert tunnel.sent == [b"bye"]
    assert tunnel.close_code == 1000
    assert await asyncio.wait_for(peer_reader.read(), TIMEOUT) == b""


async def test_tunnel_close_closes_local_stream(local_pair, tunnel, shutdown):
    (reader, writer), (peer_reader, _) = local_pair
    session = RelaySession("s1", reader, writer, tunnel)
    task = start(session, shutdown)

    tunnel.incoming.put_nowait(b"last")
    tunnel.incoming.put_nowait(None)

    await asyncio.wait_for(task, TIMEOUT)

    assert session.state is SessionState.CLOSED
    assert writer.is_closing()
    assert await asyncio.wait_for(peer_reader.read(), TIMEOUT) == b"last"


async def test_tunnel_error_is_logged_not_raised(local_pair, tunnel, shutdown, caplog):
    (reader, writer), _ = local_pair
    session = RelaySession("s1", reader, writer, tunnel)
    task = start(session, shutdown)

    with caplog.at_level(logging.WARNING, logger="streamproxy.session"):
        tunnel.incoming.put_nowait(ConnectionClosedError(None, None))
        await asyncio.wait_for(task, TIMEOUT)

    assert session.state is SessionState.CLOSED
    assert "inbound pump failed in session s1" in caplog.text
    assert writer.is_closing()


async def test_shutdown_unblocks_idle_session(local_pair, tunnel, shutdown):
    (reader, writer), (peer_reader, _) = local_pair
    session = RelaySession("s1", reader, writer, tunnel)
    task = start(session, shutdown)

    await asyncio.sleep(0)
    assert session.state is SessionState.PIPING

    shutdown.set()
    await asyncio.wait_for(task, TIMEOUT)

    assert session.state is SessionState.CLOSED
    assert tunnel.close_code == 1000
    assert await asyncio.wait_for(peer_reader.read(), TIMEOUT) == b""


async def test_cancelled_session_still_closes_streams(local_pair, tunnel, shutdown):
    (reader, writer), _ = local_pair
    session = RelaySession("s1", reader, writer, tunnel)
    task = start(session, shutdown)

    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, TIMEOUT)

    assert session.state is SessionState.CLOSED
    assert tunnel.close_code == 1000
    assert writer.is_closing()


async def test_sessions_are_isolated(open_pair, shutdown):
    (reader_a, writer_a), (peer_reader_a, peer_writer_a) = await open_pair()
    (reader_b, writer_b), (peer_reader_b, peer_writer_b) = await open_pair()
    tunnel_a, tunnel_b = FakeTunnel(), FakeTunnel()

    session_a = RelaySession("a", reader_a, writer_a, tunnel_a)
    session_b = RelaySession("b", reader_b, writer_b, tunnel_b)
    task_a = start(session_a, shutdown)
    task_b = start(session_b, shutdown)

    # Remote close of session a
    tunnel_a.incoming.put_nowait(None)
    await asyncio.wait_for(task_a, TIMEOUT)
    assert session_a.state is SessionState.CLOSED

    assert session_b.state is SessionState.PIPING
    peer_writer_b.write(b"still here")
    await peer_writer_b.drain()
    assert await asyncio.wait_for(tunnel_b.outgoing.get(), TIMEOUT) == b"still here"

    tunnel_b.incoming.put_nowait(b"pong")
    assert await asyncio.wait_for(peer_reader_b.readexactly(4), TIMEOUT) == b"pong"
    assert tunnel_a.sent == []

    shutdown.set()
    await asyncio.wait_for(task_b, TIMEOUT)


async def test_run_twice_is_rejected(local_pair, tunnel, shutdown):
    (reader, writer), _ = local_pair
    session = RelaySession("s1", reader, writer, tunnel)
    shutdown.set()
    await session.run(shutdown)

    with pytest.raises(RuntimeError):
        await session.run(shutdown)
