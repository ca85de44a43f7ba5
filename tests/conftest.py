import asyncio
import socket

import pytest
from websockets.exceptions import ConnectionClosedOK
from websockets.protocol import State


class FakeTunnel:
    """In-memory stand-in for a websockets client connection.

    Tests feed messages through `incoming` (None closes the tunnel from the
    remote side, an exception instance is raised from recv) and read what the
    relay sent from `outgoing`.
    """

    def __init__(self) -> None:
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.outgoing: asyncio.Queue = asyncio.Queue()
        self.sent: list[bytes] = []
        self.state = State.OPEN
        self.close_code: int | None = None

    async def recv(self) -> bytes | str:
        message = await self.incoming.get()
        if message is None:
            self.state = State.CLOSED
            raise ConnectionClosedOK(None, None)
        if isinstance(message, BaseException):
            self.state = State.CLOSED
            raise message
        return message

    async def send(self, message: bytes) -> None:
        if self.state is not State.OPEN:
            raise ConnectionClosedOK(None, None)
        self.sent.append(message)
        self.outgoing.put_nowait(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.close_code is None:
            self.close_code = code
        self.state = State.CLOSED
        self.incoming.put_nowait(None)


@pytest.fixture
def tunnel() -> FakeTunnel:
    return FakeTunnel()


@pytest.fixture
def shutdown() -> asyncio.Event:
    return asyncio.Event()


@pytest.fixture
async def open_pair():
    """Factory for two connected asyncio streams: one for the session, one for the test."""
    writers: list[asyncio.StreamWriter] = []

    async def factory():
        left, right = socket.socketpair()
        session_reader, session_writer = await asyncio.open_connection(sock=left)
        peer_reader, peer_writer = await asyncio.open_connection(sock=right)
        writers.extend((session_writer, peer_writer))
        return (session_reader, session_writer), (peer_reader, peer_writer)

    yield factory

    for writer in writers:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass


@pytest.fixture
async def local_pair(open_pair):
    return await open_pair()
