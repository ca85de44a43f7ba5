"""
Relay Session

Pumps bytes between one local TCP stream and one tunnel connection until
either side closes. The session is completely content-agnostic - it just
moves bytes, imposing no framing of its own.
"""

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException
from websockets.protocol import State

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

from streamproxy.config import DEFAULT_BUFFER_SIZE
from streamproxy.errors import PumpError

LOG = logging.getLogger(__name__)

INBOUND = "inbound"
OUTBOUND = "outbound"


class SessionState(enum.Enum):
    CREATED = "created"
    PIPING = "piping"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class RelaySession:
    """
    One end-to-end relay between a local stream and a tunnel.

    The session owns both streams for the duration of run() and closes
    them on every exit path.

    Usage:
        session = RelaySession(request_id, reader, writer, tunnel, buffer_size=16384)
        await session.run(shutdown)
    """

    session_id: str
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    tunnel: "ClientConnection"
    buffer_size: int = DEFAULT_BUFFER_SIZE
    state: SessionState = field(default=SessionState.CREATED, init=False)
    bytes_inbound: int = field(default=0, init=False)
    bytes_outbound: int = field(default=0, init=False)

    async def run(self, shutdown: asyncio.Event) -> None:
        """
        Pump both directions until one of them ends or shutdown is set.

        Pump failures are logged, never raised.
        """
        if self.state is not SessionState.CREATED:
            raise RuntimeError(f"Session {self.session_id} has already run")

        self.state = SessionState.PIPING
        LOG.info("Relay session %s started", self.session_id)

        inbound = asyncio.create_task(self.tunnel_to_local(), name=f"{self.session_id}:{INBOUND}")
        outbound = asyncio.create_task(self.local_to_tunnel(), name=f"{self.session_id}:{OUTBOUND}")
        stopper = asyncio.create_task(shutdown.wait())

        try:
            done, _ = await asyncio.wait(
                {inbound, outbound, stopper},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if stopper in done:
                LOG.info("Shutdown requested, closing relay session %s", self.session_id)
        finally:
            for task in (inbound, outbound, stopper):
                task.cancel()

            self.state = SessionState.CLOSING
            await self.close()

            results = await asyncio.gather(inbound, outbound, return_exceptions=True)
            for result in results:
                self.report(result)

            self.state = SessionState.CLOSED
            LOG.info(
                "Relay session %s closed (%d bytes in, %d bytes out)",
                self.session_id,
                self.bytes_inbound,
                self.bytes_outbound,
            )

    async def tunnel_to_local(self) -> None:
        """Receive tunnel messages and write them to the local stream."""
        try:
            while self.tunnel.state is State.OPEN:
                message = await self.tunnel.recv()
                if isinstance(message, str):
                    message = message.encode("utf-8")

                LOG.debug("Forwarding %d bytes from tunnel in session %s", len(message), self.session_id)
                self.writer.write(message)
                await self.writer.drain()
                self.bytes_inbound += len(message)
        except ConnectionClosedOK:
            LOG.debug("Tunnel closed in session %s", self.session_id)
        except (ConnectionClosed, OSError) as exc:
            raise PumpError(self.session_id, INBOUND) from exc

    async def local_to_tunnel(self) -> None:
        """Read the local stream and send each read as one binary message."""
        try:
            while not self.reader.at_eof():
                data = await self.reader.read(self.buffer_size)
                if not data:
                    break

                LOG.debug("Forwarding %d bytes from local stream in session %s", len(data), self.session_id)
                await self.tunnel.send(data)
                self.bytes_outbound += len(data)

            LOG.debug("Local stream reached EOF in session %s", self.session_id)
        except ConnectionClosedOK:
            LOG.debug("Tunnel closed in session %s", self.session_id)
        except (ConnectionClosed, OSError) as exc:
            raise PumpError(self.session_id, OUTBOUND) from exc

    async def close(self) -> None:
        """Close the local stream, then the tunnel with a normal closure."""
        self.writer.close()
        with contextlib.suppress(OSError):
            await self.writer.wait_closed()

        with contextlib.suppress(WebSocketException, OSError):
            await self.tunnel.close()

    def report(self, result: BaseException | None) -> None:
        if result is None or isinstance(result, asyncio.CancelledError):
            return
        if isinstance(result, PumpError):
            LOG.warning("%s: %r", result, result.__cause__)
            return
        LOG.error("Unexpected error in relay session %s", self.session_id, exc_info=result)
