"""
Tunnel Connector

Opens the authenticated WebSocket connection a relay session pumps bytes over.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from websockets.asyncio.client import connect
from websockets.exceptions import WebSocketException

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

from streamproxy.config import MAX_BUFFER_SIZE
from streamproxy.errors import TunnelConnectError

LOG = logging.getLogger(__name__)


@dataclass
class TunnelConnector:
    """
    Turns a negotiated (uri, token) pair into an open tunnel.

    Usage:
        connector = TunnelConnector(open_timeout=10)
        tunnel = await connector.connect(result.uri, result.authorization_token, shutdown)
    """

    open_timeout: float | None = 10.0
    # Inbound messages larger than this close the tunnel with 1009 (message too big)
    max_size: int | None = MAX_BUFFER_SIZE

    async def connect(
        self,
        uri: str,
        authorization_token: str,
        shutdown: asyncio.Event,
    ) -> "ClientConnection":
        """
        Open a WebSocket to uri, sending the token as a bearer credential.

        Raises:
            TunnelConnectError: If the handshake fails or shutdown is requested first
        """
        if shutdown.is_set():
            raise TunnelConnectError(uri, "shutdown requested")

        LOG.debug("Opening tunnel to %s", uri)

        handshake = asyncio.create_task(self.open(uri, authorization_token))
        stopper = asyncio.create_task(shutdown.wait())
        try:
            await asyncio.wait({handshake, stopper}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self.abandon(handshake)
            raise
        finally:
            stopper.cancel()

        if not handshake.done():
            await self.abandon(handshake)
            raise TunnelConnectError(uri, "shutdown requested")

        try:
            tunnel = handshake.result()
        except (WebSocketException, OSError, TimeoutError) as exc:
            raise TunnelConnectError(uri, str(exc) or type(exc).__name__) from exc

        LOG.debug("Tunnel to %s established", uri)
        return tunnel

    async def open(self, uri: str, authorization_token: str) -> "ClientConnection":
        return await connect(
            uri,
            additional_headers={"Authorization": f"Bearer {authorization_token}"},
            open_timeout=self.open_timeout,
            max_size=self.max_size,
        )

    async def abandon(self, handshake: "asyncio.Task[ClientConnection]") -> None:
        """Cancel a pending handshake and close the connection if it won the race anyway."""
        handshake.cancel()
        try:
            tunnel = await handshake
        except (asyncio.CancelledError, WebSocketException, OSError, TimeoutError):
            return
        with contextlib.suppress(WebSocketException, OSError):
            await tunnel.close()
