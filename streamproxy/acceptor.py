"""
Session Acceptors

Role-specific loops that obtain a local stream and a tunnel for every unit
of work and hand both to a RelaySession, without waiting for it to finish.

DeviceProxy waits for stream requests and connects to a local target.
ProxyClient listens on a local port and requests a stream per connection.
"""

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

from streamproxy.config import DeviceSettings, ServiceSettings
from streamproxy.connector import TunnelConnector
from streamproxy.errors import NegotiationRejected, TunnelConnectError
from streamproxy.models import StreamRequest
from streamproxy.negotiation import DeviceNegotiator, ServiceNegotiator
from streamproxy.session import RelaySession

LOG = logging.getLogger(__name__)


@dataclass
class SessionRegistry:
    """Tracks in-flight session tasks so shutdown can wait for them."""

    tasks: set[asyncio.Task[None]] = field(default_factory=set)

    @property
    def active_sessions(self) -> list[str]:
        """Names of the session tasks still running."""
        return [task.get_name() for task in self.tasks]

    def spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=name)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight sessions, cancelling those still running after timeout."""
        if not self.tasks:
            return

        LOG.info("Waiting for %d relay session(s) to finish", len(self.tasks))
        _, pending = await asyncio.wait(set(self.tasks), timeout=timeout)
        if pending:
            LOG.warning("Cancelling %d relay session(s) still running", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)


async def close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()


@dataclass
class DeviceProxy:
    """
    Device role: accept stream requests and bridge them to (remote_host, remote_port).

    Usage:
        proxy = DeviceProxy(settings, negotiator)
        await proxy.run(shutdown)
    """

    settings: DeviceSettings
    negotiator: DeviceNegotiator
    connector: TunnelConnector = field(default_factory=TunnelConnector)
    sessions: SessionRegistry = field(default_factory=SessionRegistry)

    async def run(self, shutdown: asyncio.Event) -> None:
        """Accept stream requests until shutdown is set."""
        LOG.info("Starting to listen for incoming stream requests")

        while not shutdown.is_set():
            request = await self.negotiator.wait_for_stream_request(shutdown)
            if request is None:
                continue

            LOG.debug("Stream request %s received, initiating proxy setup", request.request_id)
            self.sessions.spawn(self.handle_request(request, shutdown), name=request.request_id)

        LOG.info("Stopped listening for stream requests")

    async def handle_request(self, request: StreamRequest, shutdown: asyncio.Event) -> None:
        """Accept one request, open both streams and relay until either side closes."""
        LOG.info("Starting a proxy connection. RequestId: %s Name: %s", request.request_id, request.name)

        try:
            await self.negotiator.accept_stream_request(request, shutdown)
            tunnel = await self.connector.connect(request.uri, request.authorization_token, shutdown)

            try:
                reader, writer = await asyncio.open_connection(
                    self.settings.remote_host,
                    self.settings.remote_port,
                )
            except BaseException:
                await tunnel.close()
                raise

            session = RelaySession(
                request.request_id,
                reader,
                writer,
                tunnel,
                buffer_size=self.settings.buffer_size,
            )
            await session.run(shutdown)

        except TunnelConnectError as exc:
            LOG.warning("Proxy connection %s not started: %s", request.request_id, exc)
        except OSError as exc:
            LOG.warning(
                "Cannot connect to %s:%d for request %s: %s",
                self.settings.remote_host,
                self.settings.remote_port,
                request.request_id,
                exc,
            )
        except Exception:
            LOG.exception("Error in proxy connection %s", request.request_id)
        finally:
            LOG.info("Stopped a proxy connection. RequestId: %s Name: %s", request.request_id, request.name)


@dataclass
class ProxyClient:
    """
    Service role: listen on (local_host, local_port) and tunnel each connection to the device.

    Usage:
        client = ProxyClient(settings, negotiator)
        await client.run(shutdown)
    """

    settings: ServiceSettings
    negotiator: ServiceNegotiator
    connector: TunnelConnector = field(default_factory=TunnelConnector)
    sessions: SessionRegistry = field(default_factory=SessionRegistry)
    port: int | None = field(default=None, init=False)
    started: asyncio.Event = field(default_factory=asyncio.Event, init=False)

    async def run(self, shutdown: asyncio.Event) -> None:
        """Accept local connections until shutdown is set."""
        server = await asyncio.start_server(
            lambda reader, writer: self.accept(reader, writer, shutdown),
            host=self.settings.local_host,
            port=self.settings.local_port,
        )
        self.port = server.sockets[0].getsockname()[1]
        LOG.info("Started TCP listener on tcp://%s:%d", self.settings.local_host, self.port)
        self.started.set()

        try:
            await shutdown.wait()
        finally:
            server.close()
            LOG.info("Stopped TCP listener on tcp://%s:%d", self.settings.local_host, self.port)

    def accept(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        shutdown: asyncio.Event,
    ) -> None:
        name = f"{self.settings.device_id}-{uuid.uuid4()}"
        LOG.debug("Local TCP connection %s established, initiating proxy setup", name)
        self.sessions.spawn(self.handle_connection(name, reader, writer, shutdown), name=name)

    async def handle_connection(
        self,
        name: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        shutdown: asyncio.Event,
    ) -> None:
        """Request a stream for one local connection and relay until either side closes."""
        device_id = self.settings.device_id
        tunnel = None

        try:
            result = await self.negotiator.request_stream(device_id, name, shutdown)
            if not result.is_accepted:
                raise NegotiationRejected(device_id, name)

            tunnel = await self.connector.connect(result.uri, result.authorization_token, shutdown)
        except (NegotiationRejected, TunnelConnectError) as exc:
            LOG.warning("%s", exc)
        except Exception:
            LOG.exception("Error setting up proxy connection %s", name)
        finally:
            if tunnel is None:
                await close_writer(writer)

        if tunnel is None:
            return

        LOG.info("Starting a proxy connection to device %s (%s)", device_id, name)
        session = RelaySession(name, reader, writer, tunnel, buffer_size=self.settings.buffer_size)
        try:
            await session.run(shutdown)
        except Exception:
            LOG.exception("Error in proxy connection %s", name)
        finally:
            LOG.info("Stopped a proxy connection with device %s (%s)", device_id, name)
