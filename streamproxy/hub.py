"""
FastAPI Router for the Streaming Hub

The hub is the far end of every tunnel. A device and a service each open a
WebSocket to /streams/{request_id} with the bearer token minted during
negotiation; the hub pairs the two and moves bytes between them.
All payloads are raw bytes - the hub does not inspect content.
"""

import asyncio
import contextlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from starlette.websockets import WebSocketState

if TYPE_CHECKING:
    from redis.asyncio import Redis  # noqa: F401

from streamproxy.config import NegotiationConfig

LOG = logging.getLogger(__name__)

router = APIRouter(prefix="/streams", tags=["streams"])


@router.websocket("/{request_id}")
async def stream_websocket(websocket: WebSocket, request_id: str) -> None:
    """
    WebSocket endpoint for one end of a tunnel.

    The request_id must match a pending stream request, and the
    Authorization header must carry its token.
    """
    redis: Redis = websocket.app.extra["redis"]
    config = websocket.app.extra.get("streamproxy_config")
    if config is None:
        config = NegotiationConfig()
    elif not isinstance(config, NegotiationConfig):
        config = NegotiationConfig.model_validate(config)

    if not await is_authorized(redis, config, request_id, websocket.headers.get("authorization")):
        LOG.warning("Rejected tunnel connection for stream %s", request_id)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    LOG.info("New tunnel connection for stream %s", request_id)

    rendezvous: Rendezvous = websocket.app.extra.setdefault("streamproxy_rendezvous", Rendezvous())
    try:
        await rendezvous.join(request_id, websocket, redis, config)
    except Exception:
        LOG.exception("Error in tunnel connection for stream %s", request_id)
    finally:
        await close_websocket(websocket)


async def is_authorized(
    redis: "Redis",
    config: NegotiationConfig,
    request_id: str,
    authorization: str | None,
) -> bool:
    """Check a bearer Authorization header against the token stored for request_id."""
    if not authorization:
        return False

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False

    expected = await redis.get(config.token_key(request_id))
    if expected is None:
        return False
    if isinstance(expected, bytes):
        expected = expected.decode("utf-8")

    return hmac.compare_digest(expected, token)


@dataclass
class Waiter:
    """A first tunnel end waiting for its peer."""

    websocket: WebSocket
    paired: asyncio.Future[WebSocket]
    finished: asyncio.Future[None]


@dataclass
class Rendezvous:
    """Pairs the two tunnel ends that present the same request_id."""

    waiting: dict[str, Waiter] = field(default_factory=dict)

    async def join(
        self,
        request_id: str,
        websocket: WebSocket,
        redis: "Redis",
        config: NegotiationConfig,
    ) -> None:
        """Bridge to a waiting peer, or wait for one (second end / first end)."""
        waiter = self.waiting.pop(request_id, None)
        if waiter is not None:
            # The first end runs the bridge; this end stays open until it ends
            waiter.paired.set_result(websocket)
            # Tokens are single use
            await redis.delete(config.token_key(request_id))
            await waiter.finished
            return

        loop = asyncio.get_running_loop()
        waiter = Waiter(websocket, loop.create_future(), loop.create_future())
        self.waiting[request_id] = waiter
        try:
            paired = await self.wait_for_peer(request_id, waiter, config.pairing_timeout_seconds)
            if paired is None:
                return

            peer, backlog = paired
            LOG.info("Bridging stream %s", request_id)
            for message in backlog:
                await peer.send_bytes(message)
            await bridge(websocket, peer)
            LOG.info("Stream %s closed", request_id)
        finally:
            if self.waiting.get(request_id) is waiter:
                del self.waiting[request_id]
            if not waiter.finished.done():
                waiter.finished.set_result(None)

    async def wait_for_peer(
        self,
        request_id: str,
        waiter: Waiter,
        timeout: float,
    ) -> tuple[WebSocket, list[bytes]] | None:
        """
        Wait up to timeout for the second end, watching this end for disconnects.

        Returns:
            The peer and any bytes this end sent while waiting, or None if
            this end left or no peer joined in time
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        backlog: list[bytes] = []

        while True:
            receiver = asyncio.create_task(waiter.websocket.receive())
            try:
                await asyncio.wait(
                    {waiter.paired, receiver},
                    timeout=max(deadline - loop.time(), 0),
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                receiver.cancel()
                (message,) = await asyncio.gather(receiver, return_exceptions=True)

            if isinstance(message, asyncio.CancelledError):
                message = None
            elif isinstance(message, BaseException):
                raise message

            if message is not None:
                if message["type"] == "websocket.disconnect":
                    LOG.info("Tunnel end for stream %s left before its peer joined", request_id)
                    return None
                backlog.append(message_bytes(message))

            if waiter.paired.done():
                return waiter.paired.result(), backlog

            if message is None and loop.time() >= deadline:
                LOG.warning("No peer joined stream %s in time", request_id)
                return None


def message_bytes(message: dict) -> bytes:
    data = message.get("bytes")
    if data is None:
        data = (message.get("text") or "").encode("utf-8")
    return data


async def bridge(left: WebSocket, right: WebSocket) -> None:
    """Move bytes both ways until either end disconnects."""
    tasks = {
        asyncio.create_task(pipe(left, right)),
        asyncio.create_task(pipe(right, left)),
    }
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def pipe(source: WebSocket, sink: WebSocket) -> None:
    with contextlib.suppress(WebSocketDisconnect):
        while True:
            message = await source.receive_bytes()
            await sink.send_bytes(message)


async def close_websocket(websocket: WebSocket) -> None:
    if websocket.application_state is WebSocketState.CONNECTED and websocket.client_state is WebSocketState.CONNECTED:
        with contextlib.suppress(RuntimeError):
            await websocket.close()
