"""
Stream Negotiation

Arranges which tunnel a session should use. The acceptors only depend on
the two protocols below; RedisNegotiator implements both over Redis lists.
"""

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from pydantic import ValidationError

if TYPE_CHECKING:
    from redis.asyncio import Redis

from streamproxy.config import NegotiationConfig
from streamproxy.models import StreamRequest, StreamResult

LOG = logging.getLogger(__name__)


class DeviceNegotiator(Protocol):
    async def wait_for_stream_request(self, shutdown: asyncio.Event) -> StreamRequest | None: ...

    async def accept_stream_request(self, request: StreamRequest, shutdown: asyncio.Event) -> None: ...


class ServiceNegotiator(Protocol):
    async def request_stream(
        self,
        device_id: str,
        name: str,
        shutdown: asyncio.Event,
    ) -> StreamResult: ...


@dataclass
class RedisNegotiator:
    """
    Negotiates tunnels through Redis lists.

    The service pushes a StreamRequest onto the device's request list and
    blocks on a per-request response list. The token it mints is stored
    for the streaming hub to check both tunnel ends against.

    Usage:
        negotiator = RedisNegotiator(redis, device_id="camera-01")
        request = await negotiator.wait_for_stream_request(shutdown)
    """

    redis: "Redis"
    device_id: str | None = None
    config: NegotiationConfig = field(default_factory=NegotiationConfig)

    async def wait_for_stream_request(self, shutdown: asyncio.Event) -> StreamRequest | None:
        """Block until a stream request for this device arrives, or shutdown is set."""
        if self.device_id is None:
            raise ValueError("device_id is required to wait for stream requests")

        requests_list = self.config.requests_list(self.device_id)

        while not shutdown.is_set():
            result = await self.redis.blpop([requests_list], timeout=1)
            if result is None:
                continue

            _, data = result
            if isinstance(data, bytes):
                data = data.decode("utf-8")

            try:
                request = StreamRequest.model_validate_json(data)
            except ValidationError:
                LOG.exception("Invalid stream request for device %s", self.device_id)
                return None

            # The requester gave up and its token expired
            if not await self.redis.exists(self.config.token_key(request.request_id)):
                LOG.info("Skipping expired stream request %s", request.request_id)
                continue

            return request

        return None

    async def accept_stream_request(self, request: StreamRequest, shutdown: asyncio.Event) -> None:
        LOG.debug("Accepting stream request %s", request.request_id)
        result = StreamResult(
            request_id=request.request_id,
            is_accepted=True,
            uri=request.uri,
            authorization_token=request.authorization_token,
        )
        response_list = self.config.response_list(request.request_id)
        await self.redis.lpush(response_list, result.model_dump_json())
        await self.redis.expire(response_list, self.config.token_ttl_seconds)

    async def request_stream(
        self,
        device_id: str,
        name: str,
        shutdown: asyncio.Event,
    ) -> StreamResult:
        """
        Ask a device to open a tunnel and wait for its answer.

        Returns:
            StreamResult; is_accepted is False if the device refused, did not
            answer within request_timeout_seconds, or shutdown was set
        """
        request_id = uuid.uuid4().hex
        token = secrets.token_urlsafe(32)
        request = StreamRequest(
            request_id=request_id,
            name=name,
            device_id=device_id,
            uri=self.config.stream_uri(request_id),
            authorization_token=token,
        )
        token_key = self.config.token_key(request.request_id)

        await self.redis.set(token_key, token, ex=self.config.token_ttl_seconds)
        requests_list = self.config.requests_list(device_id)
        await self.redis.rpush(requests_list, request.model_dump_json())
        await self.redis.expire(requests_list, self.config.token_ttl_seconds)
        LOG.debug("Sent stream request %s to device %s", request.request_id, device_id)

        result = await self.wait_for_response(request.request_id, shutdown)
        if result is None or not result.is_accepted:
            await self.redis.delete(token_key)
            return StreamResult(request_id=request.request_id, is_accepted=False)

        return StreamResult(
            request_id=request.request_id,
            is_accepted=True,
            uri=request.uri,
            authorization_token=token,
        )

    async def wait_for_response(
        self,
        request_id: str,
        shutdown: asyncio.Event,
    ) -> StreamResult | None:
        response_list = self.config.response_list(request_id)
        deadline = asyncio.get_running_loop().time() + self.config.request_timeout_seconds

        while not shutdown.is_set():
            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                LOG.warning("Timeout waiting for answer to stream request %s", request_id)
                return None

            result = await self.redis.blpop([response_list], timeout=min(remaining, 1.0))
            if result is None:
                continue

            _, data = result
            if isinstance(data, bytes):
                data = data.decode("utf-8")

            try:
                return StreamResult.model_validate_json(data)
            except ValidationError:
                LOG.exception("Invalid answer to stream request %s", request_id)
                return None

        return None
