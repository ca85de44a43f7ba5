"""Run a device or service proxy from the command line."""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from pydantic import ValidationError
from redis import asyncio as aioredis

from streamproxy.acceptor import DeviceProxy, ProxyClient
from streamproxy.config import MAX_BUFFER_SIZE, DeviceSettings, NegotiationConfig, RelaySettings, ServiceSettings
from streamproxy.connector import TunnelConnector
from streamproxy.errors import ConfigurationError
from streamproxy.negotiation import RedisNegotiator

LOG = logging.getLogger(__name__)

VERBOSITY = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "none": logging.CRITICAL + 1,
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="streamproxy", description="Tunnel a TCP stream over a WebSocket relay.")
    parser.add_argument("-v", "--verbosity", choices=sorted(VERBOSITY), default="info")
    roles = parser.add_subparsers(dest="role", required=True)

    device = roles.add_parser("device", help="Bridge incoming stream requests to a local TCP target")
    device.add_argument("-d", "--device-id")
    device.add_argument("--remote-host")
    device.add_argument("--remote-port", type=int)
    device.add_argument("-b", "--buffer-size", type=int)
    device.add_argument("--redis-url")

    service = roles.add_parser("service", help="Listen locally and tunnel each connection to a device")
    service.add_argument("-d", "--device-id")
    service.add_argument("-p", "--port", dest="local_port", type=int, help="0 for an OS assigned port")
    service.add_argument("--host", dest="local_host")
    service.add_argument("-b", "--buffer-size", type=int)
    service.add_argument("--redis-url")

    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> RelaySettings:
    """Merge command line flags over environment and defaults."""
    overrides = {
        key: value
        for key, value in vars(args).items()
        if key not in ("role", "verbosity") and value is not None
    }
    if args.role == "device":
        return DeviceSettings(**overrides)
    return ServiceSettings(**overrides)


def configure_logging(verbosity: str) -> None:
    logging.basicConfig(
        level=VERBOSITY[verbosity],
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y.%m.%d %H:%M:%S",
    )


async def run(settings: RelaySettings) -> None:
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, shutdown.set)

    redis = aioredis.from_url(settings.redis_url)
    connector = TunnelConnector(open_timeout=settings.connect_timeout_seconds, max_size=MAX_BUFFER_SIZE)
    config = NegotiationConfig()

    try:
        if isinstance(settings, DeviceSettings):
            negotiator = RedisNegotiator(redis, device_id=settings.device_id, config=config)
            acceptor = DeviceProxy(settings, negotiator, connector=connector)
        else:
            negotiator = RedisNegotiator(redis, config=config)
            acceptor = ProxyClient(settings, negotiator, connector=connector)

        await acceptor.run(shutdown)
        await acceptor.sessions.drain(settings.drain_timeout_seconds)
    finally:
        await redis.aclose()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(args.verbosity)

    try:
        settings = build_settings(args)
    except (ConfigurationError, ValidationError) as exc:
        LOG.error("Invalid configuration: %s", exc)
        sys.exit(2)

    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
