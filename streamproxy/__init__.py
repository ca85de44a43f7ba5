"""
streamproxy - TCP stream tunnelling over a WebSocket relay

Bridges a local TCP stream (e.g. an RTSP camera) between a device and a
service through a message-framed, bearer-authenticated WebSocket tunnel.

The relay does NOT inspect payloads - it simply moves bytes.
"""

from streamproxy.acceptor import DeviceProxy, ProxyClient, SessionRegistry
from streamproxy.config import (
    DeviceSettings,
    NegotiationConfig,
    RelaySettings,
    ServiceSettings,
)
from streamproxy.connector import TunnelConnector
from streamproxy.errors import (
    ConfigurationError,
    NegotiationRejected,
    PumpError,
    StreamProxyError,
    TunnelConnectError,
)
from streamproxy.models import StreamRequest, StreamResult
from streamproxy.negotiation import RedisNegotiator
from streamproxy.session import RelaySession, SessionState

__all__ = [
    # Acceptors
    "DeviceProxy",
    "ProxyClient",
    "SessionRegistry",
    # Relay
    "RelaySession",
    "SessionState",
    "TunnelConnector",
    # Negotiation
    "RedisNegotiator",
    "StreamRequest",
    "StreamResult",
    # Config
    "RelaySettings",
    "DeviceSettings",
    "ServiceSettings",
    "NegotiationConfig",
    # Errors
    "StreamProxyError",
    "ConfigurationError",
    "TunnelConnectError",
    "PumpError",
    "NegotiationRejected",
]

__version__ = "0.1.0"
