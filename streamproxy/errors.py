"""Exceptions raised by streamproxy components."""


class StreamProxyError(Exception):
    """Base class for all streamproxy errors."""


class ConfigurationError(StreamProxyError):
    """Settings failed validation. Fatal at startup."""


class TunnelConnectError(StreamProxyError):
    """The tunnel handshake did not complete."""

    def __init__(self, uri: str, reason: str) -> None:
        self.uri = uri
        self.reason = reason
        super().__init__(f"Failed to open tunnel to {uri}: {reason}")


class PumpError(StreamProxyError):
    """An I/O failure ended one direction of a relay session."""

    def __init__(self, session_id: str, direction: str) -> None:
        self.session_id = session_id
        self.direction = direction
        super().__init__(f"{direction} pump failed in session {session_id}")


class NegotiationRejected(StreamProxyError):
    """The device did not accept a stream request."""

    def __init__(self, device_id: str, name: str) -> None:
        self.device_id = device_id
        self.name = name
        super().__init__(f"Stream request {name} was not accepted by device {device_id}")
