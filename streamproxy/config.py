"""Configuration for streamproxy components."""

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from streamproxy.errors import ConfigurationError

MIN_BUFFER_SIZE = 8192
MAX_BUFFER_SIZE = 65536
DEFAULT_BUFFER_SIZE = 16384


class RelaySettings(BaseSettings):
    buffer_size: int = DEFAULT_BUFFER_SIZE
    connect_timeout_seconds: float = 10.0
    drain_timeout_seconds: float = 5.0
    redis_url: str = "redis://localhost:6379/0"

    model_config = SettingsConfigDict(env_prefix="streamproxy_")

    @model_validator(mode="after")
    def check_buffer_size(self) -> "RelaySettings":
        if self.buffer_size < MIN_BUFFER_SIZE:
            raise ConfigurationError(
                f"buffer_size must not be less than {MIN_BUFFER_SIZE} bytes (got {self.buffer_size})"
            )
        if self.buffer_size > MAX_BUFFER_SIZE:
            raise ConfigurationError(
                f"buffer_size must not be greater than {MAX_BUFFER_SIZE} bytes (got {self.buffer_size})"
            )
        return self


class DeviceSettings(RelaySettings):
    """Settings for the device role: bridge stream requests to a local target."""

    device_id: str = ""
    remote_host: str = ""
    remote_port: int = 554

    @model_validator(mode="after")
    def check_device(self) -> "DeviceSettings":
        if not self.device_id:
            raise ConfigurationError("device_id must not be empty")
        if not self.remote_host:
            raise ConfigurationError("remote_host must not be empty")
        if not 0 < self.remote_port < 65536:
            raise ConfigurationError(f"remote_port out of range: {self.remote_port}")
        return self


class ServiceSettings(RelaySettings):
    """Settings for the service role: listen locally and request tunnels to a device."""

    device_id: str = ""
    local_host: str = "127.0.0.1"
    # 0 lets the OS pick a port
    local_port: int = 0

    @model_validator(mode="after")
    def check_service(self) -> "ServiceSettings":
        if not self.device_id:
            raise ConfigurationError("device_id must not be empty")
        if not 0 <= self.local_port < 65536:
            raise ConfigurationError(f"local_port out of range: {self.local_port}")
        return self


class NegotiationConfig(BaseSettings):
    requests_list_pattern: str = "streamproxy:{device_id}:requests"
    response_list_pattern: str = "streamproxy:{request_id}:response"
    token_key_pattern: str = "streamproxy:{request_id}:token"

    hub_url: str = "ws://localhost:8000/streams"

    request_timeout_seconds: float = 30.0
    token_ttl_seconds: int = 60
    pairing_timeout_seconds: float = 30.0

    model_config = SettingsConfigDict(env_prefix="streamproxy_")

    def requests_list(self, device_id: str) -> str:
        return self.requests_list_pattern.format(device_id=device_id)

    def response_list(self, request_id: str) -> str:
        return self.response_list_pattern.format(request_id=request_id)

    def token_key(self, request_id: str) -> str:
        return self.token_key_pattern.format(request_id=request_id)

    def stream_uri(self, request_id: str) -> str:
        return f"{self.hub_url.rstrip('/')}/{request_id}"
