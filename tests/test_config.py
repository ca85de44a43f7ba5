import pytest

from streamproxy.config import DeviceSettings, NegotiationConfig, ServiceSettings
from streamproxy.errors import ConfigurationError


@pytest.mark.parametrize("buffer_size", [8192, 16384, 65536])
def test_buffer_size_within_bounds(buffer_size):
    settings = DeviceSettings(device_id="camera-01", remote_host="camera.local", buffer_size=buffer_size)
    assert settings.buffer_size == buffer_size


@pytest.mark.parametrize("buffer_size", [8191, 65537])
def test_buffer_size_out_of_bounds(buffer_size):
    with pytest.raises(ConfigurationError, match="buffer_size"):
        ServiceSettings(device_id="camera-01", buffer_size=buffer_size)


def test_defaults():
    settings = ServiceSettings(device_id="camera-01")
    assert settings.buffer_size == 16384
    assert settings.local_host == "127.0.0.1"
    assert settings.local_port == 0


def test_device_requires_remote_host():
    with pytest.raises(ConfigurationError, match="remote_host"):
        DeviceSettings(device_id="camera-01", remote_host="")


@pytest.mark.parametrize("factory", [DeviceSettings, ServiceSettings])
def test_device_id_required(factory):
    with pytest.raises(ConfigurationError, match="device_id"):
        factory(remote_host="camera.local")


def test_port_ranges():
    with pytest.raises(ConfigurationError, match="remote_port"):
        DeviceSettings(device_id="camera-01", remote_host="camera.local", remote_port=0)
    with pytest.raises(ConfigurationError, match="local_port"):
        ServiceSettings(device_id="camera-01", local_port=70000)


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("STREAMPROXY_DEVICE_ID", "camera-02")
    monkeypatch.setenv("STREAMPROXY_REMOTE_HOST", "10.0.0.5")
    monkeypatch.setenv("STREAMPROXY_BUFFER_SIZE", "32768")

    settings = DeviceSettings(remote_port=8554)

    assert settings.device_id == "camera-02"
    assert settings.remote_host == "10.0.0.5"
    assert settings.remote_port == 8554
    assert settings.buffer_size == 32768


def test_environment_buffer_size_is_validated(monkeypatch):
    monkeypatch.setenv("STREAMPROXY_BUFFER_SIZE", "1024")
    with pytest.raises(ConfigurationError):
        ServiceSettings(device_id="camera-01")


def test_negotiation_keys():
    config = NegotiationConfig(hub_url="wss://relay.example.com/streams/")
    assert config.requests_list("camera-01") == "streamproxy:camera-01:requests"
    assert config.response_list("abc") == "streamproxy:abc:response"
    assert config.token_key("abc") == "streamproxy:abc:token"
    assert config.stream_uri("abc") == "wss://relay.example.com/streams/abc"
