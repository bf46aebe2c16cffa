"""
Unit tests for endpoint parsing and client configuration.
"""

import pytest

from leggedlink.config import ClientConfig, format_endpoint, parse_endpoint

pytestmark = pytest.mark.unit


class TestParseEndpoint:
    @pytest.mark.parametrize(
        "endpoint,expected",
        [
            ("tcp://127.0.0.1:33445", ("127.0.0.1", 33445)),
            ("TCP://robot.local:5555", ("robot.local", 5555)),
            ("192.168.1.10:33445", ("192.168.1.10", 33445)),
            ("tcp://[::1]:33445", ("::1", 33445)),
        ],
    )
    def test_valid(self, endpoint, expected):
        assert parse_endpoint(endpoint) == expected

    @pytest.mark.parametrize(
        "endpoint",
        ["udp://127.0.0.1:33445", "tcp://127.0.0.1", "tcp://:33445", "host:notaport", "host:0", "host:70000"],
    )
    def test_invalid(self, endpoint):
        with pytest.raises(ValueError):
            parse_endpoint(endpoint)

    def test_format_roundtrip(self):
        assert parse_endpoint(format_endpoint("10.0.0.2", 1234)) == ("10.0.0.2", 1234)


class TestClientConfig:
    def test_defaults(self):
        config = ClientConfig()
        assert config.heartbeat_interval_s == 1.0
        assert config.verify_timeout_s == 2.0
        assert config.response_timeout_s == 2.5
        assert config.queue_capacity == 1000
        assert config.max_consecutive_failures == 3

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("LEGGEDLINK_ENDPOINT", "tcp://10.1.2.3:4000")
        monkeypatch.setenv("LEGGEDLINK_HEARTBEAT_INTERVAL_S", "0.5")
        monkeypatch.setenv("LEGGEDLINK_QUEUE_CAPACITY", "64")
        config = ClientConfig.from_env(verify_timeout_s=0.75)
        assert config.endpoint == "tcp://10.1.2.3:4000"
        assert config.heartbeat_interval_s == 0.5
        assert config.queue_capacity == 64
        assert config.verify_timeout_s == 0.75

    def test_invalid_endpoint_rejected(self):
        with pytest.raises(ValueError):
            ClientConfig(endpoint="nonsense")

    @pytest.mark.parametrize(
        "overrides",
        [
            {"queue_capacity": 0},
            {"max_consecutive_failures": 0},
            {"heartbeat_interval_s": 0.0},
            {"response_timeout_s": -1.0},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ValueError):
            ClientConfig(**overrides)
