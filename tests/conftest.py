"""Shared fixtures: mock control process, fast client config, polling helper."""

import logging
import threading
import time
from collections import deque

import pytest

from leggedlink.config import ClientConfig
from leggedlink.errors import TransportError
from leggedlink.mock.robot_server import MockRobotServer
from leggedlink.protocol.types import DeviceIdentity, DeviceType
from leggedlink.protocol.wire import Heartbeat, open_frame, pack_frame
from leggedlink.utils.warmup import warmup_jit


def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is truthy or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture(scope="session", autouse=True)
def _jit_warm():
    """Compile the CRC kernel once so no test pays it inside a verify window."""
    warmup_jit()


@pytest.fixture(autouse=True)
def _quiet_numba():
    logging.getLogger("numba").setLevel(logging.INFO)


def fast_config(endpoint: str = "tcp://127.0.0.1:9", **overrides) -> ClientConfig:
    """Client config with windows shrunk so state changes happen in well under a second."""
    values = dict(
        endpoint=endpoint,
        heartbeat_interval_s=0.1,
        verify_timeout_s=1.0,
        response_timeout_s=0.5,
        shutdown_timeout_s=2.0,
        connect_timeout_s=1.0,
    )
    values.update(overrides)
    return ClientConfig(**values)


@pytest.fixture
def mock_server():
    server = MockRobotServer(host="127.0.0.1", port=0)
    server.start()
    try:
        yield server
    finally:
        server.stop()


class FakeTransport:
    """
    In-memory stand-in for TcpTransport.

    Frames the client sends are recorded in .sent; frames appended to .inbound
    are returned by the next poll(). With auto_reply set, every client
    heartbeat is answered with a server heartbeat.
    """

    server = DeviceIdentity(DeviceType.SERVER, "server_fake")

    def __init__(self, host: str, port: int, connect_timeout: float) -> None:
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.open_error: str | None = None
        self.poll_error: str | None = None
        self.auto_reply = True
        self.inbound: deque[bytes] = deque()
        self.sent: list[bytes] = []
        self.opened = False
        self.closed = False
        self._lock = threading.Lock()

    def open(self) -> None:
        if self.open_error:
            raise TransportError(self.open_error)
        self.opened = True

    def close(self) -> None:
        self.closed = True

    @property
    def is_open(self) -> bool:
        return self.opened and not self.closed

    def poll(self, max_reads: int = 16) -> list[bytes]:
        if self.poll_error:
            raise TransportError(self.poll_error)
        with self._lock:
            frames = list(self.inbound)
            self.inbound.clear()
        return frames

    def send(self, message: bytes) -> bool:
        with self._lock:
            self.sent.append(message)
        if self.auto_reply and isinstance(open_frame(message).payload, Heartbeat):
            self.push(Heartbeat(is_connected=True))
        return True

    def flush(self) -> bool:
        return True

    def push(self, payload) -> None:
        self.push_raw(pack_frame(self.server, payload))

    def push_raw(self, data: bytes) -> None:
        with self._lock:
            self.inbound.append(data)

    def sent_payloads(self, payload_type: type) -> list:
        with self._lock:
            frames = list(self.sent)
        return [
            p for p in (open_frame(f).payload for f in frames) if isinstance(p, payload_type)
        ]


class FakeTransportFactory:
    """Records every transport LinkClient asks for; configure via .setup."""

    def __init__(self, setup=None) -> None:
        self.created: list[FakeTransport] = []
        self.setup = setup

    def __call__(self, host: str, port: int, connect_timeout: float) -> FakeTransport:
        transport = FakeTransport(host, port, connect_timeout)
        if self.setup is not None:
            self.setup(transport)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def wait():
    return wait_until


@pytest.fixture
def make_config():
    return fast_config
