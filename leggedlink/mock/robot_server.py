"""
In-process stand-in for the robot's control process.

Listens on TCP, speaks the same framing and envelope codec as LinkClient and
behaves like a minimal control process:
- answers client heartbeats with a server heartbeat (is_connected=True) while
  its reply budget lasts
- acknowledges ModeSet/ControlModeSet by reporting CurrentMode/CurrentControlMode
- optionally pushes battery and mode status at a fixed interval

Every verified inbound envelope is recorded for inspection. A single client is
served at a time; a new connection replaces the previous one.
"""

import logging
import socket
import threading
import time
from collections.abc import Callable

from ..errors import DecodeError, IntegrityError, TransportError
from ..client.outbound_queue import DropOldestQueue
from ..client.transport import TcpTransport
from ..config import QUEUE_CAPACITY, format_endpoint
from ..protocol.types import ControlMode, DeviceIdentity, DeviceType, Mode
from ..protocol.wire import (
    BatteryInfo,
    ControlModeSet,
    CurrentControlMode,
    CurrentMode,
    Envelope,
    Heartbeat,
    ModeSet,
    Payload,
    describe,
    generate_device_id,
    open_frame,
    pack_frame,
)
from ..utils.warmup import warmup_jit

logger = logging.getLogger(__name__)

_ACCEPT_POLL_S = 0.05
_IO_POLL_S = 0.005


class MockRobotServer:
    """
    Threaded mock control process.

    Args:
        host: Bind address.
        port: Bind port; 0 picks a free port (see .port after start()).
        heartbeat_replies: None answers every heartbeat, 0 never answers,
            n answers the first n.
        ack_mode_requests: Report the requested mode back as the current mode.
        status_interval_s: If set, push battery/mode/control-mode status this often.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        heartbeat_replies: int | None = None,
        ack_mode_requests: bool = True,
        status_interval_s: float | None = None,
        battery_level: int = 100,
    ) -> None:
        self.host = host
        self._requested_port = port
        self.identity = DeviceIdentity(
            DeviceType.SERVER, generate_device_id(DeviceType.SERVER)
        )
        self.ack_mode_requests = ack_mode_requests
        self.status_interval_s = status_interval_s
        self.battery_level = battery_level
        self.mode = Mode.AUTO
        self.control_mode = ControlMode.STAND_UP

        self._replies_left = heartbeat_replies
        self._listener: socket.socket | None = None
        self._client: TcpTransport | None = None
        self._outbound: DropOldestQueue[bytes] = DropOldestQueue(QUEUE_CAPACITY)
        self._backlog: list[bytes] = []
        self._drop_requested = threading.Event()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

        self._cond = threading.Condition()
        self._received: list[Envelope] = []
        self.connections = 0
        self.rejected_frames = 0
        self.heartbeats_sent = 0

    # --------------- lifecycle ---------------

    def __enter__(self) -> "MockRobotServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def start(self) -> None:
        if self._thread is not None:
            return
        warmup_jit()
        listener = socket.create_server((self.host, self._requested_port))
        listener.settimeout(_ACCEPT_POLL_S)
        self._listener = listener
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="leggedlink-mock-server", daemon=True
        )
        self._thread.start()
        logger.info(f"Mock robot server listening on {self.endpoint}")

    def stop(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join(timeout=5.0)
        self._thread = None
        self._close_client()
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        logger.info("Mock robot server stopped")

    def serve_forever(self) -> None:
        """Block until stop() is called from another thread (or Ctrl-C)."""
        self.start()
        try:
            while not self._stop_event.wait(0.5):
                pass
        finally:
            self.stop()

    @property
    def port(self) -> int:
        if self._listener is None:
            return self._requested_port
        return self._listener.getsockname()[1]

    @property
    def endpoint(self) -> str:
        return format_endpoint(self.host, self.port)

    @property
    def has_client(self) -> bool:
        return self._client is not None

    # --------------- control ---------------

    def set_heartbeat_replies(self, replies: int | None) -> None:
        """Change the heartbeat reply budget (None = unlimited, 0 = go silent)."""
        self._replies_left = replies

    def push(self, payload: Payload) -> bool:
        """Queue a payload for the connected client. False if no client is connected."""
        return self.push_raw(pack_frame(self.identity, payload))

    def push_raw(self, data: bytes) -> bool:
        """Queue an already encoded envelope (possibly deliberately corrupted)."""
        if self._client is None:
            return False
        self._outbound.put(data)
        return True

    def drop_client(self) -> None:
        """Close the current client connection on the server thread."""
        self._drop_requested.set()

    # --------------- inspection ---------------

    @property
    def received(self) -> list[Envelope]:
        with self._cond:
            return list(self._received)

    def received_payloads(self, payload_type: type) -> list:
        return [e.payload for e in self.received if isinstance(e.payload, payload_type)]

    def clear_received(self) -> None:
        with self._cond:
            self._received.clear()

    def wait_for(
        self,
        predicate: Callable[[list[Envelope]], bool],
        timeout: float = 2.0,
    ) -> bool:
        """Wait until predicate(received envelopes) holds. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: predicate(self._received), timeout)

    def wait_for_payload(
        self, payload_type: type, count: int = 1, timeout: float = 2.0
    ) -> list:
        """Wait for at least count payloads of payload_type; returns those seen so far."""
        self.wait_for(
            lambda envs: sum(isinstance(e.payload, payload_type) for e in envs) >= count,
            timeout,
        )
        return self.received_payloads(payload_type)

    def wait_for_client(self, timeout: float = 2.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self._client is not None:
                return True
            time.sleep(0.01)
        return self._client is not None

    # --------------- server thread ---------------

    def _run(self) -> None:
        next_status = time.monotonic()
        while not self._stop_event.is_set():
            try:
                if self._drop_requested.is_set():
                    self._drop_requested.clear()
                    logger.info("Dropping client connection")
                    self._close_client()

                self._accept()
                client = self._client
                if client is None:
                    continue

                if self.status_interval_s and time.monotonic() >= next_status:
                    self._push_status()
                    next_status = time.monotonic() + self.status_interval_s

                self._serve_once(client)
                self._stop_event.wait(_IO_POLL_S)
            except Exception:
                logger.exception("Mock server loop error")
                self._close_client()

    def _accept(self) -> None:
        listener = self._listener
        if listener is None:
            return
        # Block on accept only while idle
        listener.settimeout(_ACCEPT_POLL_S if self._client is None else 0.0)
        try:
            sock, addr = listener.accept()
        except (BlockingIOError, socket.timeout):
            return
        if self._client is not None:
            logger.info("New client replaces the previous one")
            self._close_client()
        self._client = TcpTransport.from_socket(sock)
        self.connections += 1
        logger.info(f"Client connected from {addr[0]}:{addr[1]}")

    def _serve_once(self, client: TcpTransport) -> None:
        try:
            frames = client.poll()
        except TransportError as e:
            logger.info(f"Client gone: {e}")
            self._close_client()
            return
        for data in frames:
            self._handle(data)

        try:
            self._backlog.extend(self._outbound.drain())
            while self._backlog:
                if not client.send(self._backlog[0]):
                    break
                self._backlog.pop(0)
            client.flush()
        except TransportError as e:
            logger.info(f"Client send failed: {e}")
            self._close_client()

    def _handle(self, data: bytes) -> None:
        try:
            envelope = open_frame(data)
        except (IntegrityError, DecodeError) as e:
            self.rejected_frames += 1
            logger.warning(f"Rejected frame: {e}")
            return
        logger.debug("rx %s", describe(envelope))
        with self._cond:
            self._received.append(envelope)
            self._cond.notify_all()

        payload = envelope.payload
        if isinstance(payload, Heartbeat):
            self._reply_heartbeat()
        elif isinstance(payload, ModeSet) and self.ack_mode_requests:
            self.mode = payload.mode
            self.push(CurrentMode(mode=payload.mode))
        elif isinstance(payload, ControlModeSet) and self.ack_mode_requests:
            self.control_mode = payload.mode
            self.push(CurrentControlMode(mode=payload.mode))

    def _reply_heartbeat(self) -> None:
        left = self._replies_left
        if left is not None:
            if left <= 0:
                return
            self._replies_left = left - 1
        if self.push(Heartbeat(is_connected=True)):
            self.heartbeats_sent += 1

    def _push_status(self) -> None:
        self.push(BatteryInfo(level=self.battery_level))
        self.push(CurrentMode(mode=self.mode))
        self.push(CurrentControlMode(mode=self.control_mode))

    def _close_client(self) -> None:
        client, self._client = self._client, None
        self._backlog.clear()
        self._outbound.clear()
        if client is not None:
            client.close()
