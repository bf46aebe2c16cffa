"""
Control-link client for a legged-robot control process.

Lifecycle:
    DISCONNECTED --connect()--> CONNECTING --server heartbeat--> CONNECTED
    CONNECTING --verify window expires--> CONNECTION_TIMEOUT
    CONNECTING/CONNECTED --transport exhausted / liveness lost--> CONNECTION_FAILED
    CONNECTING/CONNECTED --disconnect()--> DISCONNECTED

Each connect() starts a session made of one TCP transport and three worker
threads (receive, send, heartbeat) plus a short-lived verification thread.
Only the receive and send threads touch the socket; the calling thread only
enqueues frames. Connection-level failures end in a state transition and are
never raised to the caller.
"""

import logging
import threading
import time
from collections.abc import Callable

from .. import config as cfg
from ..config import ClientConfig, parse_endpoint
from ..errors import (
    DecodeError,
    IntegrityError,
    LivenessTimeout,
    ProtocolViolation,
    TransportError,
)
from ..protocol.types import (
    ClientEvent,
    ConnectionState,
    ControlMode,
    DeviceIdentity,
    DeviceType,
    MessageEvent,
    Mode,
    RemoteState,
    StateChangedEvent,
)
from ..protocol.wire import (
    ControlModeSet,
    Envelope,
    Heartbeat,
    ModeSet,
    Payload,
    VelocityCommand,
    describe,
    generate_device_id,
    open_frame,
    pack_frame,
)
from .failure_tracker import FailureTracker, LivenessWatchdog
from .outbound_queue import DropOldestQueue
from .shaping import CommandShaper
from .state_cache import RemoteStateCache
from .transport import TcpTransport
from ..utils.warmup import warmup_jit

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Envelope], None]
StateCallback = Callable[[ConnectionState], None]
TransportFactory = Callable[[str, int, float], TcpTransport]

_ACTIVE = frozenset({ConnectionState.CONNECTING, ConnectionState.CONNECTED})


def _default_transport(host: str, port: int, connect_timeout: float) -> TcpTransport:
    return TcpTransport(host, port, connect_timeout=connect_timeout)


class _Session:
    """Resources belonging to one connect() attempt."""

    def __init__(self, number: int, config: ClientConfig) -> None:
        self.number = number
        self.transport: TcpTransport | None = None
        self.outbound: DropOldestQueue[bytes] = DropOldestQueue(config.queue_capacity)
        self.failures = FailureTracker(config.max_consecutive_failures)
        self.watchdog = LivenessWatchdog(config.response_timeout_s)
        self.stop_event = threading.Event()
        self.running = False  # guarded by LinkClient._lock
        self.threads: list[threading.Thread] = []
        self.teardown_lock = threading.Lock()
        self.torn_down = False


class LinkClient:
    """
    Client side of the control link.

    Can be used as a context manager to ensure proper cleanup:

        with LinkClient() as client:
            client.connect()
            ...
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        device_type: DeviceType = DeviceType.REMOTE_CONTROLLER,
        device_id: str | None = None,
        on_message: MessageCallback | None = None,
        on_state_change: StateCallback | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self.config = config or ClientConfig.from_env()
        device_type = DeviceType(device_type)
        self.identity = DeviceIdentity(
            device_type, device_id or generate_device_id(device_type)
        )
        self._endpoint = self.config.endpoint
        self._transport_factory = transport_factory or _default_transport
        self._shaper = CommandShaper(self.config.shaping)

        self._on_message = on_message
        self._on_state_change = on_state_change

        # Single authority for state and session changes
        self._lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._session: _Session | None = None
        self._session_count = 0
        self._closed = False

        self._cache = RemoteStateCache()
        self._events: DropOldestQueue[ClientEvent] = DropOldestQueue(
            self.config.event_queue_capacity
        )
        self._last_heartbeat_sent_s = 0.0

        warmup_jit()

    # --------------- context manager ---------------

    def __enter__(self) -> "LinkClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- configuration ---------------

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def set_endpoint(self, endpoint: str) -> None:
        """Change the endpoint used by the next connect()."""
        parse_endpoint(endpoint)
        self._endpoint = endpoint
        logger.debug(f"Endpoint set to {endpoint}")

    @property
    def device_id(self) -> str:
        return self.identity.device_id

    def set_message_callback(self, callback: MessageCallback | None) -> None:
        self._on_message = callback

    def set_state_callback(self, callback: StateCallback | None) -> None:
        self._on_state_change = callback

    # --------------- state ---------------

    @property
    def connection_state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def get_connection_state(self) -> ConnectionState:
        return self.connection_state

    @property
    def is_connected(self) -> bool:
        return self.connection_state == ConnectionState.CONNECTED

    def get_remote_state(self) -> RemoteState:
        """Snapshot of the last-known robot state."""
        return self._cache.snapshot()

    @property
    def consecutive_failures(self) -> int:
        session = self._session
        return session.failures.count if session is not None else 0

    @property
    def send_queue_size(self) -> int:
        session = self._session
        return len(session.outbound) if session is not None else 0

    @property
    def last_heartbeat_sent_s(self) -> float:
        """time.monotonic() of the last heartbeat emitted by the heartbeat task."""
        return self._last_heartbeat_sent_s

    # --------------- events ---------------

    def next_event(self, timeout: float | None = None) -> ClientEvent | None:
        """Pop the oldest pending event, waiting up to timeout seconds."""
        return self._events.get(timeout)

    def drain_events(self) -> list[ClientEvent]:
        """Remove and return all pending events, oldest first."""
        return self._events.drain()

    def _publish(self, event: ClientEvent) -> None:
        if not self._events.put(event):
            logger.debug("Event queue full, dropped oldest event")

    def _transition(
        self,
        new: ConnectionState,
        session: _Session | None,
        reason: str = "",
        expected: frozenset[ConnectionState] = _ACTIVE,
    ) -> bool:
        """
        Compare-and-set the connection state.

        Honoured only while the state is in expected and (when given) session
        is still the current session.
        """
        with self._lock:
            if session is not None and self._session is not session:
                return False
            old = self._state
            if old not in expected:
                return False
            self._state = new
        self._notify(old, new, reason)
        return True

    def _notify(self, old: ConnectionState, new: ConnectionState, reason: str) -> None:
        if old == new:
            return
        logger.info(
            "Connection state %s -> %s%s",
            old.name,
            new.name,
            f" ({reason})" if reason else "",
        )
        self._publish(StateChangedEvent(old, new, reason))
        callback = self._on_state_change
        if callback is not None:
            try:
                callback(new)
            except Exception:
                logger.exception("on_state_change callback failed")

    # --------------- lifecycle ---------------

    def connect(self, endpoint: str | None = None) -> bool:
        """
        Start a new session against endpoint (or the configured endpoint).

        Returns immediately after the socket is up and the workers are running;
        the CONNECTING -> CONNECTED/CONNECTION_TIMEOUT outcome is reported through
        the state callback, the event queue and connection_state.

        Returns:
            True if a session was started, False if the request was ignored
            (already connecting/connected, client closed) or the socket could
            not be created (state becomes CONNECTION_FAILED).

        Raises:
            ValueError: If endpoint is malformed.
        """
        if endpoint is not None:
            self.set_endpoint(endpoint)
        host, port = parse_endpoint(self._endpoint)

        with self._lock:
            if self._closed:
                logger.warning("connect() ignored: client is closed")
                return False
            if not self._state.is_terminal:
                logger.warning(f"connect() ignored: already {self._state.name}")
                return False
            previous = self._session
            self._session_count += 1
            session = _Session(self._session_count, self.config)
            self._session = session
            old = self._state
            self._state = ConnectionState.CONNECTING
        self._notify(old, ConnectionState.CONNECTING, f"connecting to {self._endpoint}")

        # A failed session may still be finishing its teardown
        if previous is not None:
            self._teardown(previous)

        logger.info(f"Connecting to {host}:{port} as {self.identity.device_id}")
        transport = self._transport_factory(host, port, self.config.connect_timeout_s)
        try:
            transport.open()
        except TransportError as e:
            logger.error(f"Socket creation failed: {e}")
            self._transition(ConnectionState.CONNECTION_FAILED, session, str(e))
            with self._lock:
                if self._session is session:
                    self._session = None
            return False

        with self._lock:
            if self._session is not session or self._state != ConnectionState.CONNECTING:
                # disconnect() won the race while the socket was opening
                transport.close()
                return False
            session.transport = transport
            session.running = True
            self._cache.reset()
            self._start_workers(session)
        return True

    def disconnect(self) -> None:
        """
        Stop the current session and release its resources.

        No-op when already DISCONNECTED, CONNECTION_FAILED or CONNECTION_TIMEOUT.
        """
        with self._lock:
            old = self._state
            if old.is_terminal:
                logger.debug(f"disconnect() ignored: already {old.name}")
                return
            session = self._session
            self._state = ConnectionState.DISCONNECTED
            if session is not None:
                session.running = False
                session.stop_event.set()
        logger.info("Disconnecting...")
        self._notify(old, ConnectionState.DISCONNECTED, "disconnect requested")
        if session is not None:
            self._teardown(session)
        logger.info("Disconnected")

    def close(self) -> None:
        """Disconnect and refuse further connect() calls. Idempotent."""
        self.disconnect()
        with self._lock:
            self._closed = True
            session = self._session
        if session is not None:
            self._teardown(session)

    def _start_workers(self, session: _Session) -> None:
        targets = (
            ("rx", self._receive_loop),
            ("tx", self._send_loop),
            ("hb", self._heartbeat_loop),
            ("verify", self._verify_connection),
        )
        for name, target in targets:
            thread = threading.Thread(
                target=target,
                args=(session,),
                name=f"leggedlink-{name}-{session.number}",
                daemon=True,
            )
            session.threads.append(thread)
        for thread in session.threads:
            thread.start()
        logger.debug("Worker tasks started")

    def _stop_session(
        self, session: _Session, state: ConnectionState, reason: str
    ) -> bool:
        """Flip the session's running flag (once), publish state, tear down."""
        with self._lock:
            if not session.running:
                return False
            session.running = False
            session.stop_event.set()
        self._transition(state, session, reason)
        self._teardown(session)
        return True

    def _handle_connection_lost(self, session: _Session, reason: str) -> None:
        if self._stop_session(session, ConnectionState.CONNECTION_FAILED, reason):
            logger.warning(f"Connection lost: {reason}")

    def _teardown(self, session: _Session) -> None:
        """Join the session's threads (bounded), close its socket, clear its queue."""
        with session.teardown_lock:
            if session.torn_down:
                return
            session.stop_event.set()
            current = threading.current_thread()
            deadline = time.monotonic() + self.config.shutdown_timeout_s
            for thread in session.threads:
                if thread is current or not thread.is_alive():
                    continue
                thread.join(timeout=max(0.0, deadline - time.monotonic()))
                if thread.is_alive():
                    logger.warning(f"{thread.name} did not stop within shutdown timeout")
            if session.transport is not None:
                session.transport.close()
            session.outbound.clear()
            session.torn_down = True
        with self._lock:
            if self._session is session:
                self._session = None

    # --------------- verification ---------------

    def _verify_connection(self, session: _Session) -> None:
        try:
            logger.debug("Verifying link with an initial heartbeat...")
            self._enqueue(session, Heartbeat(is_connected=True))

            deadline = time.monotonic() + self.config.verify_timeout_s
            verified = False
            while time.monotonic() < deadline and not session.stop_event.is_set():
                if self._cache.server_connected:
                    verified = True
                    break
                session.stop_event.wait(cfg.VERIFY_POLL_S)

            if verified:
                self._transition(
                    ConnectionState.CONNECTED,
                    session,
                    "server heartbeat received",
                    expected=frozenset({ConnectionState.CONNECTING}),
                )
                return
            if session.stop_event.is_set():
                return  # disconnect() or a worker failure already decided the outcome

            logger.warning(
                f"No server heartbeat within {self.config.verify_timeout_s:.1f}s"
            )
            self._stop_session(
                session, ConnectionState.CONNECTION_TIMEOUT, "verification timed out"
            )
        except Exception as e:
            logger.exception("Connection verification failed")
            self._stop_session(
                session, ConnectionState.CONNECTION_FAILED, f"verification error: {e}"
            )

    # --------------- worker tasks ---------------

    def _receive_loop(self, session: _Session) -> None:
        logger.info("Receive task started")
        try:
            while not session.stop_event.is_set():
                self._receive_once(session)
                session.stop_event.wait(self.config.receive_poll_interval_s)
        except Exception:
            logger.exception("Receive task crashed")
            self._handle_connection_lost(session, "receive task failed")
        finally:
            logger.info("Receive task stopped")

    def _receive_once(self, session: _Session) -> None:
        transport = session.transport
        if transport is None:
            return
        try:
            frames = transport.poll()
        except TransportError as e:
            logger.warning(f"Receive error: {e}")
            if session.failures.record_failure():
                self._handle_connection_lost(session, f"receive failed: {e}")
            return

        for data in frames:
            if session.stop_event.is_set():
                return
            try:
                envelope = open_frame(data)
            except IntegrityError as e:
                logger.warning(f"Discarding frame: {e}")
                continue
            except DecodeError as e:
                logger.warning(f"Discarding malformed frame ({len(data)} bytes): {e}")
                continue
            session.failures.record_success()
            self._dispatch(session, envelope)

    def _dispatch(self, session: _Session, envelope: Envelope) -> None:
        logger.trace("rx %s", describe(envelope))  # type: ignore[attr-defined]
        payload = envelope.payload
        self._cache.apply(envelope)
        if isinstance(payload, Heartbeat) and payload.is_connected:
            session.watchdog.feed()

        self._publish(MessageEvent(envelope))
        callback = self._on_message
        if callback is not None:
            try:
                callback(envelope)
            except Exception:
                logger.exception("on_message callback failed")

    def _send_loop(self, session: _Session) -> None:
        logger.info("Send task started")
        try:
            while not session.stop_event.is_set():
                self._send_once(session)
        except Exception:
            logger.exception("Send task crashed")
            self._handle_connection_lost(session, "send task failed")
        finally:
            logger.info("Send task stopped")

    def _send_once(self, session: _Session) -> None:
        transport = session.transport
        frame = session.outbound.get(timeout=self.config.send_pop_timeout_s)
        if transport is None or session.stop_event.is_set():
            return
        try:
            if frame is None:
                transport.flush()
                return
            sent = transport.send(frame)
        except TransportError as e:
            self._send_failed(session, frame, str(e))
            return
        if sent:
            session.failures.record_success()
        else:
            self._send_failed(session, frame, "socket buffer full")

    def _send_failed(self, session: _Session, frame: bytes | None, error: str) -> None:
        logger.warning(f"Send failed: {error}")
        # Requeued at the tail, behind anything enqueued meanwhile
        if frame is not None and not session.outbound.offer(frame):
            logger.warning("Send queue full, dropping frame")
        if session.failures.record_failure():
            self._handle_connection_lost(session, f"send failed: {error}")
        else:
            session.stop_event.wait(self.config.receive_poll_interval_s)

    def _heartbeat_loop(self, session: _Session) -> None:
        logger.info("Heartbeat task started")
        try:
            while not session.stop_event.is_set():
                self._enqueue(session, Heartbeat(is_connected=True))
                self._last_heartbeat_sent_s = time.monotonic()

                if self.connection_state == ConnectionState.CONNECTED:
                    try:
                        session.watchdog.check()
                    except LivenessTimeout as e:
                        logger.warning(f"Server heartbeat lost: {e}")
                        self._handle_connection_lost(session, str(e))
                        break

                session.stop_event.wait(self.config.heartbeat_interval_s)
        except Exception:
            logger.exception("Heartbeat task crashed")
            self._handle_connection_lost(session, "heartbeat task failed")
        finally:
            logger.info("Heartbeat task stopped")

    # --------------- outbound operations ---------------

    def _enqueue(self, session: _Session, payload: Payload) -> bool:
        frame = pack_frame(self.identity, payload)
        if not session.outbound.put(frame):
            logger.warning("Send queue full, dropped oldest frame")
        return True

    def _send(self, payload: Payload) -> bool:
        with self._lock:
            session = self._session
        if session is None or not session.running:
            logger.warning(f"Link not running, ignoring {type(payload).__name__}")
            return False
        return self._enqueue(session, payload)

    def _require_controller(self, operation: str) -> None:
        if not self.identity.is_controller:
            raise ProtocolViolation(
                f"{operation} is only allowed for REMOTE_CONTROLLER clients "
                f"(this client is {self.identity.device_type.name})"
            )

    def send_heartbeat(self) -> bool:
        """Queue a heartbeat (the heartbeat task does this periodically)."""
        return self._send(Heartbeat(is_connected=True))

    def set_mode(self, mode: Mode) -> bool:
        """
        Request AUTO/MANUAL mode. Remote-controller identities only.

        Returns:
            True if the request was queued.
        """
        try:
            self._require_controller("set_mode")
        except ProtocolViolation as e:
            logger.warning(str(e))
            return False
        mode = Mode(mode)
        ok = self._send(ModeSet(mode=mode))
        if ok:
            logger.info(f"Mode set request sent: {mode.name}")
        return ok

    def set_control_mode(self, control_mode: ControlMode) -> bool:
        """
        Request a posture mode (PASSIVE/STAND_UP/LIE_DOWN). Remote-controller identities only.

        Returns:
            True if the request was queued.
        """
        try:
            self._require_controller("set_control_mode")
        except ProtocolViolation as e:
            logger.warning(str(e))
            return False
        control_mode = ControlMode(control_mode)
        ok = self._send(ControlModeSet(mode=control_mode))
        if ok:
            logger.info(f"Control mode set request sent: {control_mode.name}")
        return ok

    def send_velocity(self, vx: float, vy: float, yaw_rate: float) -> bool:
        """
        Queue a velocity command after deadband/clamp shaping.

        Fire-and-forget: returns True once queued.
        """
        svx, svy, syaw = self._shaper.shape(vx, vy, yaw_rate)
        logger.trace(  # type: ignore[attr-defined]
            "velocity vx=%.3f vy=%.3f yaw=%.3f", svx, svy, syaw
        )
        return self._send(VelocityCommand(vx=svx, vy=svy, yaw_rate=syaw))
