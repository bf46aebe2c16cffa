"""
Unit tests for the LinkClient connection state machine.

A fake transport stands in for the socket so transitions can be driven
deterministically: it answers heartbeats unless told not to, and can be made
to fail on open() or poll().
"""

import zlib

import msgspec
import pytest

from leggedlink.client.link_client import LinkClient
from leggedlink.protocol.types import (
    ConnectionState,
    ControlMode,
    DeviceType,
    MessageEvent,
    MessageType,
    Mode,
    StateChangedEvent,
)
from leggedlink.protocol.wire import (
    BatteryInfo,
    ControlModeSet,
    CurrentMode,
    Heartbeat,
    ModeSet,
    VelocityCommand,
    pack_frame,
)

pytestmark = [pytest.mark.unit, pytest.mark.timeout(20)]


def _states(client):
    return [e.new for e in client.drain_events() if isinstance(e, StateChangedEvent)]


@pytest.fixture
def make_client(transport_factory, make_config):
    clients = []

    def _make(device_type=DeviceType.REMOTE_CONTROLLER, **config_overrides):
        client = LinkClient(
            make_config(**config_overrides),
            device_type=device_type,
            transport_factory=transport_factory,
        )
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


class TestConnect:
    def test_reaches_connected(self, make_client, transport_factory, wait):
        client = make_client()
        assert client.connect() is True
        assert wait(lambda: client.connection_state == ConnectionState.CONNECTED)
        assert _states(client) == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
        assert client.get_remote_state().server_connected
        assert transport_factory.last.opened

    def test_double_connect_creates_one_socket(self, make_client, transport_factory):
        """A second connect() while CONNECTING is a no-op."""
        transport_factory.setup = lambda t: setattr(t, "auto_reply", False)
        client = make_client()
        assert client.connect() is True
        assert client.connection_state == ConnectionState.CONNECTING
        assert client.connect() is False
        assert len(transport_factory.created) == 1

    def test_connect_while_connected_is_ignored(self, make_client, transport_factory, wait):
        client = make_client()
        client.connect()
        assert wait(lambda: client.is_connected)
        assert client.connect() is False
        assert len(transport_factory.created) == 1

    def test_socket_failure(self, make_client, transport_factory):
        transport_factory.setup = lambda t: setattr(t, "open_error", "refused")
        client = make_client()
        assert client.connect() is False
        assert client.connection_state == ConnectionState.CONNECTION_FAILED
        assert _states(client) == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTION_FAILED,
        ]

    def test_verification_timeout(self, make_client, transport_factory, wait):
        transport_factory.setup = lambda t: setattr(t, "auto_reply", False)
        messages = []
        client = make_client(verify_timeout_s=0.3)
        client.set_message_callback(messages.append)
        client.connect()
        assert wait(
            lambda: client.connection_state == ConnectionState.CONNECTION_TIMEOUT,
            timeout=3.0,
        )
        assert messages == []
        assert wait(lambda: transport_factory.last.closed)

    def test_heartbeat_from_newer_peer_verifies(self, make_client, transport_factory, wait):
        transport_factory.setup = lambda t: setattr(t, "auto_reply", False)
        client = make_client()
        client.connect()
        # Server with one more Heartbeat field and one more envelope element
        elements = [
            1,
            1234,
            int(DeviceType.SERVER),
            "server_newer",
            int(MessageType.HEARTBEAT),
            [int(MessageType.HEARTBEAT), True, "uptime=12s"],
        ]
        crc = zlib.crc32(msgspec.msgpack.encode(elements + [0, {"ext": 1}]))
        transport_factory.last.push_raw(msgspec.msgpack.encode(elements + [crc, {"ext": 1}]))
        assert wait(lambda: client.is_connected)

    def test_reconnect_after_failure(self, make_client, transport_factory, wait):
        transport_factory.setup = lambda t: setattr(t, "open_error", "refused")
        client = make_client()
        client.connect()
        transport_factory.setup = None
        assert client.connect() is True
        assert wait(lambda: client.is_connected)
        assert len(transport_factory.created) == 2

    def test_invalid_endpoint_raises(self, make_client):
        client = make_client()
        with pytest.raises(ValueError):
            client.connect("udp://robot:1")
        assert client.connection_state == ConnectionState.DISCONNECTED


class TestDisconnect:
    def test_disconnect_when_idle_is_noop(self, make_client):
        client = make_client()
        client.disconnect()
        assert client.connection_state == ConnectionState.DISCONNECTED
        assert client.drain_events() == []

    def test_disconnect_releases_session(self, make_client, transport_factory, wait):
        client = make_client()
        client.connect()
        assert wait(lambda: client.is_connected)
        client.disconnect()
        assert client.connection_state == ConnectionState.DISCONNECTED
        assert transport_factory.last.closed
        assert client.send_queue_size == 0
        assert client.send_velocity(1.0, 0.0, 0.0) is False

    def test_disconnect_during_verification(self, make_client, transport_factory):
        transport_factory.setup = lambda t: setattr(t, "auto_reply", False)
        client = make_client()
        client.connect()
        client.disconnect()
        assert client.connection_state == ConnectionState.DISCONNECTED
        assert ConnectionState.CONNECTION_TIMEOUT not in _states(client)

    def test_disconnect_after_failure_is_noop(self, make_client, transport_factory, wait):
        transport_factory.setup = lambda t: setattr(t, "open_error", "refused")
        client = make_client()
        client.connect()
        assert wait(
            lambda: client.connection_state == ConnectionState.CONNECTION_FAILED
        )
        assert client.connection_state.is_terminal
        client.drain_events()
        client.disconnect()
        assert client.connection_state == ConnectionState.CONNECTION_FAILED
        assert client.drain_events() == []

    def test_close_refuses_reconnect(self, make_client):
        client = make_client()
        client.close()
        assert client.connect() is False


class TestFailureHandling:
    def test_receive_failures_exhaust_budget(self, make_client, transport_factory, wait):
        client = make_client()
        client.connect()
        assert wait(lambda: client.is_connected)
        transport_factory.last.poll_error = "connection reset"
        assert wait(
            lambda: client.connection_state == ConnectionState.CONNECTION_FAILED
        )
        assert wait(lambda: transport_factory.last.closed)

    def test_liveness_loss(self, make_client, transport_factory, wait):
        client = make_client()
        client.connect()
        assert wait(lambda: client.is_connected)
        threads = list(client._session.threads)
        transport_factory.last.auto_reply = False
        assert wait(
            lambda: client.connection_state == ConnectionState.CONNECTION_FAILED,
            timeout=3.0,
        )
        assert wait(lambda: transport_factory.last.closed)
        assert wait(lambda: not any(t.is_alive() for t in threads))
        assert wait(lambda: client._session is None)
        assert client.send_queue_size == 0

    def test_corrupted_frame_is_discarded(self, make_client, transport_factory, wait):
        messages = []
        client = make_client()
        client.set_message_callback(messages.append)
        client.connect()
        assert wait(lambda: client.is_connected)
        frame = bytearray(pack_frame(transport_factory.last.server, BatteryInfo(level=55)))
        frame[-1] ^= 0x01
        transport_factory.last.push_raw(bytes(frame))
        transport_factory.last.push(BatteryInfo(level=66))
        assert wait(lambda: client.get_remote_state().battery_level == 66)
        assert all(m.payload != BatteryInfo(level=55) for m in messages)
        assert client.is_connected

    def test_callback_exceptions_are_swallowed(self, make_client, wait):
        def boom(*_):
            raise RuntimeError("pilot bug")

        client = make_client()
        client.set_state_callback(boom)
        client.set_message_callback(boom)
        client.connect()
        assert wait(lambda: client.is_connected)


class TestCommands:
    def test_velocity_is_shaped(self, make_client, transport_factory, wait):
        client = make_client()
        client.connect()
        assert wait(lambda: client.is_connected)
        assert client.send_velocity(5.0, 0.05, 0.2) is True
        assert wait(lambda: transport_factory.last.sent_payloads(VelocityCommand))
        cmd = transport_factory.last.sent_payloads(VelocityCommand)[0]
        assert (cmd.vx, cmd.vy, cmd.yaw_rate) == (3.0, 0.0, 0.2)

    def test_mode_requests(self, make_client, transport_factory, wait):
        client = make_client()
        client.connect()
        assert wait(lambda: client.is_connected)
        assert client.set_mode(Mode.MANUAL)
        assert client.set_control_mode(ControlMode.LIE_DOWN)
        assert wait(lambda: transport_factory.last.sent_payloads(ControlModeSet))
        assert transport_factory.last.sent_payloads(ModeSet) == [ModeSet(Mode.MANUAL)]

    def test_navigation_client_cannot_change_modes(self, make_client, transport_factory, wait):
        client = make_client(device_type=DeviceType.NAVIGATION)
        client.connect()
        assert wait(lambda: client.is_connected)
        assert client.set_mode(Mode.MANUAL) is False
        assert client.set_control_mode(ControlMode.PASSIVE) is False
        assert client.send_velocity(0.5, 0.0, 0.0) is True
        assert wait(lambda: transport_factory.last.sent_payloads(VelocityCommand))
        assert transport_factory.last.sent_payloads(ModeSet) == []

    def test_commands_rejected_when_not_running(self, make_client):
        client = make_client()
        assert client.send_velocity(1.0, 0.0, 0.0) is False
        assert client.set_mode(Mode.MANUAL) is False
        assert client.send_heartbeat() is False

    def test_heartbeats_are_periodic(self, make_client, transport_factory, wait):
        client = make_client()
        client.connect()
        assert wait(lambda: len(transport_factory.last.sent_payloads(Heartbeat)) >= 4)
        assert client.last_heartbeat_sent_s > 0


class TestEvents:
    def test_message_events(self, make_client, transport_factory, wait):
        client = make_client()
        client.connect()
        assert wait(lambda: client.is_connected)
        client.drain_events()
        transport_factory.last.push(CurrentMode(mode=Mode.MANUAL))
        assert wait(lambda: client.get_remote_state().mode == Mode.MANUAL)
        events = [e for e in client.drain_events() if isinstance(e, MessageEvent)]
        assert any(e.envelope.payload == CurrentMode(mode=Mode.MANUAL) for e in events)

    def test_next_event_timeout(self, make_client):
        assert make_client().next_event(timeout=0.01) is None
