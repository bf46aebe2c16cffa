"""
Type definitions for the legged-driver control protocol.

Defines enums and dataclasses used across the public API.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from .wire import Envelope, Odometry


class DeviceType(IntEnum):
    """Role of the sender of an envelope."""

    UNSPECIFIED = 0
    SERVER = 1
    NAVIGATION = 2
    REMOTE_CONTROLLER = 3


class MessageType(IntEnum):
    """Tag selecting the payload variant carried by an envelope."""

    UNSPECIFIED = 0
    HEARTBEAT = 1
    BATTERY_INFO = 2
    MODE_SET = 3
    CONTROL_MODE_SET = 4
    VELOCITY_COMMAND = 5
    CURRENT_MODE = 6
    CURRENT_CONTROL_MODE = 7
    ODOMETRY = 8


class Mode(IntEnum):
    """Who drives the robot: navigation stack (AUTO) or the pilot (MANUAL)."""

    UNSPECIFIED = 0
    AUTO = 1
    MANUAL = 2


class ControlMode(IntEnum):
    """Body posture mode."""

    UNSPECIFIED = 0
    PASSIVE = 1  # damping
    STAND_UP = 2
    LIE_DOWN = 3


class ConnectionState(Enum):
    """Link lifecycle state, owned by LinkClient."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CONNECTION_FAILED = "connection_failed"
    CONNECTION_TIMEOUT = "connection_timeout"

    @property
    def is_terminal(self) -> bool:
        """True for states from which connect() may start a new session."""
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {
        ConnectionState.DISCONNECTED,
        ConnectionState.CONNECTION_FAILED,
        ConnectionState.CONNECTION_TIMEOUT,
    }
)


@dataclass(slots=True, frozen=True)
class DeviceIdentity:
    """Sender identity stamped on every outbound envelope."""

    device_type: DeviceType
    device_id: str

    @property
    def is_controller(self) -> bool:
        return self.device_type == DeviceType.REMOTE_CONTROLLER


@dataclass(slots=True, frozen=True)
class RemoteState:
    """Point-in-time copy of the last-known robot state."""

    mode: Mode
    control_mode: ControlMode
    battery_level: int
    server_connected: bool
    last_heartbeat_s: float  # time.monotonic() of last server heartbeat, 0 if none
    last_odometry: Odometry | None = None


@dataclass(slots=True, frozen=True)
class MessageEvent:
    """A verified inbound envelope."""

    envelope: Envelope


@dataclass(slots=True, frozen=True)
class StateChangedEvent:
    """A ConnectionState transition."""

    old: ConnectionState
    new: ConnectionState
    reason: str = ""


ClientEvent = Union[MessageEvent, StateChangedEvent]
