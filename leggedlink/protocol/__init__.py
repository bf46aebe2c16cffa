"""Envelope codec, checksum and protocol types."""

from .checksum import checksum
from .types import (
    ClientEvent,
    ConnectionState,
    ControlMode,
    DeviceIdentity,
    DeviceType,
    MessageEvent,
    MessageType,
    Mode,
    RemoteState,
    StateChangedEvent,
)
from .wire import (
    BatteryInfo,
    ControlModeSet,
    CurrentControlMode,
    CurrentMode,
    Envelope,
    Heartbeat,
    ModeSet,
    Odometry,
    Quaternion,
    Vec3,
    VelocityCommand,
    decode,
    encode,
    open_frame,
    sign,
    verify,
)

__all__ = [
    "checksum",
    "ClientEvent",
    "ConnectionState",
    "ControlMode",
    "DeviceIdentity",
    "DeviceType",
    "MessageEvent",
    "MessageType",
    "Mode",
    "RemoteState",
    "StateChangedEvent",
    "BatteryInfo",
    "ControlModeSet",
    "CurrentControlMode",
    "CurrentMode",
    "Envelope",
    "Heartbeat",
    "ModeSet",
    "Odometry",
    "Quaternion",
    "Vec3",
    "VelocityCommand",
    "decode",
    "encode",
    "open_frame",
    "sign",
    "verify",
]
