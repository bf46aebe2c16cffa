"""
leggedlink Python Package

Client library for the control link between a remote operator (joystick
pilot or navigation stack) and a legged robot's control process.

Key components:
- LinkClient: connection state machine with receive/send/heartbeat workers
- PilotController: stick-to-velocity loop on top of a LinkClient
- MockRobotServer: in-process stand-in for the robot's control process
- protocol: envelope codec, CRC-32 integrity and message types
"""

from ._version import __version__
from .client.link_client import LinkClient
from .client.pilot import PilotController, PilotSettings
from .config import ClientConfig
from .mock.robot_server import MockRobotServer
from .protocol.types import ConnectionState, ControlMode, DeviceType, Mode

__all__ = [
    "__version__",
    "LinkClient",
    "PilotController",
    "PilotSettings",
    "ClientConfig",
    "MockRobotServer",
    "ConnectionState",
    "ControlMode",
    "DeviceType",
    "Mode",
]
