"""Mock control process for tests and local bring-up."""

from .robot_server import MockRobotServer

__all__ = ["MockRobotServer"]
