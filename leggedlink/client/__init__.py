"""Client-side link: connection state machine, workers and pilot helpers."""

from .link_client import LinkClient
from .pilot import PilotController, PilotSettings

__all__ = ["LinkClient", "PilotController", "PilotSettings"]
