"""
Thread-safe cache of the last-known robot state reported by the control process.

Written only by the receive task; read by the pilot through snapshot().
Fields are updated independently with no cross-field validation.
"""

import threading
import time
from dataclasses import replace

from ..protocol.types import ControlMode, Mode, RemoteState
from ..protocol.wire import (
    BatteryInfo,
    CurrentControlMode,
    CurrentMode,
    Envelope,
    Heartbeat,
    Odometry,
)


def clamp_battery(level: int) -> int:
    return max(0, min(100, int(level)))


class RemoteStateCache:
    """
    Thread-safe cache of remote robot state.

    Fields:
      - mode: last CurrentMode (default AUTO)
      - control_mode: last CurrentControlMode (default STAND_UP)
      - battery_level: 0..100 percent
      - server_connected: flag from the last server Heartbeat
      - last_heartbeat_s: time.monotonic() of the last server Heartbeat (0.0 if none)
      - last_odometry: last Odometry payload, if any
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = self._initial()

    @staticmethod
    def _initial() -> RemoteState:
        return RemoteState(
            mode=Mode.AUTO,
            control_mode=ControlMode.STAND_UP,
            battery_level=0,
            server_connected=False,
            last_heartbeat_s=0.0,
            last_odometry=None,
        )

    def reset(self) -> None:
        with self._lock:
            self._state = self._initial()

    def apply(self, envelope: Envelope, now: float | None = None) -> bool:
        """
        Fold one verified envelope into the cache.

        Returns:
            True if the envelope carried a state-bearing payload.
        """
        payload = envelope.payload
        with self._lock:
            s = self._state
            if isinstance(payload, Heartbeat):
                self._state = replace(
                    s,
                    server_connected=payload.is_connected,
                    last_heartbeat_s=time.monotonic() if now is None else now,
                )
            elif isinstance(payload, BatteryInfo):
                self._state = replace(s, battery_level=clamp_battery(payload.level))
            elif isinstance(payload, CurrentMode):
                self._state = replace(s, mode=payload.mode)
            elif isinstance(payload, CurrentControlMode):
                self._state = replace(s, control_mode=payload.mode)
            elif isinstance(payload, Odometry):
                self._state = replace(s, last_odometry=payload)
            else:
                return False
            return True

    def snapshot(self) -> RemoteState:
        with self._lock:
            return self._state

    @property
    def server_connected(self) -> bool:
        return self.snapshot().server_connected

    def heartbeat_age_s(self) -> float:
        """Seconds since the last server heartbeat; inf if none seen."""
        last = self.snapshot().last_heartbeat_s
        if last <= 0:
            return float("inf")
        return time.monotonic() - last

