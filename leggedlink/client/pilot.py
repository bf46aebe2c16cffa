"""
Joystick-style pilot on top of LinkClient.

Turns two virtual sticks into velocity commands at a fixed rate: the left
stick drives vx/vy, the right stick's x axis drives yaw. Commands only flow
while the link is CONNECTED and the robot reports MANUAL mode. When both
sticks return to centre a single zero command is sent.
"""

import logging
import threading
import time
from dataclasses import dataclass

from .. import config as cfg
from ..config import format_endpoint
from ..protocol.types import ConnectionState, ControlMode, Mode
from .link_client import LinkClient

logger = logging.getLogger(__name__)


def _clamp_unit(value: float) -> float:
    return max(-1.0, min(1.0, float(value)))


@dataclass
class PilotSettings:
    host: str = cfg.DEFAULT_HOST
    port: int = cfg.DEFAULT_PORT
    rage_mode: bool = False

    @property
    def endpoint(self) -> str:
        return format_endpoint(self.host, self.port)

    @property
    def max_speed(self) -> float:
        return cfg.PILOT_RAGE_MAX_SPEED if self.rage_mode else cfg.PILOT_MAX_SPEED


@dataclass(frozen=True)
class Stick:
    x: float = 0.0
    y: float = 0.0

    @property
    def is_centered(self) -> bool:
        return abs(self.x) < cfg.STICK_CENTER_EPS and abs(self.y) < cfg.STICK_CENTER_EPS


class PilotController:
    """
    Drives a LinkClient from stick input.

    start()/stop() control the velocity thread; connect()/disconnect() are
    forwarded to the client using the settings' endpoint.
    """

    def __init__(
        self,
        client: LinkClient,
        settings: PilotSettings | None = None,
        rate_hz: float = cfg.PILOT_RATE_HZ,
    ) -> None:
        if rate_hz <= 0:
            raise ValueError("rate_hz must be > 0")
        self.client = client
        self.settings = settings or PilotSettings()
        self.period_s = 1.0 / rate_hz

        self._lock = threading.Lock()
        self._left = Stick()
        self._right = Stick()
        self._moving = False  # a non-zero command went out since the last stop
        self._pending_mode: Mode | None = None
        self._pending_control_mode: ControlMode | None = None

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # --------------- connection ---------------

    def connect(self) -> bool:
        return self.client.connect(self.settings.endpoint)

    def disconnect(self) -> None:
        self.stop()
        self.client.disconnect()
        self._clear_pending()

    @property
    def is_connected(self) -> bool:
        return self.client.connection_state == ConnectionState.CONNECTED

    # --------------- sticks ---------------

    def update_left_stick(self, x: float, y: float) -> None:
        with self._lock:
            self._left = Stick(_clamp_unit(x), _clamp_unit(y))
        logger.trace("left stick x=%.3f y=%.3f", x, y)  # type: ignore[attr-defined]

    def update_right_stick(self, x: float, y: float) -> None:
        with self._lock:
            self._right = Stick(_clamp_unit(x), _clamp_unit(y))
        logger.trace("right stick x=%.3f y=%.3f", x, y)  # type: ignore[attr-defined]

    def release_left(self) -> None:
        with self._lock:
            self._left = Stick()
        logger.debug("Left stick released")

    def release_right(self) -> None:
        with self._lock:
            self._right = Stick()
        logger.debug("Right stick released")

    def toggle_rage_mode(self) -> bool:
        self.settings.rage_mode = not self.settings.rage_mode
        logger.info(
            "Rage mode %s (max speed %.1f)",
            "enabled" if self.settings.rage_mode else "disabled",
            self.settings.max_speed,
        )
        return self.settings.rage_mode

    # --------------- mode requests ---------------

    @property
    def mode_change_pending(self) -> bool:
        return self._pending_mode is not None

    @property
    def control_mode_change_pending(self) -> bool:
        return self._pending_control_mode is not None

    def request_mode(self, mode: Mode) -> bool:
        """Ask the robot for mode; refused while disconnected or while a change is pending."""
        mode = Mode(mode)
        if not self.is_connected:
            logger.warning("Not connected, cannot set mode")
            return False
        with self._lock:
            if self._pending_mode is not None:
                logger.warning(f"Mode change to {self._pending_mode.name} still pending")
                return False
            self._pending_mode = mode
        if not self.client.set_mode(mode):
            logger.error(f"Mode set failed: {mode.name}")
            with self._lock:
                self._pending_mode = None
            return False
        return True

    def request_control_mode(self, control_mode: ControlMode) -> bool:
        """Ask the robot for a posture; same refusal rules as request_mode()."""
        control_mode = ControlMode(control_mode)
        if not self.is_connected:
            logger.warning("Not connected, cannot set control mode")
            return False
        with self._lock:
            if self._pending_control_mode is not None:
                logger.warning(
                    f"Control mode change to {self._pending_control_mode.name} still pending"
                )
                return False
            self._pending_control_mode = control_mode
        if not self.client.set_control_mode(control_mode):
            logger.error(f"Control mode set failed: {control_mode.name}")
            with self._lock:
                self._pending_control_mode = None
            return False
        return True

    def refresh_pending(self) -> None:
        """Clear pending flags the robot has confirmed (or that can no longer complete)."""
        if not self.is_connected:
            self._clear_pending()
            return
        remote = self.client.get_remote_state()
        with self._lock:
            if self._pending_mode is not None and remote.mode == self._pending_mode:
                logger.info(f"Mode confirmed: {remote.mode.name}")
                self._pending_mode = None
            if (
                self._pending_control_mode is not None
                and remote.control_mode == self._pending_control_mode
            ):
                logger.info(f"Control mode confirmed: {remote.control_mode.name}")
                self._pending_control_mode = None

    def _clear_pending(self) -> None:
        with self._lock:
            self._pending_mode = None
            self._pending_control_mode = None

    # --------------- velocity loop ---------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._moving = False
        self._thread = threading.Thread(
            target=self._run, name="leggedlink-pilot", daemon=True
        )
        self._thread.start()
        logger.info(f"Pilot loop started at {1.0 / self.period_s:.0f} Hz")

    def stop(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout=cfg.SHUTDOWN_TIMEOUT_S)
        self._thread = None
        self._moving = False
        logger.info("Pilot loop stopped")

    def _run(self) -> None:
        next_deadline = time.perf_counter()
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Pilot tick failed")
            next_deadline += self.period_s
            delay = next_deadline - time.perf_counter()
            if delay < 0:
                # Fell behind; resync instead of bursting
                next_deadline = time.perf_counter()
                delay = 0.0
            self._stop_event.wait(delay)

    def tick(self) -> bool:
        """
        One iteration of the velocity loop.

        Returns:
            True if a velocity command was sent.
        """
        self.refresh_pending()
        if not self.is_connected:
            self._moving = False
            return False
        if self.client.get_remote_state().mode != Mode.MANUAL:
            return False

        with self._lock:
            left, right = self._left, self._right

        if not (left.is_centered and right.is_centered):
            speed = self.settings.max_speed
            vx = left.x * speed
            vy = left.y * speed
            yaw = right.x * speed
            self.client.send_velocity(vx, vy, yaw)
            self._moving = True
            return True
        if self._moving:
            self.client.send_velocity(0.0, 0.0, 0.0)
            logger.debug("Sticks centred, stop command sent")
            self._moving = False
            return True
        return False
