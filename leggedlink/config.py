"""
Central configuration for leggedlink tunables and shared constants.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

TRACE: int = 5
logging.addLevelName(TRACE, "TRACE")
# Add Logger.trace if missing
if not hasattr(logging.Logger, "trace"):

    def _trace(self, msg, *args, **kwargs):
        if self.isEnabledFor(TRACE):
            self._log(TRACE, msg, args, **kwargs)

    logging.Logger.trace = _trace  # type: ignore[attr-defined]
    logging.TRACE = TRACE  # type: ignore[attr-defined]

TRACE_ENABLED = str(os.getenv("LEGGEDLINK_TRACE", "0")).lower() in (
    "1",
    "true",
    "yes",
    "on",
)

logger = logging.getLogger(__name__)

# Control-process endpoint (DEALER-style peer of the robot driver)
DEFAULT_HOST: str = "127.0.0.1"
DEFAULT_PORT: int = 33445
ENDPOINT: str = os.getenv("LEGGEDLINK_ENDPOINT", f"tcp://{DEFAULT_HOST}:{DEFAULT_PORT}")

# Liveness (seconds)
HEARTBEAT_INTERVAL_S: float = float(os.getenv("LEGGEDLINK_HEARTBEAT_INTERVAL_S", "1.0"))
VERIFY_TIMEOUT_S: float = float(os.getenv("LEGGEDLINK_VERIFY_TIMEOUT_S", "2.0"))
VERIFY_POLL_S: float = 0.1
RESPONSE_TIMEOUT_S: float = float(os.getenv("LEGGEDLINK_RESPONSE_TIMEOUT_S", "2.5"))

# Worker cadence (seconds)
RECEIVE_POLL_INTERVAL_S: float = 0.010
SEND_POP_TIMEOUT_S: float = 0.1
SHUTDOWN_TIMEOUT_S: float = 5.0
CONNECT_TIMEOUT_S: float = float(os.getenv("LEGGEDLINK_CONNECT_TIMEOUT_S", "2.0"))

# Queues and failure budget
QUEUE_CAPACITY: int = int(os.getenv("LEGGEDLINK_QUEUE_CAPACITY", "1000"))
EVENT_QUEUE_CAPACITY: int = 256
MAX_CONSECUTIVE_FAILURES: int = 3

# Transport framing
MAX_FRAME_SIZE: int = 64 * 1024
RECV_CHUNK_SIZE: int = 4096

# Velocity shaping policy (m/s); yaw rate passes through unchanged
VX_DEADBAND: float = 0.05
VX_LIMIT: float = 3.0
VY_DEADBAND: float = 0.10
VY_LIMIT: float = 1.0

# Pilot velocity loop
PILOT_RATE_HZ: float = 20.0
PILOT_MAX_SPEED: float = 1.0
PILOT_RAGE_MAX_SPEED: float = 2.0
STICK_CENTER_EPS: float = 0.01


@dataclass(frozen=True)
class ShapingLimits:
    """Per-axis deadband/saturation thresholds applied before framing."""

    vx_deadband: float = VX_DEADBAND
    vx_limit: float = VX_LIMIT
    vy_deadband: float = VY_DEADBAND
    vy_limit: float = VY_LIMIT

    def __post_init__(self) -> None:
        for name in ("vx", "vy"):
            deadband = getattr(self, f"{name}_deadband")
            limit = getattr(self, f"{name}_limit")
            if deadband < 0 or limit <= 0 or deadband > limit:
                raise ValueError(
                    f"Invalid {name} shaping limits: deadband={deadband}, limit={limit}"
                )


@dataclass(frozen=True)
class ClientConfig:
    """Construction-time settings for a LinkClient."""

    endpoint: str = ENDPOINT
    heartbeat_interval_s: float = HEARTBEAT_INTERVAL_S
    verify_timeout_s: float = VERIFY_TIMEOUT_S
    response_timeout_s: float = RESPONSE_TIMEOUT_S
    queue_capacity: int = QUEUE_CAPACITY
    event_queue_capacity: int = EVENT_QUEUE_CAPACITY
    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES
    receive_poll_interval_s: float = RECEIVE_POLL_INTERVAL_S
    send_pop_timeout_s: float = SEND_POP_TIMEOUT_S
    shutdown_timeout_s: float = SHUTDOWN_TIMEOUT_S
    connect_timeout_s: float = CONNECT_TIMEOUT_S
    shaping: ShapingLimits = field(default_factory=ShapingLimits)

    def __post_init__(self) -> None:
        parse_endpoint(self.endpoint)
        if self.queue_capacity < 1 or self.event_queue_capacity < 1:
            raise ValueError("Queue capacities must be >= 1")
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")
        if min(self.heartbeat_interval_s, self.verify_timeout_s, self.response_timeout_s) <= 0:
            raise ValueError("Heartbeat and timeout windows must be positive")

    @classmethod
    def from_env(cls, **overrides) -> "ClientConfig":
        """Build a config from the current environment, then apply overrides."""
        values = {
            "endpoint": os.getenv("LEGGEDLINK_ENDPOINT", ENDPOINT),
            "heartbeat_interval_s": float(
                os.getenv("LEGGEDLINK_HEARTBEAT_INTERVAL_S", str(HEARTBEAT_INTERVAL_S))
            ),
            "verify_timeout_s": float(
                os.getenv("LEGGEDLINK_VERIFY_TIMEOUT_S", str(VERIFY_TIMEOUT_S))
            ),
            "response_timeout_s": float(
                os.getenv("LEGGEDLINK_RESPONSE_TIMEOUT_S", str(RESPONSE_TIMEOUT_S))
            ),
            "queue_capacity": int(
                os.getenv("LEGGEDLINK_QUEUE_CAPACITY", str(QUEUE_CAPACITY))
            ),
            "connect_timeout_s": float(
                os.getenv("LEGGEDLINK_CONNECT_TIMEOUT_S", str(CONNECT_TIMEOUT_S))
            ),
        }
        values.update(overrides)
        return cls(**values)


def parse_endpoint(endpoint: str) -> tuple[str, int]:
    """
    Split an endpoint string into (host, port).

    Accepts ``tcp://host:port`` or bare ``host:port``.

    Raises:
        ValueError: If the scheme is not tcp or host/port are missing or invalid.
    """
    raw = endpoint.strip()
    if "://" in raw:
        scheme, raw = raw.split("://", 1)
        if scheme.lower() != "tcp":
            raise ValueError(f"Unsupported endpoint scheme: {scheme!r}")
    host, sep, port_str = raw.rpartition(":")
    if not sep or not host:
        raise ValueError(f"Endpoint must be host:port, got {endpoint!r}")
    host = host.strip("[]")
    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"Invalid port in endpoint {endpoint!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range in endpoint {endpoint!r}")
    return host, port


def format_endpoint(host: str, port: int) -> str:
    return f"tcp://{host}:{port}"
