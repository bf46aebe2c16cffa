"""
Velocity command shaping.

Small stick noise is forced to exactly zero and out-of-range requests are
saturated (sign preserved) before a VelocityCommand is framed.
"""

from ..config import ShapingLimits


def shape_axis(value: float, deadband: float, limit: float) -> float:
    """Deadband then sign-preserving clamp of a single axis."""
    magnitude = abs(value)
    if magnitude < deadband:
        return 0.0
    if magnitude > limit:
        return limit if value > 0 else -limit
    return value


class CommandShaper:
    """Applies ShapingLimits to (vx, vy, yaw_rate). yaw_rate is passed through."""

    def __init__(self, limits: ShapingLimits | None = None) -> None:
        self.limits = limits or ShapingLimits()

    def shape_vx(self, vx: float) -> float:
        return shape_axis(vx, self.limits.vx_deadband, self.limits.vx_limit)

    def shape_vy(self, vy: float) -> float:
        return shape_axis(vy, self.limits.vy_deadband, self.limits.vy_limit)

    def shape(
        self, vx: float, vy: float, yaw_rate: float
    ) -> tuple[float, float, float]:
        return self.shape_vx(vx), self.shape_vy(vy), float(yaw_rate)
