"""
Unit tests for the remote state cache.
"""

import threading

import pytest

from leggedlink.client.state_cache import RemoteStateCache, clamp_battery
from leggedlink.protocol.types import ControlMode, DeviceIdentity, DeviceType, Mode
from leggedlink.protocol.wire import (
    BatteryInfo,
    CurrentControlMode,
    CurrentMode,
    Heartbeat,
    Odometry,
    Vec3,
    VelocityCommand,
    make_envelope,
)

pytestmark = pytest.mark.unit

SERVER = DeviceIdentity(DeviceType.SERVER, "server_1")


def _env(payload):
    return make_envelope(SERVER, payload)


class TestRemoteStateCache:
    def test_initial_state(self):
        s = RemoteStateCache().snapshot()
        assert s.mode == Mode.AUTO
        assert s.control_mode == ControlMode.STAND_UP
        assert s.battery_level == 0
        assert s.server_connected is False
        assert s.last_heartbeat_s == 0.0
        assert s.last_odometry is None

    def test_heartbeat_sets_flag_and_time(self):
        cache = RemoteStateCache()
        assert cache.apply(_env(Heartbeat(is_connected=True)), now=12.5)
        s = cache.snapshot()
        assert s.server_connected is True
        assert s.last_heartbeat_s == 12.5

    def test_heartbeat_can_clear_flag(self):
        cache = RemoteStateCache()
        cache.apply(_env(Heartbeat(is_connected=True)))
        cache.apply(_env(Heartbeat(is_connected=False)))
        assert cache.server_connected is False

    @pytest.mark.parametrize("level,expected", [(150, 100), (-5, 0), (42, 42)])
    def test_battery_clamped(self, level, expected):
        cache = RemoteStateCache()
        cache.apply(_env(BatteryInfo(level=level)))
        assert cache.snapshot().battery_level == expected
        assert clamp_battery(level) == expected

    def test_modes_and_odometry(self):
        cache = RemoteStateCache()
        cache.apply(_env(CurrentMode(mode=Mode.MANUAL)))
        cache.apply(_env(CurrentControlMode(mode=ControlMode.LIE_DOWN)))
        odom = Odometry(position=Vec3(1.0, 0.5, 0.0))
        cache.apply(_env(odom))
        s = cache.snapshot()
        assert s.mode == Mode.MANUAL
        assert s.control_mode == ControlMode.LIE_DOWN
        assert s.last_odometry == odom

    def test_fields_update_independently(self):
        """A battery update leaves the mode fields alone."""
        cache = RemoteStateCache()
        cache.apply(_env(CurrentMode(mode=Mode.MANUAL)))
        cache.apply(_env(BatteryInfo(level=30)))
        s = cache.snapshot()
        assert s.mode == Mode.MANUAL
        assert s.battery_level == 30

    def test_non_state_payload_ignored(self):
        cache = RemoteStateCache()
        before = cache.snapshot()
        assert cache.apply(_env(VelocityCommand(1.0, 0.0, 0.0))) is False
        assert cache.snapshot() == before

    def test_reset(self):
        cache = RemoteStateCache()
        cache.apply(_env(Heartbeat(is_connected=True)))
        cache.reset()
        assert cache.server_connected is False
        assert cache.heartbeat_age_s() == float("inf")

    def test_concurrent_readers(self):
        cache = RemoteStateCache()
        errors = []

        def reader():
            for _ in range(2000):
                s = cache.snapshot()
                if not 0 <= s.battery_level <= 100:
                    errors.append(s)

        threads = [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for level in range(0, 200):
            cache.apply(_env(BatteryInfo(level=level)))
        for t in threads:
            t.join()
        assert errors == []
