"""
Tests for the joint fleet: fan-out, vector validation, fail-fast and
the init/deinit lifecycle.
"""

import struct
from unittest.mock import Mock

import numpy as np
import pytest

from conftest import SimulatedBus

from joint_interface import (
    BrakeMode,
    ConnectionStatus,
    FleetConfig,
    HomingDirection,
    JointConnectionError,
    JointError,
    JointFleet,
    ProtocolNack,
    Register,
    StopMode,
    TransportError,
    ValidationError,
)


def make_fleet(count=3):
    fleet = JointFleet()
    for i in range(count):
        fleet.add_joint(0x01 + i, f"j{i}", gear_ratio=1.0)
    return fleet


class TestRegistry:
    """Tests for joint registration."""

    def test_registration_order(self):
        fleet = make_fleet()

        assert fleet.names == ["j0", "j1", "j2"]
        assert [j.address for j in fleet] == [1, 2, 3]
        assert len(fleet) == 3

    def test_duplicate_address_rejected(self):
        fleet = make_fleet(1)

        with pytest.raises(ValidationError):
            fleet.add_joint(0x01, "other")

    def test_duplicate_name_rejected(self):
        fleet = make_fleet(1)

        with pytest.raises(ValidationError):
            fleet.add_joint(0x05, "j0")

    def test_unknown_joint(self):
        with pytest.raises(ValidationError):
            make_fleet().get_joint("nope")

    def test_add_after_init_rejected(self, bus):
        fleet = make_fleet()
        fleet.init(lambda: bus)

        with pytest.raises(ValidationError):
            fleet.add_joint(0x04, "late")

    def test_from_yaml_config(self, tmp_path):
        path = tmp_path / "joints.yaml"
        path.write_text(
            "serial:\n"
            "  port: /dev/ttyACM0\n"
            "  baudrate: 57600\n"
            "joints:\n"
            "  - {address: 1, name: shoulder, gear_ratio: 20}\n"
            "  - {address: 2, name: elbow, gear_ratio: -15, offset: 2.5}\n"
        )

        fleet = JointFleet.from_config(FleetConfig.from_yaml(path))

        assert fleet.serial_config.port == "/dev/ttyACM0"
        assert fleet.names == ["shoulder", "elbow"]
        assert fleet.get_joint("elbow").gear_ratio == -15.0
        assert fleet.get_joint("elbow").offset == 2.5


class TestLifecycle:
    """Tests for init/deinit."""

    def test_init_pings_every_joint(self, bus):
        fleet = make_fleet()

        fleet.init(lambda: bus)

        assert fleet.is_initialized
        assert fleet.status == ConnectionStatus.CONNECTED
        assert all(joint.is_initialized for joint in fleet)

    def test_init_failure_closes_transport(self, bus):
        bus.devices[0x02].ping_reply = ord("?")
        fleet = make_fleet()

        with pytest.raises(JointConnectionError) as exc_info:
            fleet.init(lambda: bus)

        assert exc_info.value.joint == "j1"
        assert bus.close_calls == 1
        assert fleet.status == ConnectionStatus.ERROR
        assert not fleet.is_initialized
        assert not any(joint.is_initialized for joint in fleet)

    def test_init_with_missing_device(self, bus):
        fleet = make_fleet()
        fleet.add_joint(0x09, "ghost")

        with pytest.raises(JointConnectionError):
            fleet.init(lambda: bus)

        assert bus.closed

    def test_init_without_joints(self):
        with pytest.raises(ValidationError):
            JointFleet().init(Mock())

    def test_deinit_closes_once(self, bus):
        fleet = make_fleet()
        fleet.init(lambda: bus)

        assert fleet.deinit() == {}

        assert bus.close_calls == 1
        assert fleet.status == ConnectionStatus.DISCONNECTED
        assert not any(joint.is_initialized for joint in fleet)
        for device in bus.devices.values():
            assert device.registers_written() == [
                Register.STOP, Register.DISABLECLOSEDLOOP,
                Register.SETHOLDCURRENT, Register.SETBRAKEMODE,
            ]

    def test_deinit_continues_past_failing_joint(self, bus):
        fleet = make_fleet()
        fleet.init(lambda: bus)
        bus.devices[0x01].silent = {Register.STOP}

        failures = fleet.deinit()

        assert list(failures) == ["j0"]
        assert failures["j0"][0].operation == "stop"
        assert bus.close_calls == 1
        assert Register.SETBRAKEMODE in bus.devices[0x03].registers_written()

    def test_deinit_twice_is_noop(self, bus):
        fleet = make_fleet()
        fleet.init(lambda: bus)
        fleet.deinit()

        assert fleet.deinit() == {}
        assert bus.close_calls == 1

    def test_context_manager(self, bus):
        with make_fleet() as fleet:
            fleet.init(lambda: bus)

        assert bus.close_calls == 1
        assert not fleet.is_initialized


class TestVectorOperations:
    """Tests for fan-out over every joint."""

    def setup_method(self):
        self.bus = SimulatedBus()
        for address in (0x01, 0x02, 0x03):
            self.bus.add_device(address)
        self.fleet = make_fleet()
        self.fleet.init(lambda: self.bus)

    def test_set_and_get_positions(self):
        self.fleet.set_positions([10.0, -20.5, 30.25])

        positions = self.fleet.get_positions()

        np.testing.assert_allclose(positions, [10.0, -20.5, 30.25], atol=0.01)

    def test_get_into_preallocated(self):
        self.fleet.set_velocities(np.array([6.0, 12.0, -18.0]))
        out = np.full(3, np.nan)

        result = self.fleet.get_velocities(out)

        assert result is out
        np.testing.assert_allclose(out, [6.0, 12.0, -18.0], atol=0.01)

    @pytest.mark.parametrize("values", [[1.0, 2.0], [1.0, 2.0, 3.0, 4.0], [], 5.0])
    def test_size_mismatch_sends_nothing(self, values):
        self.bus.write = Mock(wraps=self.bus.write)

        with pytest.raises(ValidationError) as exc_info:
            self.fleet.set_positions(values)

        if np.ndim(values):
            assert "vector size mismatch" in str(exc_info.value)
        self.bus.write.assert_not_called()

    @pytest.mark.parametrize("call", [
        lambda f: f.set_drive_currents([50, 50, 150]),
        lambda f: f.set_hold_currents([20, -1, 20]),
        lambda f: f.enables([50, 50, 50], [20, 20, 101]),
        lambda f: f.enable_stall_guards([10, 20, 256]),
        lambda f: f.set_brake_modes([BrakeMode.FREEWHEEL, BrakeMode.COOLBRAKE, 7]),
        lambda f: f.stops([StopMode.HARD, StopMode.SOFT, 5]),
        lambda f: f.check_orientations([10.0, 10.0, float("nan")]),
        lambda f: f.set_positions([0.0, float("nan"), 0.0]),
        lambda f: f.set_positions([0.0, float("inf"), 0.0]),
        lambda f: f.set_velocities([0.0, 0.0, 1e12]),
    ])
    def test_bad_entry_sends_nothing(self, call):
        """An invalid entry anywhere in the vector is rejected before any joint is touched."""
        with pytest.raises(ValidationError) as exc_info:
            call(self.fleet)

        assert exc_info.value.joint is not None
        assert all(device.written == [] for device in self.bus.devices.values())

    def test_output_size_mismatch(self):
        with pytest.raises(ValidationError):
            self.fleet.get_positions(np.zeros(2))

    def test_scalar_broadcast(self):
        self.fleet.set_drive_currents(70)

        for device in self.bus.devices.values():
            assert device.written[-1] == (Register.SETCURRENT, bytes([70]))

    def test_per_joint_values(self):
        self.fleet.set_brake_modes([BrakeMode.FREEWHEEL, BrakeMode.COOLBRAKE, BrakeMode.HARDBRAKE])

        assert [d.written[-1][1] for d in self.bus.devices.values()] == [b"\x00", b"\x01", b"\x02"]

    def test_enables(self):
        self.fleet.enables([40, 50, 60], 20)

        device = self.bus.devices[0x03]
        assert device.written == [
            (Register.SETCURRENT, bytes([60])),
            (Register.SETHOLDCURRENT, bytes([20])),
            (Register.ENABLECLOSEDLOOP, b"\x00"),
        ]

    def test_stops_and_stall_guards(self):
        self.fleet.stops(StopMode.SOFT)
        self.fleet.enable_stall_guards([10, 20, 30])
        self.fleet.disable_closed_loops()
        self.fleet.set_hold_currents(0)

        device = self.bus.devices[0x02]
        assert device.written == [
            (Register.STOP, bytes([1])),
            (Register.ENABLESTALLGUARD, bytes([20])),
            (Register.DISABLECLOSEDLOOP, b"\x00"),
            (Register.SETHOLDCURRENT, bytes([0])),
        ]

    def test_check_orientations(self):
        self.fleet.check_orientations([5.0, 10.0, 15.0], timeout=0.6)

        payloads = [struct.unpack("<i", d.written[-1][1])[0] for d in self.bus.devices.values()]
        assert payloads == [500, 1000, 1500]

    def test_home_by_name(self):
        self.fleet.home("j1", HomingDirection.CCW, 20, 0, 30)

        assert self.bus.devices[0x01].written == []
        assert self.bus.devices[0x03].written == []
        register, payload = self.bus.devices[0x02].written[0]
        assert register == Register.MOVETOEND
        assert payload == struct.pack("<BBbB", 0, 20, 0, 30)

    def test_home_timeout(self):
        self.bus.read = Mock(wraps=self.bus.read)

        self.fleet.home("j2", HomingDirection.CW, 20, 0, 30, timeout=4.0)

        assert [c.args for c in self.bus.read.call_args_list] == [(1, 4.0), (1, 4.0)]

    def test_fail_fast_on_device_error(self):
        self.bus.devices[0x02].nack = {Register.SETCURRENT}

        with pytest.raises(ProtocolNack) as exc_info:
            self.fleet.set_drive_currents(50)

        assert exc_info.value.joint == "j1"
        assert self.bus.devices[0x01].written == [(Register.SETCURRENT, bytes([50]))]
        assert self.bus.devices[0x03].written == []

    def test_getter_partial_fill(self):
        self.bus.devices[0x01].angle_raw = 1000
        self.bus.devices[0x02].corrupt = {Register.ANGLEMOVED}
        out = np.array([-1.0, -2.0, -3.0])

        with pytest.raises(JointError):
            self.fleet.get_positions(out)

        assert out[0] == pytest.approx(10.0)
        assert out[1] == -2.0
        assert out[2] == -3.0


class TestFailFastWithMocks:
    """Fail-fast checked at the joint-method level."""

    def setup_method(self):
        self.fleet = make_fleet()
        self.fleet.init(lambda: _responsive_bus())
        self.joints = self.fleet.joints
        for joint in self.joints:
            joint.set_position = Mock()

    def test_third_joint_untouched(self):
        self.joints[1].set_position.side_effect = TransportError("timeout")

        with pytest.raises(TransportError) as exc_info:
            self.fleet.set_positions([1.0, 2.0, 3.0])

        assert exc_info.value.joint == "j1"
        assert exc_info.value.operation == "set_position"
        self.joints[0].set_position.assert_called_once_with(1.0)
        self.joints[1].set_position.assert_called_once_with(2.0)
        self.joints[2].set_position.assert_not_called()

    def test_mismatch_touches_no_joint(self):
        with pytest.raises(ValidationError):
            self.fleet.set_positions([1.0, 2.0])

        for joint in self.joints:
            joint.set_position.assert_not_called()


def _responsive_bus():
    bus = SimulatedBus()
    for address in (0x01, 0x02, 0x03):
        bus.add_device(address)
    return bus


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
