"""
Joint Fleet
============
All joints of the arm on one shared serial line.

Applies one logical operation to every joint in registration order.
Per-joint arguments are either a single value broadcast to every joint or
a sequence with exactly one entry per joint. Every entry is validated
before the first byte goes out. The first failing joint
aborts the operation; joints after it are not touched and joints before
it are not rolled back.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar, Union

import numpy as np
from loguru import logger

from .errors import JointError, ValidationError
from .joint import (
    DEFAULT_ORIENTATION_ANGLE,
    HOMING_TIMEOUT_S,
    ORIENTATION_TIMEOUT_S,
    Joint,
    check_enum,
    check_int,
    check_percent,
    encode_fixed,
)
from .models import BrakeMode, ConnectionStatus, FleetConfig, HomingDirection, SerialConfig, StopMode
from .transport import SerialTransport, Transport


T = TypeVar("T")
PerJoint = Union[T, Sequence[T]]


class JointFleet:
    """
    Ordered collection of joints sharing one transport.

    The fleet owns the transport: it opens it in ``init`` and closes it in
    ``deinit``, after every joint has let go of it.

    Usage:
        fleet = JointFleet()
        fleet.add_joint(0x01, "shoulder", gear_ratio=20.0)
        fleet.add_joint(0x02, "elbow", gear_ratio=-15.0)
        with fleet:
            fleet.init()
            fleet.enables(50, 20)
            fleet.set_positions([45.0, -30.0])
    """

    def __init__(self, serial_config: Optional[SerialConfig] = None):
        self.serial_config = serial_config or SerialConfig()
        self._joints: List[Joint] = []
        self._transport: Optional[Transport] = None
        self._status = ConnectionStatus.DISCONNECTED

    @classmethod
    def from_config(cls, config: FleetConfig) -> JointFleet:
        fleet = cls(config.serial)
        for joint_config in config.joints:
            fleet.add_joint(
                joint_config.address,
                joint_config.name,
                joint_config.gear_ratio,
                joint_config.offset,
            )
        return fleet

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def add_joint(self, address: int, name: str, gear_ratio: float = 1.0, offset: float = 0.0) -> Joint:
        """Register a joint; registration order is the order of per-joint vectors."""
        if self.is_initialized:
            raise ValidationError("Cannot add joints to an initialized fleet", joint=name)
        for joint in self._joints:
            if joint.address == address:
                raise ValidationError(f"Address 0x{address:02X} already used by {joint.name}", joint=name)
            if joint.name == name:
                raise ValidationError("Joint name already registered", joint=name)

        joint = Joint(address, name, gear_ratio, offset)
        self._joints.append(joint)
        logger.debug(f"Registered {joint!r}")
        return joint

    @property
    def joints(self) -> Tuple[Joint, ...]:
        return tuple(self._joints)

    @property
    def names(self) -> List[str]:
        return [joint.name for joint in self._joints]

    def get_joint(self, name: str) -> Joint:
        for joint in self._joints:
            if joint.name == name:
                return joint
        raise ValidationError(f"Unknown joint: {name}")

    def __len__(self) -> int:
        return len(self._joints)

    def __iter__(self) -> Iterator[Joint]:
        return iter(self._joints)

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_initialized(self) -> bool:
        return self._transport is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, open_transport: Optional[Callable[[], Transport]] = None) -> None:
        """
        Open the transport and ping every joint in order.

        Args:
            open_transport: Factory for the transport; defaults to opening
                the serial port from ``serial_config``

        Raises:
            TransportError: The transport could not be opened
            JointConnectionError: A joint did not answer; the transport is
                closed again and no joint stays bound
        """
        if self.is_initialized:
            logger.warning("Fleet already initialized")
            return
        if not self._joints:
            raise ValidationError("No joints registered")

        if open_transport is None:
            cfg = self.serial_config

            def open_transport() -> Transport:
                return SerialTransport.open(cfg.port, cfg.baudrate, cfg.timeout_s)

        transport = open_transport()
        try:
            for joint in self._joints:
                joint.init(transport, self.serial_config.timeout_s)
        except JointError as e:
            logger.error(f"Joint initialization failed: {e}")
            for joint in self._joints:
                joint.release()
            transport.close()
            self._status = ConnectionStatus.ERROR
            raise

        self._transport = transport
        self._status = ConnectionStatus.CONNECTED
        logger.success(f"Joint initialization successful ({len(self._joints)} joints)")

    def deinit(self) -> Dict[str, List[JointError]]:
        """
        De-energize and release every joint, then close the transport once.

        A failing joint does not stop the others from being de-energized.

        Returns:
            Failures keyed by joint name; empty when everything succeeded
        """
        if self._transport is None:
            return {}

        failures = self.disables()
        for joint in self._joints:
            joint.release()

        try:
            self._transport.close()
        finally:
            self._transport = None
            self._status = ConnectionStatus.DISCONNECTED

        if failures:
            logger.error(f"Joint deinitialization finished with failures on {list(failures)}")
        else:
            logger.info("Joint deinitialization successful")
        return failures

    def disables(self) -> Dict[str, List[JointError]]:
        """De-energize every joint without closing the transport."""
        failures = {}
        for joint in self._joints:
            joint_failures = joint.disable()
            if joint_failures:
                failures[joint.name] = joint_failures
        return failures

    def __enter__(self) -> JointFleet:
        return self

    def __exit__(self, *_) -> None:
        if self.is_initialized:
            self.deinit()

    # ------------------------------------------------------------------
    # Whole-arm operations
    # ------------------------------------------------------------------

    def get_positions(self, out: Optional[np.ndarray] = None) -> np.ndarray:
        """Read every joint position into ``out`` (allocated when omitted)."""
        return self._collect("get_position", out)

    def set_positions(self, positions: Sequence[float]) -> None:
        positions = self._sequence(positions, "positions")
        self._validate("set_position", positions, Joint.position_to_raw)
        self._for_each("set_position", positions)

    def get_velocities(self, out: Optional[np.ndarray] = None) -> np.ndarray:
        """Read every joint velocity into ``out`` (allocated when omitted)."""
        return self._collect("get_velocity", out)

    def set_velocities(self, velocities: Sequence[float]) -> None:
        velocities = self._sequence(velocities, "velocities")
        self._validate("set_velocity", velocities, Joint.velocity_to_raw)
        self._for_each("set_velocity", velocities)

    def enables(self, drive_currents: PerJoint[int], hold_currents: PerJoint[int]) -> None:
        """Apply drive/hold currents and close the loop on every joint."""
        drive = self._per_joint(drive_currents, "drive currents")
        hold = self._per_joint(hold_currents, "hold currents")
        self._validate("enable", drive, _percent("drive current"))
        self._validate("enable", hold, _percent("hold current"))
        self._for_each("enable", drive, hold)

    def home(
        self,
        name: str,
        direction: HomingDirection,
        rpm: int,
        sensitivity: int,
        current: int,
        timeout: float = HOMING_TIMEOUT_S,
    ) -> None:
        """
        Home a single joint by name.

        The controller acknowledges only once the end stop is reached, so
        ``timeout`` should cover the whole travel.
        """
        self.get_joint(name).home(direction, rpm, sensitivity, current, timeout=timeout)

    def check_orientations(
        self,
        angles: PerJoint[float] = DEFAULT_ORIENTATION_ANGLE,
        timeout: float = ORIENTATION_TIMEOUT_S,
    ) -> None:
        """
        Run the orientation check on each joint, one after another.

        ``timeout`` applies per joint: each controller blocks until its test
        move is done before acknowledging.
        """
        angles = self._per_joint(angles, "orientation angles")
        self._validate("check_orientation", angles, lambda _, angle: encode_fixed(angle))
        self._for_each("check_orientation", angles, [timeout] * len(self._joints))

    def stops(self, mode: StopMode = StopMode.HARD) -> None:
        modes = self._per_joint(mode, "stop modes")
        self._validate("stop", modes, _enum(StopMode, "stop mode"))
        self._for_each("stop", modes)

    def disable_closed_loops(self) -> None:
        self._for_each("disable_closed_loop")

    def set_drive_currents(self, currents: PerJoint[int]) -> None:
        currents = self._per_joint(currents, "drive currents")
        self._validate("set_drive_current", currents, _percent("drive current"))
        self._for_each("set_drive_current", currents)

    def set_hold_currents(self, currents: PerJoint[int]) -> None:
        currents = self._per_joint(currents, "hold currents")
        self._validate("set_hold_current", currents, _percent("hold current"))
        self._for_each("set_hold_current", currents)

    def set_brake_modes(self, modes: PerJoint[BrakeMode]) -> None:
        modes = self._per_joint(modes, "brake modes")
        self._validate("set_brake_mode", modes, _enum(BrakeMode, "brake mode"))
        self._for_each("set_brake_mode", modes)

    def enable_stall_guards(self, thresholds: PerJoint[int]) -> None:
        thresholds = self._per_joint(thresholds, "stall guard thresholds")
        self._validate(
            "enable_stall_guard", thresholds,
            lambda _, threshold: check_int(threshold, 0, 0xFF, "stall guard threshold"),
        )
        self._for_each("enable_stall_guard", thresholds)

    # ------------------------------------------------------------------
    # Fan-out helpers
    # ------------------------------------------------------------------

    def _sequence(self, values: Sequence[T], what: str) -> List[T]:
        if np.ndim(values) != 1:
            raise ValidationError(f"{what} must be a sequence with one entry per joint")
        values = list(values)
        if len(values) != len(self._joints):
            raise ValidationError(
                f"vector size mismatch for {what}: expected {len(self._joints)}, got {len(values)}"
            )
        return values

    def _per_joint(self, values: PerJoint[T], what: str) -> List[T]:
        if np.ndim(values) == 0:
            return [values] * len(self._joints)
        return self._sequence(values, what)

    def _validate(self, operation: str, column: List, check: Callable[[Joint, object], object]) -> None:
        """Run ``check(joint, value)`` for every joint so bad input fails before any I/O."""
        for joint, value in zip(self._joints, column):
            try:
                check(joint, value)
            except JointError as e:
                e.annotate(joint.name, operation)
                logger.error(f"Rejected {operation} for {joint.name}: {e}")
                raise

    def _for_each(self, operation: str, *columns: List) -> None:
        """Call ``Joint.<operation>`` on each joint with its column entries, fail-fast."""
        for i, joint in enumerate(self._joints):
            try:
                getattr(joint, operation)(*(column[i] for column in columns))
            except JointError as e:
                e.annotate(joint.name, operation)
                logger.error(f"Failed to {operation} for {joint.name}: {e}")
                raise

    def _collect(self, operation: str, out: Optional[np.ndarray]) -> np.ndarray:
        if out is None:
            out = np.zeros(len(self._joints))
        elif len(out) != len(self._joints):
            raise ValidationError(
                f"vector size mismatch for {operation}: expected {len(self._joints)}, got {len(out)}"
            )

        for i, joint in enumerate(self._joints):
            try:
                value = getattr(joint, operation)()
            except JointError as e:
                e.annotate(joint.name, operation)
                logger.error(f"Failed to {operation} for {joint.name}: {e}")
                raise
            out[i] = value
        return out


def _percent(what: str) -> Callable[[Joint, int], int]:
    return lambda _, value: check_percent(value, what)


def _enum(enum_type, what: str) -> Callable[[Joint, object], object]:
    return lambda _, value: check_enum(enum_type, value, what)
