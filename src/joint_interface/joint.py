"""
Joint Driver
=============
One addressable stepper joint on the shared serial bus.

Translates joint-level operations (position, velocity, currents, brake,
homing, orientation check) into frame codec exchanges, converting between
joint units (degrees or mm) and the device's fixed-point integers.

Wire encodings:
- Angles: signed 32-bit little-endian, motor degrees * 100
- Velocity: signed 32-bit little-endian, encoder RPM * 100
- Mode/current/threshold arguments: a single byte
"""

from __future__ import annotations

import math
import operator
import struct
from typing import Callable, List, Optional, Tuple

from loguru import logger

from .errors import JointConnectionError, JointError, ValidationError
from .models import BrakeMode, HomingDirection, JointConfig, StopMode
from .protocol import DEFAULT_TIMEOUT_S, PING_REPLY, FrameCodec, Register
from .transport import Transport


INT32_MIN = -(1 << 31)
INT32_MAX = (1 << 31) - 1

FIXED_POINT_SCALE = 100
RPM_TO_DEG_S = 6.0  # 360 deg / 60 s

# The controller blocks until the test move is confirmed
ORIENTATION_TIMEOUT_S = 0.5
HOMING_TIMEOUT_S = 0.5

DEFAULT_ORIENTATION_ANGLE = 10.0

MIN_HOMING_RPM = 11
MIN_HOMING_SENSITIVITY = -100
MAX_HOMING_SENSITIVITY = 10

_NO_ARGUMENT = b"\x00"


def encode_fixed(value: float) -> int:
    """Scale ``value`` to a 1/100 fixed-point int32."""
    if not math.isfinite(value):
        raise ValidationError(f"Value {value} is not a finite number")
    raw = int(round(value * FIXED_POINT_SCALE))
    if not INT32_MIN <= raw <= INT32_MAX:
        raise ValidationError(f"Value {value} does not fit the int32 wire format")
    return raw


def decode_fixed(raw: int) -> float:
    """Inverse of ``encode_fixed``."""
    return raw / FIXED_POINT_SCALE


def _pack_int32(value: int) -> bytes:
    return struct.pack("<i", value)


def _unpack_int32(data: bytes) -> int:
    return struct.unpack("<i", data)[0]


def check_int(value: int, low: int, high: int, what: str) -> int:
    """Accept an integer in ``low..high``, else raise ValidationError."""
    try:
        value = operator.index(value)
    except TypeError:
        raise ValidationError(f"{what} must be an integer, got {value!r}") from None
    if not low <= value <= high:
        raise ValidationError(f"{what} {value} outside {low}..{high}")
    return value


def check_percent(value: int, what: str) -> int:
    return check_int(value, 0, 100, what)


def check_enum(enum_type, value, what: str):
    try:
        return enum_type(value)
    except ValueError:
        raise ValidationError(f"Invalid {what}: {value!r}") from None


class Joint:
    """
    A single stepper-driven axis.

    The joint borrows the transport handed to ``init`` and drops it again
    in ``deinit``/``release``; it never closes it.

    Args:
        address: 1-byte bus address
        name: Label used in logs and errors
        gear_ratio: Motor degrees per joint unit, signed, non-zero
        offset: Joint zero minus encoder zero, in joint units
    """

    def __init__(self, address: int, name: str, gear_ratio: float = 1.0, offset: float = 0.0):
        if not 0 <= address <= 0xFF:
            raise ValidationError(f"Address out of range: {address}", joint=name)
        if gear_ratio == 0:
            raise ValidationError("gear_ratio must be non-zero", joint=name)

        self._address = address
        self._name = name
        self.gear_ratio = float(gear_ratio)
        self.offset = float(offset)
        self._codec: Optional[FrameCodec] = None

    @classmethod
    def from_config(cls, config: JointConfig) -> Joint:
        return cls(config.address, config.name, config.gear_ratio, config.offset)

    @property
    def address(self) -> int:
        return self._address

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_initialized(self) -> bool:
        return self._codec is not None

    def __repr__(self) -> str:
        state = "ready" if self.is_initialized else "unbound"
        return (
            f"Joint(name={self._name!r}, address=0x{self._address:02X}, "
            f"gear_ratio={self.gear_ratio}, offset={self.offset}, {state})"
        )

    # ------------------------------------------------------------------
    # Unit conversion
    # ------------------------------------------------------------------

    def position_to_raw(self, value: float) -> int:
        """Joint units -> wire angle (motor degrees * 100)."""
        return encode_fixed((value + self.offset) * self.gear_ratio)

    def raw_to_position(self, raw: int) -> float:
        """Wire angle -> joint units."""
        return decode_fixed(raw) / self.gear_ratio - self.offset

    def velocity_to_raw(self, value: float) -> int:
        """Joint units/s -> wire velocity (encoder RPM * 100)."""
        return encode_fixed(value * self.gear_ratio / RPM_TO_DEG_S)

    def raw_to_velocity(self, raw: int) -> float:
        """Wire velocity -> joint units/s."""
        return RPM_TO_DEG_S * decode_fixed(raw) / self.gear_ratio

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, transport: Transport, timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        """
        Bind the shared transport and verify the controller answers PING.

        Raises:
            JointConnectionError: No valid ping reply; the joint stays unbound
        """
        logger.info(f"Initializing {self._name} (0x{self._address:02X})")
        self._codec = FrameCodec(transport, timeout_s)
        try:
            reply = self._read(Register.PING, 1, operation="init")
        except JointError as e:
            self._codec = None
            raise JointConnectionError(
                f"Failed to connect: {e.message}", joint=self._name, operation="init"
            ) from e

        if reply[0] != PING_REPLY:
            self._codec = None
            raise JointConnectionError(
                f"Unexpected ping reply 0x{reply[0]:02X}", joint=self._name, operation="init"
            )
        logger.debug(f"{self._name} answered ping")

    def release(self) -> None:
        """Drop the transport without touching the motor."""
        self._codec = None

    def deinit(self) -> List[JointError]:
        """
        De-energize the motor and drop the transport.

        Returns:
            Failures of the individual de-energizing steps (empty on success)
        """
        if not self.is_initialized:
            return []
        failures = self.disable()
        self.release()
        logger.info(f"{self._name} released")
        return failures

    def disable(self) -> List[JointError]:
        """
        Best-effort de-energize: hard stop, open loop, zero hold current,
        freewheel. Every step runs even if an earlier one fails.
        """
        steps: List[Tuple[str, Callable[[], None]]] = [
            ("stop", lambda: self.stop(StopMode.HARD)),
            ("disable_closed_loop", self.disable_closed_loop),
            ("set_hold_current", lambda: self.set_hold_current(0)),
            ("set_brake_mode", lambda: self.set_brake_mode(BrakeMode.FREEWHEEL)),
        ]
        failures: List[JointError] = []
        for operation, step in steps:
            try:
                step()
            except JointError as e:
                failures.append(e.annotate(self._name, operation))
                logger.warning(f"Disable step failed: {e}")
        return failures

    def enable(self, drive_current: int, hold_current: int) -> None:
        """Apply currents, then close the position loop."""
        self._check_percent(drive_current, "drive current")
        self._check_percent(hold_current, "hold current")
        self.set_drive_current(drive_current)
        self.set_hold_current(hold_current)
        self.enable_closed_loop()

    # ------------------------------------------------------------------
    # Position / velocity
    # ------------------------------------------------------------------

    def get_position(self) -> float:
        data = self._read(Register.ANGLEMOVED, 4, operation="get_position")
        return self.raw_to_position(_unpack_int32(data))

    def set_position(self, value: float) -> None:
        raw = self._convert(self.position_to_raw, value, "set_position")
        self._write(Register.MOVETOANGLE, _pack_int32(raw), operation="set_position")

    def get_velocity(self) -> float:
        data = self._read(Register.GETENCODERRPM, 4, operation="get_velocity")
        return self.raw_to_velocity(_unpack_int32(data))

    def set_velocity(self, value: float) -> None:
        raw = self._convert(self.velocity_to_raw, value, "set_velocity")
        self._write(Register.SETRPM, _pack_int32(raw), operation="set_velocity")

    def move_steps(self, count: int) -> None:
        """Move by raw motor steps, bypassing unit conversion."""
        count = self._check_int(count, INT32_MIN, INT32_MAX, "step count")
        self._write(Register.MOVESTEPS, _pack_int32(count), operation="move_steps")

    def check_orientation(
        self,
        angle: float = DEFAULT_ORIENTATION_ANGLE,
        timeout: float = ORIENTATION_TIMEOUT_S,
    ) -> None:
        """
        Ask the controller to verify motor/encoder orientation with a small
        test rotation of ``angle`` motor degrees.

        The controller only acknowledges once the move finished, so the ACK
        wait is ``timeout`` rather than the codec default. Call after
        ``enable`` and before any motion command; this is not checked here.
        """
        if timeout < ORIENTATION_TIMEOUT_S:
            logger.warning(
                f"{self._name}: orientation check timeout {timeout * 1000:.0f} ms "
                f"is below {ORIENTATION_TIMEOUT_S * 1000:.0f} ms"
            )
        raw = self._convert(encode_fixed, angle, "check_orientation")
        self._write(
            Register.CHECKORIENTATION, _pack_int32(raw),
            operation="check_orientation", timeout=timeout,
        )

    def home(
        self,
        direction: HomingDirection,
        rpm: int,
        sensitivity: int,
        current: int,
        timeout: float = HOMING_TIMEOUT_S,
    ) -> None:
        """
        Drive towards the end stop until a stall is detected.

        Args:
            direction: CCW or CW
            rpm: Motor speed, above 10
            sensitivity: Stall sensitivity, -100 (least) to 10 (most)
            current: Homing current 0-100 %, lower stalls more easily
        """
        direction = self._check_enum(HomingDirection, direction, "homing direction")
        rpm = self._check_int(rpm, MIN_HOMING_RPM, 0xFF, "homing rpm")
        sensitivity = self._check_int(
            sensitivity, MIN_HOMING_SENSITIVITY, MAX_HOMING_SENSITIVITY, "homing sensitivity"
        )
        self._check_percent(current, "homing current")

        payload = struct.pack("<BBbB", direction, rpm, sensitivity, current)
        logger.info(f"Homing {self._name}: {direction.name} at {rpm} rpm")
        self._write(Register.MOVETOEND, payload, operation="home", timeout=timeout)

    # ------------------------------------------------------------------
    # Single-byte settings
    # ------------------------------------------------------------------

    def stop(self, mode: StopMode = StopMode.HARD) -> None:
        mode = self._check_enum(StopMode, mode, "stop mode")
        self._write(Register.STOP, bytes([mode]), operation="stop")

    def enable_closed_loop(self) -> None:
        self._write(Register.ENABLECLOSEDLOOP, _NO_ARGUMENT, operation="enable_closed_loop")

    def disable_closed_loop(self) -> None:
        self._write(Register.DISABLECLOSEDLOOP, _NO_ARGUMENT, operation="disable_closed_loop")

    def set_drive_current(self, percent: int) -> None:
        percent = self._check_percent(percent, "drive current")
        self._write(Register.SETCURRENT, bytes([percent]), operation="set_drive_current")

    def set_hold_current(self, percent: int) -> None:
        percent = self._check_percent(percent, "hold current")
        self._write(Register.SETHOLDCURRENT, bytes([percent]), operation="set_hold_current")

    def set_brake_mode(self, mode: BrakeMode) -> None:
        mode = self._check_enum(BrakeMode, mode, "brake mode")
        self._write(Register.SETBRAKEMODE, bytes([mode]), operation="set_brake_mode")

    def enable_stall_guard(self, threshold: int) -> None:
        """Arm stall detection; a tripped stall is cleared by homing or ``clear_stall``."""
        threshold = self._check_int(threshold, 0, 0xFF, "stall guard threshold")
        self._write(Register.ENABLESTALLGUARD, bytes([threshold]), operation="enable_stall_guard")

    def disable_stall_guard(self) -> None:
        self._write(Register.DISABLESTALLGUARD, _NO_ARGUMENT, operation="disable_stall_guard")

    def clear_stall(self) -> None:
        self._write(Register.CLEARSTALL, _NO_ARGUMENT, operation="clear_stall")

    def is_stalled(self) -> bool:
        data = self._read(Register.ISSTALLED, 1, operation="is_stalled")
        return bool(data[0])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_codec(self, operation: str) -> FrameCodec:
        if self._codec is None:
            raise JointConnectionError("Joint is not initialized", joint=self._name, operation=operation)
        return self._codec

    def _write(self, register: Register, payload: bytes, operation: str, timeout: Optional[float] = None) -> None:
        codec = self._require_codec(operation)
        logger.debug(f"{self._name}: {operation} ({register.name})")
        try:
            codec.write(self._address, register, payload, timeout)
        except JointError as e:
            raise e.annotate(self._name, operation)

    def _read(self, register: Register, length: int, operation: str, timeout: Optional[float] = None) -> bytes:
        codec = self._require_codec(operation)
        logger.debug(f"{self._name}: {operation} ({register.name})")
        try:
            return codec.read(self._address, register, length, timeout)
        except JointError as e:
            raise e.annotate(self._name, operation)

    def _convert(self, encoder: Callable[[float], int], value: float, operation: str) -> int:
        try:
            return encoder(value)
        except JointError as e:
            raise e.annotate(self._name, operation)

    def _check_int(self, value: int, low: int, high: int, what: str) -> int:
        return self._checked(check_int, value, low, high, what)

    def _check_percent(self, value: int, what: str) -> int:
        return self._checked(check_percent, value, what)

    def _check_enum(self, enum_type, value, what: str):
        return self._checked(check_enum, enum_type, value, what)

    def _checked(self, check: Callable, *args):
        try:
            return check(*args)
        except ValidationError as e:
            raise e.annotate(self._name)
