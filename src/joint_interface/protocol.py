"""
Joint Interface - Frame Codec
==============================
Builds protocol frames and runs the ACK handshake with a joint controller.

Exchange Format:
    Header:            [ADDRESS][REGISTER][LENGTH]      host -> device
    ACK1:              [ACK]                            device -> host
    Write payload:     [DATA...][CHECKSUM]              host -> device
    ACK2 (write only): [ACK]                            device -> host
    Read payload:      [DATA...][CHECKSUM]              device -> host

- ADDRESS: 1 byte bus address of the joint
- REGISTER: 1 byte command code (Register)
- LENGTH: 1 byte payload length, 0 for read requests
- CHECKSUM: 1 byte CRC-8 over DATA
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

from loguru import logger

from .errors import ChecksumError, ProtocolNack, TransportError, ValidationError
from .transport import Transport


ACK = 0x06
PING_REPLY = ord("O")

DEFAULT_TIMEOUT_S = 0.1
MAX_PAYLOAD = 0xFF

CRC8_POLY = 0x07


class Register(IntEnum):
    """Command codes understood by the joint controller firmware."""
    PING = 0x0F
    SETUP = 0x10
    SETRPM = 0x11
    GETDRIVERRPM = 0x12
    MOVESTEPS = 0x13
    MOVEANGLE = 0x14
    MOVETOANGLE = 0x15
    GETMOTORSTATE = 0x16
    RUNCONTINUOUS = 0x17
    ANGLEMOVED = 0x18
    SETCURRENT = 0x19
    SETHOLDCURRENT = 0x1A
    SETMAXACCELERATION = 0x1B
    SETMAXDECELERATION = 0x1C
    SETMAXVELOCITY = 0x1D
    ENABLESTALLGUARD = 0x1E
    DISABLESTALLGUARD = 0x1F
    CLEARSTALL = 0x20
    ISSTALLED = 0x21
    SETBRAKEMODE = 0x22
    ENABLEPID = 0x23
    DISABLEPID = 0x24
    ENABLECLOSEDLOOP = 0x25
    DISABLECLOSEDLOOP = 0x26
    SETCONTROLTHRESHOLD = 0x27
    MOVETOEND = 0x28
    STOP = 0x29
    GETPIDERROR = 0x2A
    CHECKORIENTATION = 0x2B
    GETENCODERRPM = 0x2C


def checksum(data: bytes) -> int:
    """Compute CRC-8 (poly 0x07, init 0x00, no reflection) over ``data``."""
    crc = 0x00
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x80:
                crc = (crc << 1) ^ CRC8_POLY
            else:
                crc <<= 1
            crc &= 0xFF
    return crc


def _hex(data: bytes) -> str:
    return data.hex(" ") if data else "(empty)"


@dataclass
class Frame:
    """
    One request frame.

    Built fresh for every exchange; the checksum is derived from the
    payload at construction time.
    """
    address: int
    register: Register
    payload: bytes = b""
    checksum: int = field(init=False)

    def __post_init__(self):
        if not 0 <= self.address <= 0xFF:
            raise ValidationError(f"Address out of range: {self.address}")
        try:
            self.register = Register(self.register)
        except ValueError:
            raise ValidationError(f"Unknown register: {self.register!r}") from None
        self.payload = bytes(self.payload)
        if len(self.payload) > MAX_PAYLOAD:
            raise ValidationError(
                f"Payload too long: {len(self.payload)} > {MAX_PAYLOAD} bytes"
            )
        self.checksum = checksum(self.payload)

    @classmethod
    def read_request(cls, address: int, register: Register) -> Frame:
        """Create a frame requesting data from the device."""
        return cls(address=address, register=register)

    def header(self, length: Optional[int] = None) -> bytes:
        """Serialize the 3-byte header."""
        if length is None:
            length = len(self.payload)
        return bytes([self.address, int(self.register), length])

    def body(self) -> bytes:
        """Serialize payload plus trailing checksum."""
        return self.payload + bytes([self.checksum])

    def __repr__(self) -> str:
        return (
            f"Frame(address=0x{self.address:02X}, register={self.register.name}, "
            f"payload={_hex(self.payload)}, checksum=0x{self.checksum:02X})"
        )


class FrameCodec:
    """
    Runs write and read exchanges against one transport.

    The codec borrows the transport; it never opens or closes it.

    Usage:
        codec = FrameCodec(transport)
        codec.write(0x01, Register.SETCURRENT, bytes([50]))
        data = codec.read(0x01, Register.ANGLEMOVED, 4)
    """

    def __init__(self, transport: Transport, timeout_s: float = DEFAULT_TIMEOUT_S):
        self.transport = transport
        self.timeout_s = timeout_s

    def write(
        self,
        address: int,
        register: Register,
        payload: bytes,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Transfer ``payload`` to the device.

        Args:
            address: Joint bus address
            register: Target register
            payload: Data bytes (checksum appended automatically)
            timeout: Per-byte wait for each ACK, defaults to the codec timeout

        Raises:
            TransportError: No ACK within the timeout or I/O failure
            ProtocolNack: Device answered with something other than ACK
        """
        frame = Frame(address, register, payload)
        timeout = self.timeout_s if timeout is None else timeout

        self.transport.flush()
        self._send(frame.header())
        self._expect_ack(frame, "header", timeout)

        self._send(frame.body())
        self._expect_ack(frame, "payload", timeout)
        logger.trace(f"Write complete: {frame!r}")

    def read(
        self,
        address: int,
        register: Register,
        length: int,
        timeout: Optional[float] = None,
    ) -> bytes:
        """
        Request ``length`` bytes from the device.

        Returns:
            The payload, only after its checksum verified

        Raises:
            TransportError: No ACK, short read, or I/O failure
            ProtocolNack: Device rejected the header
            ChecksumError: Received checksum does not match the data
        """
        if not 0 <= length <= MAX_PAYLOAD:
            raise ValidationError(f"Read length out of range: {length}")

        frame = Frame.read_request(address, register)
        timeout = self.timeout_s if timeout is None else timeout

        self.transport.flush()
        self._send(frame.header(length=0))
        self._expect_ack(frame, "header", timeout)

        raw = self.transport.read(length + 1, timeout)
        logger.trace(f"RX {frame.register.name}: {_hex(raw)}")
        if len(raw) < length + 1:
            raise TransportError(
                f"Short read from 0x{address:02X} ({frame.register.name}): "
                f"got {len(raw)} of {length + 1} bytes"
            )

        data, received = bytes(raw[:length]), raw[length]
        expected = checksum(data)
        if received != expected:
            raise ChecksumError(
                f"Checksum mismatch from 0x{address:02X} ({frame.register.name}): "
                f"expected 0x{expected:02X}, got 0x{received:02X}",
                expected=expected,
                received=received,
            )
        return data

    def _send(self, data: bytes) -> None:
        logger.trace(f"TX: {_hex(data)}")
        written = self.transport.write(data)
        if written is not None and written != len(data):
            raise TransportError(f"Incomplete write: {written} of {len(data)} bytes")

    def _expect_ack(self, frame: Frame, stage: str, timeout: float) -> None:
        reply = self.transport.read(1, timeout)
        if not reply:
            raise TransportError(
                f"No ACK for {stage} from 0x{frame.address:02X} "
                f"({frame.register.name}) within {timeout * 1000:.0f} ms"
            )
        if reply[0] != ACK:
            raise ProtocolNack(
                f"NACK for {stage} from 0x{frame.address:02X} "
                f"({frame.register.name}): 0x{reply[0]:02X}",
                received=reply[0],
            )
