"""
Serial Transport
=================
Byte-level access to the shared serial line the joint controllers hang on.

The core only needs the small ``Transport`` interface; ``SerialTransport``
implements it on top of pyserial.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol

import serial
import serial.tools.list_ports
from loguru import logger

from .errors import TransportError


SUPPORTED_BAUDRATES = (1200, 1800, 2400, 4800, 9600, 19200, 38400, 57600, 115200, 230400)
FALLBACK_BAUDRATE = 9600


class Transport(Protocol):
    """Interface the frame codec requires from the serial line."""

    def write(self, data: bytes) -> int:
        ...

    def read(self, size: int, timeout: float) -> bytes:
        ...

    def flush(self) -> None:
        ...

    def close(self) -> None:
        ...


def resolve_baudrate(baudrate: int) -> int:
    """Map a requested baud rate onto a supported one."""
    if baudrate in SUPPORTED_BAUDRATES:
        return baudrate
    logger.error(f"Baud rate {baudrate} not supported, defaulting to {FALLBACK_BAUDRATE}")
    return FALLBACK_BAUDRATE


class SerialTransport:
    """
    pyserial-backed transport.

    Usage:
        transport = SerialTransport.open("/dev/ttyUSB0", 115200)
        transport.write(b"...")
        reply = transport.read(1, timeout=0.1)
        transport.close()
    """

    def __init__(self, port: serial.Serial):
        self._serial = port

    @classmethod
    def open(cls, port: str, baudrate: int = 115200, timeout: float = 0.1) -> SerialTransport:
        """
        Open and configure a serial port (8N1, no flow control).

        Raises:
            TransportError: If the port cannot be opened
        """
        baudrate = resolve_baudrate(baudrate)
        try:
            handle = serial.Serial(
                port=port,
                baudrate=baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
                timeout=timeout,
                write_timeout=timeout,
            )
        except serial.SerialException as e:
            raise TransportError(f"Failed to open serial port {port}: {e}") from e

        logger.info(f"Opened {port} at {baudrate} baud")
        return cls(handle)

    @staticmethod
    def list_available_ports() -> List[Dict[str, str]]:
        """Describe the serial ports present on this machine, sorted by device."""
        return [
            {
                "device": info.device,
                "description": info.description,
                "manufacturer": info.manufacturer or "Unknown",
                "hwid": info.hwid,
            }
            for info in sorted(serial.tools.list_ports.comports(), key=lambda p: p.device)
        ]

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    @property
    def port(self) -> Optional[str]:
        return self._serial.port if self._serial is not None else None

    def write(self, data: bytes) -> int:
        self._require_open()
        try:
            written = self._serial.write(data)
            self._serial.flush()
        except serial.SerialException as e:
            raise TransportError(f"Serial write failed: {e}") from e
        return written

    def read(self, size: int, timeout: float) -> bytes:
        self._require_open()
        try:
            self._serial.timeout = timeout
            return bytes(self._serial.read(size))
        except serial.SerialException as e:
            raise TransportError(f"Serial read failed: {e}") from e

    def flush(self) -> None:
        self._require_open()
        try:
            self._serial.reset_input_buffer()
            self._serial.reset_output_buffer()
        except serial.SerialException as e:
            raise TransportError(f"Serial flush failed: {e}") from e

    def close(self) -> None:
        if self._serial is None:
            return
        port = self.port
        if self._serial.is_open:
            self._serial.close()
        self._serial = None
        logger.info(f"Serial connection {port} closed")

    def _require_open(self) -> None:
        if not self.is_open:
            raise TransportError("Serial port is not open")
