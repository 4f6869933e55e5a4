"""
Joint Interface Package
========================
Communication layer for the stepper joint controllers of the arm:
- Frame codec (address/register/length framing, ACK handshake, CRC-8)
- Joint driver with unit conversion
- Joint fleet for whole-arm operations over one serial line
- pyserial transport and pydantic configuration models
"""

from .errors import (
    JointError,
    ValidationError,
    TransportError,
    ProtocolNack,
    ChecksumError,
    JointConnectionError,
)
from .models import (
    ConnectionStatus,
    StopMode,
    BrakeMode,
    HomingDirection,
    SerialConfig,
    JointConfig,
    FleetConfig,
)
from .protocol import ACK, PING_REPLY, Register, Frame, FrameCodec, checksum
from .transport import Transport, SerialTransport
from .joint import Joint
from .fleet import JointFleet

__version__ = "1.0.0"

__all__ = [
    "JointError",
    "ValidationError",
    "TransportError",
    "ProtocolNack",
    "ChecksumError",
    "JointConnectionError",
    "ConnectionStatus",
    "StopMode",
    "BrakeMode",
    "HomingDirection",
    "SerialConfig",
    "JointConfig",
    "FleetConfig",
    "ACK",
    "PING_REPLY",
    "Register",
    "Frame",
    "FrameCodec",
    "checksum",
    "Transport",
    "SerialTransport",
    "Joint",
    "JointFleet",
]
