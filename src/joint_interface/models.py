"""
Joint Interface - Data Models
==============================
Pydantic models for joint and bus configuration, plus the mode
enumerations used on the wire.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from pathlib import Path
from typing import List, Union

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator


class ConnectionStatus(str, Enum):
    """Fleet connection status."""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"


class StopMode(IntEnum):
    """How a motor is brought to rest."""
    HARD = 0
    SOFT = 1


class BrakeMode(IntEnum):
    """Behaviour of an idle motor."""
    FREEWHEEL = 0
    COOLBRAKE = 1
    HARDBRAKE = 2


class HomingDirection(IntEnum):
    """Direction to drive towards the end stop while homing."""
    CCW = 0
    CW = 1


# =============================================================================
# CONFIGURATION MODELS
# =============================================================================

class SerialConfig(BaseModel):
    """Serial line shared by all joints."""
    port: str = "/dev/ttyUSB0"
    baudrate: int = Field(115200, gt=0)

    # Per-byte wait for ordinary exchanges
    timeout_s: float = Field(0.1, gt=0)


class JointConfig(BaseModel):
    """One stepper-driven axis."""
    address: int = Field(..., ge=0, le=0xFF, description="1-byte bus address")
    name: str = Field(..., min_length=1)

    # Joint units (deg or mm) -> motor degrees; the sign sets the homing convention
    gear_ratio: float = 1.0
    offset: float = Field(0.0, description="Joint zero minus encoder zero, in joint units")

    @field_validator("gear_ratio")
    @classmethod
    def gear_ratio_nonzero(cls, v: float) -> float:
        if v == 0:
            raise ValueError("gear_ratio must be non-zero")
        return v


class FleetConfig(BaseModel):
    """
    Complete bus description: serial settings, joints in addressing order
    and the currents applied by ``enables``.
    """
    serial: SerialConfig = Field(default_factory=SerialConfig)
    joints: List[JointConfig] = Field(default_factory=list)

    drive_current: int = Field(50, ge=0, le=100)
    hold_current: int = Field(20, ge=0, le=100)
    orientation_timeout_s: float = Field(0.5, gt=0)

    @model_validator(mode="after")
    def unique_joints(self) -> FleetConfig:
        addresses = [j.address for j in self.joints]
        if len(set(addresses)) != len(addresses):
            raise ValueError(f"Duplicate joint address in {addresses}")
        names = [j.name for j in self.joints]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate joint name in {names}")
        return self

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> FleetConfig:
        """Load a fleet description from a YAML file."""
        path = Path(path)
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        config = cls.model_validate(data)
        logger.info(f"Configuration loaded from {path} ({len(config.joints)} joints)")
        return config
