"""
Joint Interface - Errors
=========================
Exception taxonomy for joint communication.

Every error can carry the name of the joint and the operation it happened
in, so callers higher up (the fleet, the CLI) can log it meaningfully
without wrapping it again.
"""

from __future__ import annotations

from typing import Optional


class JointError(Exception):
    """Base class for all joint communication errors."""

    def __init__(
        self,
        message: str,
        joint: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.joint = joint
        self.operation = operation

    def annotate(self, joint: Optional[str] = None, operation: Optional[str] = None) -> JointError:
        """Attach joint/operation context unless already present."""
        if self.joint is None:
            self.joint = joint
        if self.operation is None:
            self.operation = operation
        return self

    def __str__(self) -> str:
        context = []
        if self.joint:
            context.append(f"joint={self.joint}")
        if self.operation:
            context.append(f"op={self.operation}")
        if context:
            return f"{self.message} [{', '.join(context)}]"
        return self.message


class ValidationError(JointError):
    """Caller input rejected before any bytes were sent."""


class TransportError(JointError):
    """Underlying read/write failed or timed out."""


class ProtocolNack(JointError):
    """Device answered a framing step with something other than ACK."""

    def __init__(self, message: str, received: int, **kwargs):
        super().__init__(message, **kwargs)
        self.received = received


class ChecksumError(JointError):
    """Received payload failed the integrity check."""

    def __init__(self, message: str, expected: int, received: int, **kwargs):
        super().__init__(message, **kwargs)
        self.expected = expected
        self.received = received


class JointConnectionError(JointError):
    """Joint failed its identity check, or was used while not initialized."""
