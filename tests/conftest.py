"""
Shared transport doubles for the joint interface tests.
"""

import struct
import sys
from collections import deque
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from joint_interface import ACK, PING_REPLY, Register, checksum


NACK = 0x15

READ_REGISTERS = {Register.PING, Register.ANGLEMOVED, Register.GETENCODERRPM, Register.ISSTALLED}


class ScriptedTransport:
    """Transport replaying canned replies, one chunk per read() call."""

    def __init__(self, replies=()):
        self.replies = deque(bytes(r) for r in replies)
        self.writes = []
        self.reads = []
        self.flushes = 0
        self.closed = False

    def write(self, data):
        self.writes.append(bytes(data))
        return len(data)

    def read(self, size, timeout):
        self.reads.append((size, timeout))
        if not self.replies:
            return b""
        return self.replies.popleft()[:size]

    def flush(self):
        self.flushes += 1

    def close(self):
        self.closed = True


class SimulatedJoint:
    """Register-level model of one controller on the bus."""

    def __init__(self, address, ping_reply=PING_REPLY):
        self.address = address
        self.ping_reply = ping_reply
        self.angle_raw = 0
        self.rpm_raw = 0
        self.stalled = False
        self.written = []
        self.silent = set()
        self.nack = set()
        self.corrupt = set()

    def registers_written(self):
        return [register for register, _ in self.written]

    def read_register(self, register):
        if register == Register.PING:
            return bytes([self.ping_reply])
        if register == Register.ANGLEMOVED:
            return struct.pack("<i", self.angle_raw)
        if register == Register.GETENCODERRPM:
            return struct.pack("<i", self.rpm_raw)
        if register == Register.ISSTALLED:
            return bytes([int(self.stalled)])
        raise AssertionError(f"unexpected read of {register!r}")

    def write_register(self, register, payload):
        self.written.append((register, payload))
        if register == Register.MOVETOANGLE:
            self.angle_raw = struct.unpack("<i", payload)[0]
        elif register == Register.SETRPM:
            self.rpm_raw = struct.unpack("<i", payload)[0]


class SimulatedBus:
    """Serial line with several simulated controllers answering by address."""

    def __init__(self):
        self.devices = {}
        self.closed = False
        self.close_calls = 0
        self._pending = bytearray()
        self._body_for = None

    def add_device(self, address, **kwargs):
        device = SimulatedJoint(address, **kwargs)
        self.devices[address] = device
        return device

    def write(self, data):
        data = bytes(data)
        if self._body_for is not None:
            device, register, length = self._body_for
            self._body_for = None
            payload, crc = data[:length], data[length]
            if crc != checksum(payload):
                self._pending.append(NACK)
            else:
                device.write_register(register, payload)
                self._pending.append(ACK)
            return len(data)

        address, register, length = data
        register = Register(register)
        device = self.devices.get(address)
        if device is None or register in device.silent:
            return len(data)
        if register in device.nack:
            self._pending.append(NACK)
            return len(data)

        self._pending.append(ACK)
        if length == 0 and register in READ_REGISTERS:
            value = device.read_register(register)
            crc = checksum(value)
            if register in device.corrupt:
                crc ^= 0xFF
            self._pending.extend(value + bytes([crc]))
        else:
            self._body_for = (device, register, length)
        return len(data)

    def read(self, size, timeout):
        chunk = bytes(self._pending[:size])
        del self._pending[:size]
        return chunk

    def flush(self):
        self._pending.clear()
        self._body_for = None

    def close(self):
        self.closed = True
        self.close_calls += 1


@pytest.fixture
def bus():
    """Bus with three responsive controllers at 0x01..0x03."""
    sim = SimulatedBus()
    for address in (0x01, 0x02, 0x03):
        sim.add_device(address)
    return sim
