"""
Modbus TCP framing + parse/build.

TCP is a stream -> a request may arrive in pieces or glued to the next one
=> cut frames by the MBAP Length field, never by recv() boundaries.

MBAP:
- Transaction ID: match request/response (echoed)
- Protocol ID: should be 0 (not enforced, echoed on success)
- Length: number of bytes that follow (UnitID + PDU)
- Unit ID: echoed, every unit id is answered
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional

from connection import Connection

MBAP_PREFIX_SIZE = 6   # TID + PID + LEN
MBAP_HEADER_SIZE = 7   # + UnitID

# LEN counts UnitID + PDU: at least a function code, at most a 253-byte PDU
MIN_LENGTH = 2
MAX_LENGTH = 254

FC_READ_HOLDING_REGISTERS = 0x03
FC_WRITE_SINGLE_REGISTER = 0x06
FC_WRITE_MULTIPLE_REGISTERS = 0x10

EXCEPTION_BIT = 0x80


class ExceptionCode(IntEnum):
    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03
    SERVER_DEVICE_FAILURE = 0x04


class ModbusError(Exception):
    """Base class for errors raised by this server."""


class FrameError(ModbusError):
    """The MBAP header can't describe a valid frame (bad length field)."""


def hexdump(b: bytes) -> str:
    return b.hex(" ")


@dataclass(frozen=True)
class ModbusRequest:
    transaction_id: int
    protocol_id: int
    unit_id: int
    function_code: int
    pdu: bytes      # function code + payload
    raw: bytes      # the whole frame, for echo replies

    @property
    def payload(self) -> bytes:
        return self.pdu[1:]

    def address_and_count(self) -> Optional[tuple]:
        """(start address, quantity/value) or None if the PDU is too short."""
        if len(self.pdu) < 5:
            return None
        return struct.unpack(">HH", self.pdu[1:5])


def read_frame(conn: Connection, max_length: int = MAX_LENGTH) -> Optional[bytes]:
    """
    Pull one complete frame off the stream.

    Returns None when the stream ended (before or inside a frame).
    Raises FrameError when the length field is out of range; nothing past
    the 6-byte prefix has been read at that point.
    """
    prefix = conn.read_exact(MBAP_PREFIX_SIZE)
    if prefix is None:
        return None

    (length,) = struct.unpack(">H", prefix[4:6])
    if length < MIN_LENGTH or length > max_length:
        raise FrameError(f"length field {length} outside {MIN_LENGTH}..{max_length}")

    body = conn.read_exact(length)
    if body is None:
        return None
    return prefix + body


def parse_request(frame: bytes) -> ModbusRequest:
    if len(frame) < MBAP_HEADER_SIZE + 1:
        raise FrameError(f"frame too short ({len(frame)} bytes)")

    tid, pid, _length, unit_id = struct.unpack(">HHHB", frame[:MBAP_HEADER_SIZE])
    pdu = frame[MBAP_HEADER_SIZE:]
    return ModbusRequest(tid, pid, unit_id, pdu[0], pdu, frame)


def build_adu(req: ModbusRequest, pdu: bytes) -> bytes:
    """MBAP header (TID/PID echoed, LEN recomputed) + PDU."""
    length = 1 + len(pdu)
    return struct.pack(">HHHB", req.transaction_id, req.protocol_id, length, req.unit_id) + pdu


def build_read_response(req: ModbusRequest, values: List[int]) -> bytes:
    pdu = struct.pack(">BB", FC_READ_HOLDING_REGISTERS, len(values) * 2)
    pdu += b"".join(struct.pack(">H", v & 0xFFFF) for v in values)
    return build_adu(req, pdu)


def build_write_multiple_response(req: ModbusRequest, address: int, quantity: int) -> bytes:
    return build_adu(req, struct.pack(">BHH", FC_WRITE_MULTIPLE_REGISTERS, address, quantity))


def build_exception_adu(req: ModbusRequest, exc_code: int) -> bytes:
    pdu = bytes([(req.function_code | EXCEPTION_BIT) & 0xFF, exc_code & 0xFF])
    mbap = struct.pack(">HHHB", req.transaction_id, 0, 1 + len(pdu), req.unit_id)
    return mbap + pdu
