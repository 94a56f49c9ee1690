"""
Request dispatcher: one frame in, one reply frame out.

Supported:
  FC03 Read Holding Registers
  FC06 Write Single Register
  FC10 Write Multiple Registers
Anything else -> exception 01 (Illegal Function).

Address checks come first and answer 02 (Illegal Data Address). A 0x10
byte count that disagrees with the quantity also answers 02, which is what
existing clients of this server expect. Quantity limits and truncated PDUs
are checked afterwards and answer 03 (Illegal Data Value).

The quantity limits (FC03: 1..125, FC10: 1..123, from the Modbus
application protocol) deliberately tighten the older wire behavior of this
server, which accepted any quantity that fit inside the table, including 0
and 126-127 for reads. Those requests now get exception 03 instead of a
reply.

The store lock is held from validation until the reply is built, so each
request sees and leaves the register table in one consistent state.
"""

from __future__ import annotations

import logging
import struct

from device import RegisterStore
from modbus_tcp import (
    FC_READ_HOLDING_REGISTERS,
    FC_WRITE_MULTIPLE_REGISTERS,
    FC_WRITE_SINGLE_REGISTER,
    ExceptionCode,
    ModbusRequest,
    build_exception_adu,
    build_read_response,
    build_write_multiple_response,
    parse_request,
)

log = logging.getLogger(__name__)

MAX_READ_QUANTITY = 125
MAX_WRITE_QUANTITY = 123


class RequestRejected(Exception):
    """Raised by a handler to answer with a Modbus exception code."""

    def __init__(self, code: ExceptionCode, reason: str = ""):
        super().__init__(reason or code.name)
        self.code = code


def process_request(frame: bytes, store: RegisterStore) -> bytes:
    """Execute one request frame against `store` and return the reply frame."""
    req = parse_request(frame)
    handler = HANDLERS.get(req.function_code)
    if handler is None:
        log.info(f"[EXC] TID={req.transaction_id} FC={req.function_code:#04x} illegal function")
        return build_exception_adu(req, ExceptionCode.ILLEGAL_FUNCTION)

    try:
        with store.lock:
            return handler(req, store)
    except RequestRejected as e:
        log.info(
            f"[EXC] TID={req.transaction_id} FC={req.function_code:#04x} "
            f"code={int(e.code):#04x} reason={e}"
        )
        return build_exception_adu(req, e.code)
    except Exception:
        log.exception(f"[FAIL] TID={req.transaction_id} FC={req.function_code:#04x}")
        return build_exception_adu(req, ExceptionCode.SERVER_DEVICE_FAILURE)


def _address_and_count(req: ModbusRequest):
    fields = req.address_and_count()
    if fields is None:
        raise RequestRejected(ExceptionCode.ILLEGAL_DATA_VALUE, "pdu too short")
    return fields


def handle_read_holding_registers(req: ModbusRequest, store: RegisterStore) -> bytes:
    address, quantity = _address_and_count(req)

    if address + quantity > store.size:
        raise RequestRejected(ExceptionCode.ILLEGAL_DATA_ADDRESS, "read past end of table")
    if not 1 <= quantity <= MAX_READ_QUANTITY:
        raise RequestRejected(ExceptionCode.ILLEGAL_DATA_VALUE, f"quantity {quantity}")

    return build_read_response(req, store.get_many(address, quantity))


def handle_write_single_register(req: ModbusRequest, store: RegisterStore) -> bytes:
    address, value = _address_and_count(req)

    if address >= store.size:
        raise RequestRejected(ExceptionCode.ILLEGAL_DATA_ADDRESS, "write past end of table")

    store.set(address, value)
    # Echo request as confirmation
    return req.raw


def handle_write_multiple_registers(req: ModbusRequest, store: RegisterStore) -> bytes:
    address, quantity = _address_and_count(req)
    if len(req.pdu) < 6:
        raise RequestRejected(ExceptionCode.ILLEGAL_DATA_VALUE, "missing byte count")
    byte_count = req.pdu[5]

    if address + quantity > store.size or byte_count != quantity * 2:
        raise RequestRejected(ExceptionCode.ILLEGAL_DATA_ADDRESS, "bad range or byte count")
    if not 1 <= quantity <= MAX_WRITE_QUANTITY:
        raise RequestRejected(ExceptionCode.ILLEGAL_DATA_VALUE, f"quantity {quantity}")

    data = req.pdu[6 : 6 + byte_count]
    if len(data) < byte_count:
        raise RequestRejected(ExceptionCode.ILLEGAL_DATA_VALUE, "data shorter than byte count")

    values = list(struct.unpack(f">{quantity}H", data))
    store.set_many(address, values)
    return build_write_multiple_response(req, address, quantity)


HANDLERS = {
    FC_READ_HOLDING_REGISTERS: handle_read_holding_registers,
    FC_WRITE_SINGLE_REGISTER: handle_write_single_register,
    FC_WRITE_MULTIPLE_REGISTERS: handle_write_multiple_registers,
}
