import struct

import pytest

from device import RegisterStore
from dispatcher import process_request
from tests.helpers import mbap, read_req, write_multi_req, write_req


def exception_of(resp):
    """(function byte, exception code) of an exception reply."""
    assert struct.unpack(">H", resp[4:6])[0] == 3
    assert len(resp) == 9
    return resp[7], resp[8]


@pytest.mark.parametrize("fc", [0x01, 0x02, 0x04, 0x05, 0x0F, 0x17, 0x2B, 0x7F])
def test_unsupported_function_is_illegal_function(fc):
    store = RegisterStore(10)
    resp = process_request(mbap(0x1111, bytes([fc, 0, 0, 0, 1]), unit=4), store)
    assert exception_of(resp) == (fc | 0x80, 0x01)
    assert resp[:2] == b"\x11\x11"
    assert resp[6] == 4


def test_unsupported_function_with_bare_pdu():
    resp = process_request(mbap(1, b"\x2b"), RegisterStore(1))
    assert exception_of(resp) == (0xAB, 0x01)


# --- FC03 ---

def test_read_returns_store_values():
    store = RegisterStore(10, {3: 0x0102, 4: 0xA0B0, 5: 7})
    resp = process_request(read_req(0x0A0B, 3, 3, unit=2), store)
    assert resp == bytes.fromhex("0a0b 0000 0009 02 03 06 0102 a0b0 0007")


def test_read_echoes_protocol_id():
    resp = process_request(mbap(1, b"\x03\x00\x00\x00\x01", pid=0x55), RegisterStore(2))
    assert resp[2:4] == b"\x00\x55"


def test_read_whole_table():
    store = RegisterStore(5, {4: 9})
    resp = process_request(read_req(1, 0, 5), store)
    assert resp[8] == 10
    assert struct.unpack(">5H", resp[9:]) == (0, 0, 0, 0, 9)


def test_read_past_end_is_illegal_address():
    store = RegisterStore(5)
    resp = process_request(read_req(1, 3, 5), store)
    assert exception_of(resp) == (0x83, 0x02)
    assert store.snapshot() == [0] * 5


def test_read_huge_quantity_is_illegal_address():
    resp = process_request(read_req(1, 0, 0xFFFF), RegisterStore(10))
    assert exception_of(resp) == (0x83, 0x02)


@pytest.mark.parametrize("quantity", [0, 126])
def test_read_quantity_limits(quantity):
    resp = process_request(read_req(1, 0, quantity), RegisterStore(200))
    assert exception_of(resp) == (0x83, 0x03)


def test_read_truncated_pdu_is_illegal_value():
    resp = process_request(mbap(1, b"\x03\x00\x01"), RegisterStore(10))
    assert exception_of(resp) == (0x83, 0x03)


# --- FC06 ---

def test_write_single_echoes_request():
    store = RegisterStore(10)
    req = write_req(0x0001, 2, 0x1234)
    assert len(req) == 12
    assert process_request(req, store) == req
    assert store.get(2) == 0x1234


def test_write_single_last_register():
    store = RegisterStore(10)
    req = write_req(5, 9, 0xFFFF)
    assert process_request(req, store) == req
    assert store.get(9) == 0xFFFF


def test_write_single_past_end_is_illegal_address():
    store = RegisterStore(10)
    resp = process_request(write_req(1, 10, 0x1234), store)
    assert exception_of(resp) == (0x86, 0x02)
    assert store.snapshot() == [0] * 10


def test_write_then_read_round_trip():
    store = RegisterStore(10)
    process_request(write_req(1, 7, 0xBEEF), store)
    resp = process_request(read_req(2, 7, 1), store)
    assert resp[7:] == b"\x03\x02\xbe\xef"


# --- FC10 ---

def test_write_multiple_writes_in_order():
    store = RegisterStore(10)
    resp = process_request(write_multi_req(0x2222, 4, [1, 2, 3], unit=6), store)
    assert resp == bytes.fromhex("2222 0000 0006 06 10 0004 0003")
    assert store.snapshot() == [0, 0, 0, 0, 1, 2, 3, 0, 0, 0]


def test_write_multiple_past_end_is_illegal_address():
    store = RegisterStore(5)
    resp = process_request(write_multi_req(1, 3, [1, 2, 3]), store)
    assert exception_of(resp) == (0x90, 0x02)
    assert store.snapshot() == [0] * 5


def test_write_multiple_byte_count_mismatch_is_illegal_address():
    store = RegisterStore(10)
    resp = process_request(write_multi_req(1, 0, [1, 2], byte_count=3), store)
    assert exception_of(resp) == (0x90, 0x02)
    assert store.snapshot() == [0] * 10


def test_write_multiple_short_data_is_illegal_value():
    store = RegisterStore(10)
    frame = write_multi_req(1, 0, [1, 2])[:-1]
    frame = frame[:4] + struct.pack(">H", len(frame) - 6) + frame[6:]
    resp = process_request(frame, store)
    assert exception_of(resp) == (0x90, 0x03)
    assert store.snapshot() == [0] * 10


def test_write_multiple_zero_quantity_is_illegal_value():
    resp = process_request(write_multi_req(1, 0, []), RegisterStore(10))
    assert exception_of(resp) == (0x90, 0x03)


def test_write_multiple_missing_byte_count():
    resp = process_request(mbap(1, b"\x10\x00\x00\x00\x01"), RegisterStore(10))
    assert exception_of(resp) == (0x90, 0x03)


# --- write then read back ---

def test_scenario_write_then_read_register_2():
    store = RegisterStore(10)
    req = write_req(0x0001, 2, 0x1234)
    assert process_request(req, store) == req
    assert store.get(2) == 0x1234

    resp = process_request(read_req(0x0002, 2, 1), store)
    assert resp[7:] == bytes([0x03, 0x02, 0x12, 0x34])


def test_scenario_read_out_of_range_on_small_store():
    resp = process_request(read_req(1, 3, 5), RegisterStore(5))
    assert resp[7:] == bytes([0x83, 0x02])


def test_handler_failure_is_server_device_failure(monkeypatch):
    store = RegisterStore(10)

    def broken(address, count):
        raise RuntimeError("boom")

    monkeypatch.setattr(store, "get_many", broken)
    resp = process_request(read_req(1, 0, 1), store)
    assert exception_of(resp) == (0x83, 0x04)
