"""Frame builders and an in-memory Connection for tests."""

import struct

from connection import Connection


class MemoryConnection(Connection):
    """Connection fed from a byte string, optionally in small pieces."""

    def __init__(self, data: bytes = b"", chunk: int = 0):
        self.data = bytearray(data)
        self.chunk = chunk
        self.written = []
        self.closed = 0
        self.fail_writes = False

    def read(self, size):
        if self.chunk:
            size = min(size, self.chunk)
        out = bytes(self.data[:size])
        del self.data[:size]
        return out

    def write(self, data):
        if self.fail_writes:
            return False
        self.written.append(bytes(data))
        return True

    def close(self):
        self.closed += 1

    @property
    def output(self) -> bytes:
        return b"".join(self.written)


def mbap(tid, body, unit=1, pid=0):
    """Frame from unit id + PDU body."""
    return struct.pack(">HHHB", tid, pid, len(body) + 1, unit) + body


def read_req(tid, address, count, unit=1):
    return mbap(tid, struct.pack(">BHH", 0x03, address, count), unit)


def write_req(tid, address, value, unit=1):
    return mbap(tid, struct.pack(">BHH", 0x06, address, value), unit)


def write_multi_req(tid, address, values, unit=1, byte_count=None):
    if byte_count is None:
        byte_count = len(values) * 2
    body = struct.pack(">BHHB", 0x10, address, len(values), byte_count)
    body += b"".join(struct.pack(">H", v) for v in values)
    return mbap(tid, body, unit)


def recv_exact(sock, n):
    buf = b""
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            raise ConnectionError("closed")
        buf += chunk
    return buf


def recv_reply(sock):
    prefix = recv_exact(sock, 6)
    (length,) = struct.unpack(">H", prefix[4:6])
    return prefix + recv_exact(sock, length)
