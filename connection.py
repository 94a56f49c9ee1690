"""
Byte-stream connection used by a client session.

TCP is a stream -> recv() can return:
- partial data (fragmentation)
- several frames at once (coalescing)
=> read_exact() keeps calling read() until it has exactly n bytes.

Blocking reads use a socket timeout so a session can notice the server's
stop event between timeouts instead of hanging in recv() forever.
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import Optional, Tuple

log = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5


class Connection:
    """Exact-read / write / close over an opaque byte channel."""

    def read(self, size: int) -> bytes:
        """Return up to `size` bytes, or b"" when the stream has ended."""
        raise NotImplementedError

    def write(self, data: bytes) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def read_exact(self, size: int) -> Optional[bytes]:
        """Return exactly `size` bytes, or None if the stream ends first."""
        buf = bytearray()
        while len(buf) < size:
            chunk = self.read(size - len(buf))
            if not chunk:
                return None
            buf += chunk
        return bytes(buf)


class SocketConnection(Connection):
    def __init__(
        self,
        sock: socket.socket,
        peer: Tuple[str, int],
        cancel: Optional[threading.Event] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.sock = sock
        self.peer = peer
        self._cancel = cancel
        self._closed = False
        sock.settimeout(poll_interval)

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self, size: int) -> bytes:
        while True:
            if self._cancel is not None and self._cancel.is_set():
                return b""
            try:
                return self.sock.recv(size)
            except socket.timeout:
                continue
            except ConnectionResetError:
                log.info(f"[RESET] client={self.peer}")
                return b""
            except OSError as e:
                if not self._closed:
                    log.info(f"[OSERR] client={self.peer} err={e}")
                return b""

    def write(self, data: bytes) -> bool:
        try:
            self.sock.sendall(data)
            return True
        except OSError as e:
            log.warning(f"[SEND_ERR] client={self.peer} err={e}")
            return False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # peer already gone
            pass
        self.sock.close()


class Listener:
    """Listening TCP endpoint; accept() hands out SocketConnections."""

    def __init__(
        self,
        host: str,
        port: int,
        cancel: Optional[threading.Event] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self._cancel = cancel
        self._poll_interval = poll_interval
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.sock.bind((host, port))
            self.sock.listen()
        except OSError:
            self.sock.close()
            raise
        self.sock.settimeout(poll_interval)
        self.address: Tuple[str, int] = self.sock.getsockname()[:2]

    def accept(self) -> Optional[SocketConnection]:
        """Wait up to one poll interval; None means no client arrived yet."""
        try:
            conn, addr = self.sock.accept()
        except socket.timeout:
            return None
        conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return SocketConnection(conn, addr, self._cancel, self._poll_interval)

    def close(self) -> None:
        self.sock.close()
