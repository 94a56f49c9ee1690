"""
Modbus TCP server: one accept-loop thread, one session thread per client.

- Listen on TCP (default 127.0.0.1:1502).
- Each session reads one MBAP frame at a time, dispatches it against the
  shared RegisterStore and writes the reply before reading the next frame.
- Supported: FC03 Read Holding Registers, FC06 Write Single Register,
  FC10 Write Multiple Registers.
- Optional FaultInjector on the reply path to simulate a bad network.

HOW TO RUN:
  python server.py
  python server.py --config config/server.yaml --port 1502
"""

from __future__ import annotations

import argparse
import enum
import logging
import signal
import threading
from typing import List, Optional, Tuple

from connection import DEFAULT_POLL_INTERVAL, Connection, Listener
from device import RegisterStore
from dispatcher import process_request
from faults import FaultInjector
from modbus_tcp import FrameError, ModbusError, hexdump, read_frame
from settings import ConfigError, load_config, validate_config

log = logging.getLogger(__name__)


class SessionState(enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class ServerState(enum.Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class Session:
    """Serves one connection until the stream ends or the server stops."""

    def __init__(
        self,
        conn: Connection,
        store: RegisterStore,
        stop_event: threading.Event,
        peer: Tuple[str, int] = ("?", 0),
        faults: Optional[FaultInjector] = None,
    ):
        self.conn = conn
        self.store = store
        self.peer = peer
        self.faults = faults
        self._stop = stop_event
        self.state = SessionState.ACTIVE
        self.stats = {"requests": 0, "exceptions": 0, "bytes_in": 0, "bytes_out": 0}

    def run(self) -> None:
        log.info(f"[ACCEPT] client={self.peer}")
        try:
            while self.state is SessionState.ACTIVE and not self._stop.is_set():
                try:
                    frame = read_frame(self.conn)
                except FrameError as e:
                    log.warning(f"[FRAME_ERR] client={self.peer} err={e}")
                    break
                if frame is None:
                    break

                self.stats["requests"] += 1
                self.stats["bytes_in"] += len(frame)
                log.debug(f"[RECV] {self.peer} hex={hexdump(frame)}")

                resp = process_request(frame, self.store)
                if resp[7] & 0x80:
                    self.stats["exceptions"] += 1

                if not self._send(resp):
                    break
        finally:
            self.close()

    def _send(self, resp: bytes) -> bool:
        """Write one reply; False means the session must end."""
        if self.faults is not None and self.faults.enabled:
            self.faults.maybe_sleep()
            if self.faults.should_drop():
                log.warning(f"[DROP] {self.peer} response dropped")
                return True
            for chunk in self.faults.chunk_bytes(resp):
                if not self.conn.write(chunk):
                    return False
            self.stats["bytes_out"] += len(resp)
            log.debug(f"[SEND] {self.peer} hex={hexdump(resp)}")
            if self.faults.should_close():
                log.warning(f"[FORCE_CLOSE] {self.peer}")
                return False
            return True

        if not self.conn.write(resp):
            return False
        self.stats["bytes_out"] += len(resp)
        log.debug(f"[SEND] {self.peer} hex={hexdump(resp)}")
        return True

    def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        self.conn.close()
        log.info(
            f"[CLOSE] client={self.peer} requests={self.stats['requests']} "
            f"exceptions={self.stats['exceptions']}"
        )


class ModbusServer:
    """
    Owns the listening socket, the accept loop and every session thread.

    start() -> RUNNING, stop() -> STOPPING, shutdown() joins everything and
    leaves the server STOPPED. No session outlives shutdown().
    """

    def __init__(
        self,
        store: RegisterStore,
        port: int,
        host: str = "127.0.0.1",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_sessions: Optional[int] = None,
        faults: Optional[FaultInjector] = None,
    ):
        self.store = store
        self.host = host
        self.port = port
        self.poll_interval = poll_interval
        self.max_sessions = max_sessions
        self.faults = faults
        self.state = ServerState.STOPPED

        self._stop = threading.Event()
        self._listener: Optional[Listener] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._sessions: List[Tuple[threading.Thread, Session]] = []
        self._sessions_lock = threading.Lock()

    @property
    def address(self) -> Tuple[str, int]:
        """Bound (host, port); the real port when constructed with port 0."""
        if self._listener is None:
            return self.host, self.port
        return self._listener.address

    @property
    def active_sessions(self) -> int:
        with self._sessions_lock:
            return sum(1 for t, _ in self._sessions if t.is_alive())

    def start(self) -> None:
        if self.state is not ServerState.STOPPED:
            raise ModbusError(f"cannot start server in state {self.state.value}")

        self._stop.clear()
        self._listener = Listener(self.host, self.port, self._stop, self.poll_interval)
        self.state = ServerState.RUNNING
        self._accept_thread = threading.Thread(
            target=self._accept_loop, name="modbus-accept", daemon=True
        )
        self._accept_thread.start()
        log.info(f"Modbus TCP Server listening on {self.address[0]}:{self.address[1]}")

    def stop(self) -> None:
        if self.state is not ServerState.RUNNING:
            return
        self.state = ServerState.STOPPING
        self._stop.set()
        if self._listener is not None:
            self._listener.close()
        log.info("Modbus TCP Server stopping")

    def shutdown(self) -> None:
        """Stop (if running) and block until the accept loop and all sessions end."""
        self.stop()
        if self._accept_thread is not None:
            self._accept_thread.join()
            self._accept_thread = None

        with self._sessions_lock:
            sessions = list(self._sessions)
        for t, _ in sessions:
            t.join()
        with self._sessions_lock:
            self._sessions.clear()

        self._listener = None
        if self.state is not ServerState.STOPPED:
            self.state = ServerState.STOPPED
            log.info("Modbus TCP Server stopped")

    close = shutdown

    def __enter__(self) -> "ModbusServer":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    def _accept_loop(self) -> None:
        listener = self._listener
        try:
            while not self._stop.is_set():
                conn = listener.accept()
                if conn is None:
                    continue
                self._reap_sessions()

                if self.max_sessions is not None and self.active_sessions >= self.max_sessions:
                    log.warning(f"[REJECT] client={conn.peer} max_sessions={self.max_sessions}")
                    conn.close()
                    continue

                session = Session(conn, self.store, self._stop, conn.peer, self.faults)
                t = threading.Thread(
                    target=session.run, name=f"modbus-session-{conn.peer[1]}", daemon=True
                )
                with self._sessions_lock:
                    self._sessions.append((t, session))
                t.start()
        except OSError as e:
            if not self._stop.is_set():
                log.error(f"[ACCEPT_ERR] err={e}")
        finally:
            listener.close()

    def _reap_sessions(self) -> None:
        with self._sessions_lock:
            self._sessions = [(t, s) for t, s in self._sessions if t.is_alive()]


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_server(config) -> ModbusServer:
    store = RegisterStore(config["register_count"], config["initial_registers"])
    faults = FaultInjector.from_config(config["faults"])
    return ModbusServer(
        store,
        config["port"],
        host=config["host"],
        poll_interval=config["poll_interval_s"],
        max_sessions=config["max_sessions"],
        faults=faults if faults.enabled else None,
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Modbus TCP holding-register server")
    parser.add_argument("--config", default=None, help="Path to server.yaml config file")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--registers", type=int, default=None,
                        help="Number of holding registers")
    parser.add_argument("--log-level", default=None,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
        log.error(f"Config error: {e}")
        return 2

    if args.host is not None:
        config["host"] = args.host
    if args.port is not None:
        config["port"] = args.port
    if args.registers is not None:
        config["register_count"] = args.registers
    if args.log_level is not None:
        config["log_level"] = args.log_level

    try:
        validate_config(config)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
        log.error(f"Config error: {e}")
        return 2

    logging.basicConfig(
        level=config["log_level"].upper(),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    try:
        server = build_server(config)
        server.start()
    except (ModbusError, ValueError, OSError) as e:
        log.error(f"Cannot start server: {e}")
        return 1

    done = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: done.set())
    try:
        while not done.wait(1.0):
            pass
    except KeyboardInterrupt:
        log.info("Ctrl-C received, shutting down.")
    finally:
        server.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
