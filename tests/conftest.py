import socket

import pytest

from device import RegisterStore
from server import ModbusServer


@pytest.fixture
def store():
    return RegisterStore(10)


@pytest.fixture
def server(store):
    srv = ModbusServer(store, port=0, poll_interval=0.05)
    srv.start()
    yield srv
    srv.shutdown()


@pytest.fixture
def client_sock(server):
    sock = socket.create_connection(server.address, timeout=5)
    yield sock
    sock.close()
