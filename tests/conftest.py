import io
import socket
import threading

import pytest

from h2c_client import H2cClient
from h2c_repl import Terminal
from h2c_server import Server

INDEX = b"<h1>index</h1>"
HELLO = b"hello over h2c\n"


def _start(root, allow_upgrade):
    server = Server("127.0.0.1", 0, str(root), allow_upgrade=allow_upgrade)
    server.start()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, thread


@pytest.fixture
def docroot(tmp_path):
    (tmp_path / "index.html").write_bytes(INDEX)
    (tmp_path / "hello.txt").write_bytes(HELLO)
    return tmp_path


@pytest.fixture
def server(docroot):
    server, thread = _start(docroot, allow_upgrade=True)
    yield server
    server.shutdown()
    thread.join(timeout=5)


@pytest.fixture
def plain_server(docroot):
    server, thread = _start(docroot, allow_upgrade=False)
    yield server
    server.shutdown()
    thread.join(timeout=5)


@pytest.fixture
def closed_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def client():
    client = H2cClient()
    yield client
    client.shutdown()


@pytest.fixture
def out():
    return io.StringIO()


@pytest.fixture
def term(out):
    return Terminal(io.StringIO(), out)
