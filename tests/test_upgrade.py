import socket

import pytest

from h2c_errors import HandshakeFailed
from h2c_settings import TuningSettings
from h2c_upgrade import build_upgrade_request, parse_response_head, send_upgrade_request


@pytest.fixture
def pair():
    ours, peer = socket.socketpair()
    yield ours, peer
    ours.close()
    peer.close()


def test_build_upgrade_request() -> None:
    settings = TuningSettings()
    request = build_upgrade_request("http://example.test:8080", settings).decode()
    head, _, body = request.partition("\r\n\r\n")
    lines = head.split("\r\n")

    assert lines[0] == "GET / HTTP/1.1"
    assert "Host: example.test:8080" in lines
    assert "Upgrade: h2c" in lines
    assert "Connection: Upgrade, HTTP2-Settings" in lines
    assert f"HTTP2-Settings: {settings.encode_header()}" in lines
    assert body == ""


def test_build_upgrade_request_keeps_path_and_query() -> None:
    request = build_upgrade_request("http://example.test:80/a/b?c=d", TuningSettings())

    assert request.startswith(b"GET /a/b?c=d HTTP/1.1\r\n")


def test_switching_protocols(pair) -> None:
    ours, peer = pair
    peer.sendall(b"HTTP/1.1 101 Switching Protocols\r\nConnection: Upgrade\r\nUpgrade: h2c\r\n\r\n\x00\x00\x00\x04")

    response = send_upgrade_request(ours, "http://example.test:8080", TuningSettings())

    assert response.switched
    assert response.reason == "Switching Protocols"
    assert response.header("upgrade") == "h2c"
    assert response.leftover == b"\x00\x00\x00\x04"
    assert peer.recv(4096).startswith(b"GET / HTTP/1.1\r\n")


def test_non_101_fails(pair) -> None:
    ours, peer = pair
    peer.sendall(b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\n\r\nok")

    with pytest.raises(HandshakeFailed, match="200 OK"):
        send_upgrade_request(ours, "http://example.test:8080", TuningSettings())


def test_closed_before_response(pair) -> None:
    ours, peer = pair
    peer.shutdown(socket.SHUT_WR)

    with pytest.raises(HandshakeFailed, match="closed before"):
        send_upgrade_request(ours, "http://example.test:8080", TuningSettings())


def test_closed_in_the_middle_of_the_response(pair) -> None:
    ours, peer = pair
    peer.sendall(b"HTTP/1.1 101 Switching")
    peer.shutdown(socket.SHUT_WR)

    with pytest.raises(HandshakeFailed, match="middle"):
        send_upgrade_request(ours, "http://example.test:8080", TuningSettings())


def test_malformed_status_line(pair) -> None:
    ours, peer = pair
    peer.sendall(b"garbage\r\n\r\n")

    with pytest.raises(HandshakeFailed, match="malformed"):
        send_upgrade_request(ours, "http://example.test:8080", TuningSettings())


def test_parse_response_head() -> None:
    status, reason, headers = parse_response_head(b"HTTP/1.1 101 Switching Protocols\r\nUpgrade: h2c")

    assert status == 101
    assert reason == "Switching Protocols"
    assert headers == [("Upgrade", "h2c")]
