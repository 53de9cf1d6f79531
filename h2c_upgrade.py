"""The HTTP/1.1 -> HTTP/2 cleartext upgrade (RFC 7540, Section 3.2).

The client sends an ordinary GET carrying `Upgrade: h2c` and its initial
SETTINGS in the `HTTP2-Settings` header. A server that speaks h2c answers
`101 Switching Protocols` and continues on the same socket with its HTTP/2
connection preface.
"""

import logging
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from h2c_errors import HandshakeFailed

USER_AGENT = "h2c-client/0.1.0"
MAX_HEAD_SIZE = 64 * 1024

_log = logging.getLogger(__name__)


@dataclass
class UpgradeResponse:
    status: int
    reason: str
    headers: list = field(default_factory=list)
    leftover: bytes = b""
    """Bytes read past the end of the response head. After a 101 this is
    the beginning of the server's HTTP/2 preface."""

    def header(self, name):
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None

    @property
    def switched(self):
        return self.status == 101


def build_upgrade_request(url, settings):
    parts = urlsplit(url)
    target = parts.path or "/"
    if parts.query:
        target += "?" + parts.query

    request = (
        f"GET {target} HTTP/1.1\r\n"
        f"Host: {parts.netloc}\r\n"
        f"User-Agent: {USER_AGENT}\r\n"
        "Upgrade: h2c\r\n"
        "Connection: Upgrade, HTTP2-Settings\r\n"
        f"HTTP2-Settings: {settings.encode_header()}\r\n"
        "\r\n"
    )
    return request.encode("ascii")


def read_response_head(sock):
    data = b""
    while b"\r\n\r\n" not in data:
        try:
            chunk = sock.recv(4096)
        except OSError as e:
            raise HandshakeFailed(f"read upgrade response failed {e}") from e
        if not chunk:
            if data:
                raise HandshakeFailed("connection closed in the middle of the upgrade response")
            raise HandshakeFailed("connection closed before the upgrade response")
        data += chunk
        if len(data) > MAX_HEAD_SIZE and b"\r\n\r\n" not in data:
            raise HandshakeFailed("upgrade response head too large")

    head, leftover = data.split(b"\r\n\r\n", 1)
    return head, leftover


def parse_response_head(head):
    lines = head.decode("iso-8859-1").split("\r\n")
    status_line = lines[0]
    try:
        version, status, *reason = status_line.split(" ", 2)
        if not version.startswith("HTTP/"):
            raise ValueError(version)
        status = int(status)
    except ValueError:
        raise HandshakeFailed(f"malformed status line {status_line!r}") from None

    headers = []
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if not sep:
            raise HandshakeFailed(f"malformed header line {line!r}")
        headers.append((name.strip(), value.strip()))

    return status, reason[0] if reason else "", headers


def send_upgrade_request(sock, url, settings):
    """Writes the upgrade request on `sock` and reads the server's answer.

    Raises `HandshakeFailed` when the response can't be read or isn't a 101.
    """
    request = build_upgrade_request(url, settings)
    try:
        sock.sendall(request)
    except OSError as e:
        raise HandshakeFailed(f"write upgrade request failed {e}") from e
    _log.info(">>> GET %s with Upgrade: h2c", url)

    head, leftover = read_response_head(sock)
    status, reason, headers = parse_response_head(head)
    response = UpgradeResponse(status, reason, headers, leftover)
    _log.info("<<< HTTP/1.1 %d %s", status, reason)

    if not response.switched:
        status_text = f"{status} {reason}".strip()
        raise HandshakeFailed(f"The server does not support h2c (status {status_text})")
    return response
