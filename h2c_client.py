import logging
import socket
from enum import Enum
from urllib.parse import urlsplit

import h2c_engine
from h2c_errors import ConnectionClosed, DialFailed, HandshakeFailed, NotConnected
from h2c_settings import TuningSettings
from h2c_upgrade import send_upgrade_request

DEFAULT_PORT = 80

_log = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ESTABLISHED = "established"
    CLOSED = "closed"


def normalize_target(target):
    """Splits `host[:port]` into its parts, defaulting the port to 80, and
    returns `(host, port, authority)`. Internationalized names come back in
    their IDNA form, which is what goes on the wire.
    """
    try:
        parts = urlsplit("//" + target)
        host = parts.hostname
        port = DEFAULT_PORT if parts.port is None else parts.port
    except ValueError as e:
        raise DialFailed(f"invalid host {target!r}: {e}") from e
    if not host:
        raise DialFailed(f"invalid host {target!r}")

    if ":" in host:
        return host, port, f"[{host}]:{port}"
    try:
        host = host.encode("idna").decode("ascii")
    except UnicodeError as e:
        raise DialFailed(f"invalid host {target!r}: {e}") from e
    return host, port, f"{host}:{port}"


class H2cClient:
    """Owns the socket and the HTTP/2 connection negotiated on top of it.

    Only one of each is alive at a time: `connect()` drops whatever a
    previous `connect()` left behind before dialing again.
    """

    def __init__(self, settings=None, dial=h2c_engine.dial):
        self.settings = settings or TuningSettings()
        self.sock = None
        self.http2_conn = None
        self.authority = None
        self.url = None
        self.status = ""
        self.state = ConnectionStatus.IDLE
        self._dial = dial

    @property
    def connected(self):
        return self.state is ConnectionStatus.ESTABLISHED

    def connect(self, target):
        host, port, authority = normalize_target(target)

        if self.http2_conn is not None and self.http2_conn.can_take_new_request():
            _log.info("Closing the connection to %s", self.authority)
            self._close_http2()
        self._release()

        self.state = ConnectionStatus.CONNECTING
        try:
            sock = socket.create_connection((host, port))
        except (OSError, UnicodeError) as e:
            self.state = ConnectionStatus.IDLE
            raise DialFailed(f"dial to server [{authority}] failed {e}") from e
        _log.info("TCP connection established to %s", authority)

        self.sock = sock
        url = f"http://{authority}"

        try:
            response = send_upgrade_request(sock, url, self.settings)
            self.http2_conn = self._dial(sock, self.settings.as_dict(), response.leftover)
        except HandshakeFailed:
            self._release()
            raise
        except h2c_engine.EngineError as e:
            self._release()
            raise HandshakeFailed(f"init HTTP/2 connection failed {e}") from e
        except Exception:
            self._release()
            raise

        self.authority = authority
        self.url = url
        self.state = ConnectionStatus.ESTABLISHED
        self.status = "connected to " + authority
        _log.info("HTTP/2 connection established to %s", authority)

    def close(self):
        if self.http2_conn is None:
            raise NotConnected("no connection")
        self._close_http2()
        self.sock = None

    def ensure_usable(self):
        """Raises unless new requests can be sent on the current connection."""
        if self.http2_conn is None:
            raise NotConnected("please use connect cmd to connect to server")
        if not self.http2_conn.can_take_new_request():
            self._close_http2()
            self.sock = None
            raise ConnectionClosed("connection has been closed")
        return self.http2_conn

    def is_usable(self):
        return self.http2_conn is not None and self.http2_conn.can_take_new_request()

    def push_settings(self):
        self.http2_conn.update_settings(self.settings.as_dict())

    def shutdown(self):
        if self.http2_conn is not None:
            self._close_http2()
        self._release()

    def _close_http2(self):
        self.http2_conn.close()
        self.http2_conn = None
        self.status = ""
        self.state = ConnectionStatus.CLOSED

    def _release(self):
        if self.sock is not None:
            self.sock.close()
            self.sock = None
        if self.http2_conn is not None:
            self.http2_conn.close()
            self.http2_conn = None
        if self.state is not ConnectionStatus.CLOSED:
            self.state = ConnectionStatus.IDLE
        self.status = ""
