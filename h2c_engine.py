"""A blocking HTTP/2 client connection on top of the sans-IO `h2` state machine.

The connection is started on a socket that has already been upgraded with
`Upgrade: h2c`, so stream 1 is taken by the upgrade request and starts
half-closed (local). All I/O happens on the caller's thread: every operation
writes what `h2` has queued and then reads until the event it waits for
arrives.
"""

import logging
import os
import select
from contextlib import contextmanager, suppress
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from h2.config import H2Configuration
from h2.connection import ConnectionState, H2Connection
from h2.events import (
    ConnectionTerminated,
    DataReceived,
    PingAckReceived,
    RemoteSettingsChanged,
    ResponseReceived,
    SettingsAcknowledged,
    StreamEnded,
    StreamReset,
    TrailersReceived,
)
from h2.exceptions import H2Error, ProtocolError
from h2.settings import SettingCodes, Settings

from h2c_upgrade import USER_AGENT

UPGRADE_STREAM_ID = 1

_log = logging.getLogger(__name__)


class EngineError(Exception):
    pass


@dataclass
class Request:
    method: str
    url: str
    headers: list = field(default_factory=list)


@dataclass
class Response:
    stream_id: int
    status: int | None = None
    headers: list = field(default_factory=list)
    body: bytes = b""
    ended: bool = False
    reset_code: int | None = None


def dial(sock, settings=None, initial_data=b""):
    """Starts an HTTP/2 connection on an upgraded socket.

    `settings` maps `SettingCodes` to the values offered in the upgrade
    request, and `initial_data` holds whatever was read past the 101
    response head.
    """
    connection = H2ClientConnection(sock, settings)
    connection.start(initial_data)
    return connection


class H2ClientConnection:
    def __init__(self, sock, settings=None):
        self._sock = sock
        self._h2 = H2Connection(H2Configuration(client_side=True, header_encoding="utf-8"))
        self._local_settings = dict(settings or {})
        self._responses = {}
        self._pings = set()
        self._remote_settings_received = False
        self._terminated = None
        self._closed = False

    @property
    def closed(self):
        return self._closed

    @property
    def upgrade_response(self):
        """The response to the upgrade request, once the server has sent it."""
        return self._responses.get(UPGRADE_STREAM_ID)

    @property
    def local_settings(self):
        """Our settings as the server has acknowledged them."""
        return self._h2.local_settings

    def start(self, initial_data=b""):
        with self._guard("HTTP/2 start-up"):
            self._h2.local_settings = Settings(
                client=True, initial_values=_h2_settings(self._local_settings)
            )
            self._h2.max_inbound_frame_size = self._h2.local_settings.max_frame_size
            self._h2.initiate_upgrade_connection()
            self._responses[UPGRADE_STREAM_ID] = Response(UPGRADE_STREAM_ID)
            self._flush()
            _log.info(">>> HTTP/2 preface and SETTINGS")

            if initial_data:
                self._receive(initial_data)
            while not self._remote_settings_received:
                self._read()
            _log.info("<<< SETTINGS %s", dict(self._h2.remote_settings))

    def can_take_new_request(self):
        if self._closed:
            return False
        self._poll()
        if self._closed or self._terminated is not None:
            return False
        if self._h2.state_machine.state is ConnectionState.CLOSED:
            return False
        if self._h2.highest_outbound_stream_id + 2 > H2Connection.HIGHEST_ALLOWED_STREAM_ID:
            return False
        return self._h2.open_outbound_streams < self._h2.remote_settings.max_concurrent_streams

    def round_trip(self, request):
        with self._guard(f"{request.method} {request.url}"):
            stream_id = self._h2.get_next_available_stream_id()
            response = self._responses[stream_id] = Response(stream_id)
            self._h2.send_headers(stream_id, self._request_headers(request), end_stream=True)
            self._flush()
            _log.info(">>> HEADERS stream=%d %s %s", stream_id, request.method, request.url)

            while not response.ended:
                if response.reset_code is not None:
                    raise EngineError(f"stream {stream_id} reset by peer (error code {response.reset_code})")
                if self._terminated is not None and stream_id > self._terminated.last_stream_id:
                    raise EngineError(f"connection terminated by peer (error code {self._terminated.error_code})")
                self._read()

            del self._responses[stream_id]
            return response

    def ping(self):
        opaque_data = os.urandom(8)
        with self._guard("PING"):
            self._pings.add(opaque_data)
            self._h2.ping(opaque_data)
            self._flush()
            _log.info(">>> PING %s", opaque_data.hex())

            while opaque_data in self._pings:
                if self._terminated is not None:
                    raise EngineError(f"connection terminated by peer (error code {self._terminated.error_code})")
                self._read()

    def update_settings(self, settings):
        """Sends a SETTINGS frame on the live connection. `h2` keeps the new
        values pending until the server acknowledges them.
        """
        values = _h2_settings(settings)
        with self._guard("SETTINGS"):
            # Validates every value before h2 records any of them as pending.
            Settings(client=True, initial_values=values)
            self._h2.update_settings(values)
            self._local_settings.update(settings)
            self._flush()
            _log.info(">>> SETTINGS %s", values)

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            if self._h2.state_machine.state is not ConnectionState.CLOSED:
                self._h2.close_connection()
                self._sock.sendall(self._h2.data_to_send())
        except (H2Error, OSError) as e:
            _log.debug("GOAWAY not sent: %s", e)
        finally:
            self._sock.close()
        _log.info("HTTP/2 connection closed")

    def _request_headers(self, request):
        parts = urlsplit(request.url)
        path = parts.path or "/"
        if parts.query:
            path += "?" + parts.query
        return [
            (":method", request.method),
            (":scheme", parts.scheme or "http"),
            (":authority", parts.netloc),
            (":path", path),
            ("user-agent", USER_AGENT),
            *request.headers,
        ]

    @contextmanager
    def _guard(self, action):
        try:
            yield
        except EngineError:
            if self._terminated is not None:
                self._mark_closed()
            raise
        except OSError as e:
            self._mark_closed()
            raise EngineError(f"{action}: {e}") from e
        except ProtocolError as e:
            if self._h2.state_machine.state is ConnectionState.CLOSED:
                # h2 has queued a GOAWAY for the peer
                with suppress(OSError):
                    self._flush()
                self._mark_closed()
            raise EngineError(f"{action}: {e}") from e
        except H2Error as e:
            raise EngineError(f"{action}: {e}") from e

    def _flush(self):
        data = self._h2.data_to_send()
        if data:
            self._sock.sendall(data)

    def _read(self):
        data = self._sock.recv(65535)
        if not data:
            self._mark_closed()
            raise EngineError("connection closed by peer")
        self._receive(data)

    def _poll(self):
        """Consumes whatever the server has already sent, without blocking."""
        try:
            while not self._closed:
                readable, _, _ = select.select([self._sock], [], [], 0)
                if not readable:
                    return
                self._read()
        except (EngineError, H2Error, OSError) as e:
            _log.info("HTTP/2 connection lost: %s", e)
            self._mark_closed()

    def _receive(self, data):
        for event in self._h2.receive_data(data):
            self._handle_event(event)
        self._flush()

    def _handle_event(self, event):
        _log.debug("<<< %s", event)

        if isinstance(event, RemoteSettingsChanged):
            self._remote_settings_received = True
        elif isinstance(event, SettingsAcknowledged):
            _log.info("<<< SETTINGS ACK")
        elif isinstance(event, ResponseReceived):
            response = self._responses.get(event.stream_id)
            if response is not None:
                response.headers = list(event.headers)
                response.status = int(dict(event.headers).get(":status", 0))
        elif isinstance(event, TrailersReceived):
            response = self._responses.get(event.stream_id)
            if response is not None:
                response.headers.extend(event.headers)
        elif isinstance(event, DataReceived):
            response = self._responses.get(event.stream_id)
            if response is not None:
                response.body += event.data
            self._h2.acknowledge_received_data(event.flow_controlled_length, event.stream_id)
        elif isinstance(event, StreamEnded):
            response = self._responses.get(event.stream_id)
            if response is not None:
                response.ended = True
            if event.stream_id == UPGRADE_STREAM_ID:
                _log.info("<<< upgrade response status=%s", response and response.status)
        elif isinstance(event, StreamReset):
            response = self._responses.get(event.stream_id)
            if response is not None:
                response.reset_code = event.error_code
        elif isinstance(event, PingAckReceived):
            self._pings.discard(event.ping_data)
            _log.info("<<< PING ACK %s", event.ping_data.hex())
        elif isinstance(event, ConnectionTerminated):
            self._terminated = event
            _log.info("<<< GOAWAY error_code=%s last_stream_id=%s", event.error_code, event.last_stream_id)

    def _mark_closed(self):
        if not self._closed:
            self._closed = True
            self._sock.close()


def _h2_settings(settings):
    values = dict(settings)
    # HTTP/2 only allows 0 or 1 for SETTINGS_ENABLE_PUSH.
    if SettingCodes.ENABLE_PUSH in values:
        values[SettingCodes.ENABLE_PUSH] = 1 if values[SettingCodes.ENABLE_PUSH] else 0
    return values
