"""Static file server that speaks HTTP/1.1, h2c (upgrade) and prior-knowledge HTTP/2.

    $ h2c-server --port 8080 --root ./public
"""

import argparse
import binascii
import hashlib
import logging
import os
import socket
import sys
import threading

from h2.config import H2Configuration
from h2.connection import H2Connection
from h2.events import ConnectionTerminated, DataReceived, RequestReceived, StreamReset, WindowUpdated
from h2.exceptions import ProtocolError, StreamClosedError
from hyperframe.exceptions import InvalidFrameError

PREFACE = b"PRI * HTTP/2.0\r\n\r\nSM\r\n\r\n"
MAX_HEAD_SIZE = 64 * 1024

SWITCHING_PROTOCOLS = (
    b"HTTP/1.1 101 Switching Protocols\r\n"
    b"Connection: Upgrade\r\n"
    b"Upgrade: h2c\r\n\r\n"
)

REASONS = {
    200: "OK",
    304: "Not Modified",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    500: "Internal Server Error",
}

MIME_TYPES = {
    ".html": "text/html",
    ".txt": "text/plain",
    ".js": "application/javascript",
    ".css": "text/css",
    ".json": "application/json",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".otf": "font/otf"
}

_log = logging.getLogger(__name__)


def parse_url(target):
    path = target.split("?", 1)[0]
    if not path.startswith("/"):
        return None
    if path == "/":
        path = "/index.html"
    return path


def get_mime_type(file_path):
    _, ext = os.path.splitext(file_path)
    return MIME_TYPES.get(ext, "application/octet-stream")


def get_last_modified(file_path):
    timestamp = os.path.getmtime(file_path)
    return f"{timestamp:.0f}"


def generate_etag(content):
    return hashlib.md5(content).hexdigest()


def parse_request_head(head):
    """Returns `(method, target, headers)` with lower-cased header names, or
    None when the request line is malformed.
    """
    lines = head.decode("iso-8859-1").split("\r\n")
    parts = lines[0].split()
    if len(parts) != 3 or not parts[2].startswith("HTTP/1."):
        return None

    headers = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if not sep:
            return None
        headers[name.strip().lower()] = value.strip()
    return parts[0], parts[1], headers


class Server:
    def __init__(self, host='127.0.0.1', port=80, root='.', allow_upgrade=True):
        self.host = host
        self.port = port
        self.root = os.path.realpath(root)
        self.allow_upgrade = allow_upgrade
        self.server_socket = None
        self.file_cache = {}
        self._clients = set()
        self._lock = threading.Lock()
        self._running = False

    def start(self):
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server_socket.bind((self.host, self.port))
        self.server_socket.listen(5)
        self.port = self.server_socket.getsockname()[1]
        self._running = True
        _log.info("HTTP Server running on %s:%d (h2c upgrade %s)", self.host, self.port,
                  "enabled" if self.allow_upgrade else "disabled")

    def serve_forever(self):
        while self._running:
            try:
                client_socket, client_address = self.server_socket.accept()
            except OSError:
                if not self._running:
                    break
                raise
            _log.info("New connection from %s", client_address)
            with self._lock:
                self._clients.add(client_socket)
            threading.Thread(target=self.handle_client, args=(client_socket,), daemon=True).start()

    def close_clients(self):
        """Drops every open client connection, leaving the listener up."""
        with self._lock:
            clients = list(self._clients)
        for client_socket in clients:
            try:
                client_socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

    def shutdown(self):
        self._running = False
        if self.server_socket is not None:
            # Wakes up a thread blocked in accept()
            try:
                self.server_socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self.server_socket.close()
        self.close_clients()

    def handle_client(self, client_socket):
        try:
            data = self.read_head(client_socket)
            if not data:
                return

            if data.startswith(PREFACE):
                self.handle_http2(client_socket, data)
            else:
                self.handle_http1(client_socket, data)
        except OSError as e:
            _log.info("Connection error: %s", e)
        finally:
            with self._lock:
                self._clients.discard(client_socket)
            client_socket.close()

    def read_head(self, client_socket):
        data = b""
        while b"\r\n\r\n" not in data and len(data) <= MAX_HEAD_SIZE:
            chunk = client_socket.recv(4096)
            if not chunk:
                break
            data += chunk
            if data.startswith(PREFACE):
                break
        return data

    def handle_http1(self, client_socket, data):
        head, _, rest = data.partition(b"\r\n\r\n")
        request = parse_request_head(head)
        if request is None:
            self.send_http1_error(client_socket, 400, "Bad Request")
            return

        method, target, headers = request
        _log.info("HTTP/1.1 Request: %s %s", method, target)
        if method != 'GET':
            self.send_http1_error(client_socket, 405, "Method Not Allowed")
            return

        url_path = parse_url(target)
        if not url_path:
            self.send_http1_error(client_socket, 400, "Bad Request")
            return

        upgrade = headers.get("upgrade", "").lower() == "h2c"
        if upgrade and self.allow_upgrade and "http2-settings" in headers:
            self.handle_upgrade(client_socket, url_path, headers, rest)
        else:
            self.handle_http1_request(client_socket, url_path, headers)

    def handle_http1_request(self, client_socket, url_path, request_headers):
        status, content, headers = self.load(url_path, request_headers.get("if-none-match"))

        response = f"HTTP/1.1 {status} {REASONS[status]}\r\n"
        for key, value in headers:
            response += f"{key}: {value}\r\n"
        response += "Connection: close\r\n\r\n"
        client_socket.sendall(response.encode() + content)

    def send_http1_error(self, client_socket, status_code, message):
        response = (
            f"HTTP/1.1 {status_code} {message}\r\n"
            f"Content-Type: text/plain\r\n"
            f"Content-Length: {len(message)}\r\n"
            f"Connection: close\r\n\r\n"
            f"{message}"
        ).encode()
        client_socket.sendall(response)

    def handle_upgrade(self, client_socket, url_path, request_headers, initial_data):
        h2_connection = H2Connection(config=H2Configuration(client_side=False, header_encoding="utf-8"))
        try:
            h2_connection.initiate_upgrade_connection(request_headers["http2-settings"])
        except (ProtocolError, InvalidFrameError, ValueError, binascii.Error) as e:
            _log.info("Rejecting upgrade: %s", e)
            self.send_http1_error(client_socket, 400, "Bad Request")
            return

        client_socket.sendall(SWITCHING_PROTOCOLS + h2_connection.data_to_send())
        _log.info("Switched to HTTP/2 (h2c)")

        # The upgrade request itself is answered on stream 1.
        pending = {}
        self.handle_http2_request(h2_connection, 1, url_path, request_headers, pending)
        client_socket.sendall(h2_connection.data_to_send())

        self.serve_http2(client_socket, h2_connection, initial_data, pending)

    def handle_http2(self, client_socket, initial_data):
        _log.info("Initializing HTTP/2 Connection")
        h2_connection = H2Connection(config=H2Configuration(client_side=False, header_encoding="utf-8"))
        h2_connection.initiate_connection()
        client_socket.sendall(h2_connection.data_to_send())
        _log.info("Sent HTTP/2 Preface")

        self.serve_http2(client_socket, h2_connection, initial_data, {})

    def serve_http2(self, client_socket, h2_connection, data, pending):
        """Runs the HTTP/2 connection until the client goes away. `pending`
        holds response bodies still waiting for flow-control window.
        """
        while True:
            try:
                events = h2_connection.receive_data(data) if data else []
            except ProtocolError as e:
                _log.info("Error in HTTP/2 connection: %s", e)
                client_socket.sendall(h2_connection.data_to_send())
                break

            for event in events:
                if isinstance(event, RequestReceived):
                    headers = dict(event.headers)
                    path = parse_url(headers.get(':path', '/'))
                    method = headers.get(':method', 'GET')
                    _log.info("HTTP/2 Request: %s %s on stream %d", method, path, event.stream_id)

                    if method != 'GET':
                        self.send_http2_error(h2_connection, event.stream_id, 405, "Method Not Allowed")
                    elif path is None:
                        self.send_http2_error(h2_connection, event.stream_id, 400, "Bad Request")
                    else:
                        self.handle_http2_request(h2_connection, event.stream_id, path, headers, pending)

                elif isinstance(event, DataReceived):
                    h2_connection.acknowledge_received_data(event.flow_controlled_length, event.stream_id)

                elif isinstance(event, WindowUpdated):
                    self.flush_pending(h2_connection, pending)

                elif isinstance(event, StreamReset):
                    pending.pop(event.stream_id, None)

                elif isinstance(event, ConnectionTerminated):
                    _log.info("Client closed the HTTP/2 connection")
                    return

            to_send = h2_connection.data_to_send()
            if to_send:
                _log.debug("Sending data to client: %d bytes", len(to_send))
                client_socket.sendall(to_send)

            data = client_socket.recv(65535)
            if not data:
                _log.info("Client disconnected or no more data.")
                break

    def handle_http2_request(self, h2_connection, stream_id, path, request_headers, pending):
        status, content, headers = self.load(path, request_headers.get("if-none-match"))

        h2_connection.send_headers(
            stream_id,
            [(":status", str(status))] + [(key.lower(), value) for key, value in headers],
            end_stream=not content,
        )
        if content:
            pending[stream_id] = content
            self.flush_pending(h2_connection, pending)
        _log.info("HTTP/2 Response %d sent for %s on stream %d", status, path, stream_id)

    def flush_pending(self, h2_connection, pending):
        for stream_id, content in list(pending.items()):
            try:
                window = h2_connection.local_flow_control_window(stream_id)
                while content and window > 0:
                    size = min(window, h2_connection.max_outbound_frame_size, len(content))
                    h2_connection.send_data(stream_id, content[:size])
                    content = content[size:]
                    window = h2_connection.local_flow_control_window(stream_id)
            except StreamClosedError:
                del pending[stream_id]
                continue

            if content:
                pending[stream_id] = content
            else:
                del pending[stream_id]
                h2_connection.end_stream(stream_id)

    def send_http2_error(self, h2_connection, stream_id, status_code, message):
        _log.info("Sending HTTP/2 error %d: %s", status_code, message)
        h2_connection.send_headers(
            stream_id,
            [
                (":status", str(status_code)),
                ("content-type", "text/plain"),
                ("content-length", str(len(message))),
            ]
        )
        h2_connection.send_data(stream_id, message.encode())
        h2_connection.end_stream(stream_id)

    def load(self, url_path, etag=None):
        """Returns `(status, content, headers)` for a GET of `url_path`."""
        file_path = os.path.realpath(os.path.join(self.root, url_path.lstrip('/')))
        if os.path.commonpath([self.root, file_path]) != self.root or not os.path.isfile(file_path):
            message = REASONS[404]
            return 404, message.encode(), [("Content-Type", "text/plain"), ("Content-Length", str(len(message)))]

        try:
            mtime = os.path.getmtime(file_path)
            cached = self.file_cache.get(file_path)
            if cached is None or cached[0] != mtime:
                with open(file_path, 'rb') as f:
                    content = f.read()
                cached = self.file_cache[file_path] = (mtime, content, {
                    "Last-Modified": get_last_modified(file_path),
                    "ETag": generate_etag(content),
                })
        except OSError as e:
            _log.info("Error reading file %s: %s", file_path, e)
            message = REASONS[500]
            return 500, message.encode(), [("Content-Type", "text/plain"), ("Content-Length", str(len(message)))]

        _, content, file_headers = cached
        headers = [("Content-Type", get_mime_type(file_path))] + list(file_headers.items())
        if etag is not None and etag == file_headers["ETag"]:
            return 304, b"", headers
        return 200, content, headers + [("Content-Length", str(len(content)))]


def main(argv=None):
    parser = argparse.ArgumentParser(prog="h2c-server", description="Serve static files over HTTP/1.1 and h2c")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=80)
    parser.add_argument("--root", default=".", help="directory to serve files from")
    parser.add_argument("--no-upgrade", action="store_true", help="answer h2c upgrade requests with plain HTTP/1.1")
    parser.add_argument("-v", "--verbose", action="store_true", help="log every frame sent")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    server = Server(args.host, args.port, args.root, allow_upgrade=not args.no_upgrade)
    server.start()
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        _log.info("Shutting down...")
    finally:
        server.shutdown()


if __name__ == '__main__':
    main()
