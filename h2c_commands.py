"""Handlers for the REPL commands.

Each handler takes the client, the terminal it runs in and the command's
argument tokens. It returns the line to show the operator, or raises an
`H2cError` subclass.
"""

import logging
from functools import partial

from h2c_engine import EngineError, Request
from h2c_errors import (
    InvalidMethod,
    InvalidSettingFormat,
    MissingPath,
    PingFailed,
    RequestFailed,
    UsageError,
)

_log = logging.getLogger(__name__)


def connect_cmd(client, term, *args):
    if len(args) != 1:
        raise UsageError("missing host" if not args else "connect takes a single host[:port]")
    try:
        client.connect(args[0])
    finally:
        term.status = client.status
    return "create a connection to server"


def close_cmd(client, term, *args):
    client.close()
    term.status = client.status
    return "connection closed"


def send_cmd(client, term, *args):
    """send PING | send GET <path>"""
    try:
        conn = client.ensure_usable()
    finally:
        term.status = client.status

    if not args:
        raise InvalidMethod("no methods")

    match args[0]:
        case "PING":
            try:
                conn.ping()
            except EngineError as e:
                raise PingFailed(f"PING failed {e}") from e
        case "GET":
            if len(args) < 2:
                raise MissingPath("GET method must have a PATH")
            path = args[1] if args[1].startswith("/") else "/" + args[1]
            try:
                response = conn.round_trip(Request("GET", client.url + path))
            except EngineError as e:
                raise RequestFailed(f"send GET request failed {e}") from e
            term.write_info_message(f"status code: {response.status}")
            term.write_info_message(f"data: {response.body.decode('utf-8', errors='replace')}")
        case _:
            raise InvalidMethod(f"Invalid method {args[0]}")

    return "send request success"


def settings_cmd(client, term, *args):
    """settings [name=value ...]

    Tokens are applied in order and the first bad one stops the command.
    Tokens applied before it stay applied.
    """
    for token in args:
        name, _, value = token.partition("=")
        if "=" not in token or not value or "=" in value:
            raise InvalidSettingFormat(f"The cmd {token} is invalid format(setting=value)")
        if client.settings.apply(name, value):
            term.write_info_message(f"setting {name} was updated to {value}")

    if client.is_usable():
        try:
            client.push_settings()
        except EngineError as e:
            _log.warning("Sending SETTINGS failed: %s", e)
            term.write_info_message(f"settings were not sent to the server: {e}")
    term.status = client.status

    return client.settings.describe()


COMMANDS = {
    "connect": connect_cmd,
    "settings": settings_cmd,
    "send": send_cmd,
    "close": close_cmd,
}


def register(term, client):
    for name, handler in COMMANDS.items():
        term.add_cmd(name, partial(handler, client))
