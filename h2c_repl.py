"""Interactive h2c client.

    $ h2c localhost:8080
    [connected to localhost:8080] h2c> send GET /index.html
"""

import argparse
import logging
import shlex
import sys

import h2c_commands
from h2c_client import H2cClient
from h2c_errors import H2cError

_log = logging.getLogger(__name__)


class Terminal:
    def __init__(self, stdin, stdout, prompt="h2c"):
        self._stdin = stdin
        self._stdout = stdout
        self.prompt = prompt
        self.status = ""
        self._cmds = {}

    def add_cmd(self, name, handler):
        self._cmds[name] = handler

    def operate_cmd(self, name, *args):
        """Runs a registered command. `H2cError` is left to the caller."""
        if name not in self._cmds:
            raise H2cError(f"unknown command {name}")
        return self._cmds[name](self, *args)

    def write_info_message(self, message):
        self.write_line(f"info: {message}")

    def write_error(self, message):
        self.write_line(f"error: {message}")

    def run(self):
        while True:
            try:
                line = self._readline()
            except KeyboardInterrupt:
                self.write_line("")
                continue
            if line is None:
                break

            try:
                tokens = shlex.split(line)
            except ValueError as e:
                self.write_error(e)
                continue
            if not tokens:
                continue

            name, *args = tokens
            if name in ("exit", "quit"):
                break
            if name == "help":
                self.write_line("commands: " + ", ".join(sorted(self._cmds)) + ", help, exit")
                continue

            try:
                result = self.operate_cmd(name, *args)
            except H2cError as e:
                _log.debug("%s failed", name, exc_info=True)
                self.write_error(e)
                continue
            if result:
                self.write_line(result)

    def _render_prompt(self):
        if self.status:
            return f"[{self.status}] {self.prompt}> "
        return f"{self.prompt}> "

    def _readline(self):
        """Returns the next input line, or None at end of input."""
        if self._stdin is sys.stdin and self._stdin.isatty():
            try:
                return input(self._render_prompt())
            except EOFError:
                return None

        self._stdout.write(self._render_prompt())
        self._stdout.flush()
        line = self._stdin.readline()
        if not line:
            return None
        return line.rstrip("\r\n")

    def write_line(self, text):
        self._stdout.write(f"{text}\n")
        self._stdout.flush()


def main(argv=None):
    parser = argparse.ArgumentParser(prog="h2c", description="Drive an HTTP/2 connection upgraded from cleartext HTTP/1.1")
    parser.add_argument("host", nargs="?", help="connect to host[:port] on start-up")
    parser.add_argument("--prompt", default="h2c", help="prompt shown in the REPL")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="log to stderr (-vv for frames)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=[logging.WARNING, logging.INFO, logging.DEBUG][min(args.verbose, 2)],
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    client = H2cClient()
    term = Terminal(sys.stdin, sys.stdout, args.prompt)
    h2c_commands.register(term, client)

    try:
        if args.host:
            try:
                term.write_line(term.operate_cmd("connect", args.host))
            except H2cError as e:
                term.write_error(e)
        term.run()
    finally:
        client.shutdown()


if __name__ == "__main__":
    main()
