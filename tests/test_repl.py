import io

import h2c_commands
import h2c_repl
from h2c_client import H2cClient
from h2c_errors import H2cError
from h2c_repl import Terminal


def run_lines(text, client=None):
    out = io.StringIO()
    term = Terminal(io.StringIO(text), out)
    h2c_commands.register(term, client or H2cClient())
    term.run()
    return term, out.getvalue()


def test_help_lists_commands() -> None:
    _, output = run_lines("help\n")

    assert "commands: close, connect, send, settings, help, exit" in output


def test_command_result_is_printed() -> None:
    _, output = run_lines("settings maxStream=10\n")

    assert "info: setting maxStream was updated to 10" in output
    assert "Max Concurrent Streams: 10 |" in output


def test_errors_do_not_stop_the_loop() -> None:
    _, output = run_lines("send PING\nbogus\nsettings 'unbalanced\nclose\nsettings\n")

    assert "error: please use connect cmd to connect to server" in output
    assert "error: unknown command bogus" in output
    assert "error: No closing quotation" in output
    assert "error: no connection" in output
    assert output.rstrip().endswith("h2c>")
    assert "Enable Push: false" in output


def test_bad_host_does_not_stop_the_loop() -> None:
    _, output = run_lines("connect " + "a" * 64 + ".test\nsettings\n")

    assert "error: invalid host" in output
    assert "Enable Push: false" in output


def test_exit_stops_reading() -> None:
    _, output = run_lines("exit\nsettings maxStream=10\n")

    assert "Max Concurrent Streams" not in output


def test_prompt_shows_status(server) -> None:
    client = H2cClient()
    try:
        _, output = run_lines(f"connect 127.0.0.1:{server.port}\nclose\n", client)
    finally:
        client.shutdown()

    assert "create a connection to server" in output
    assert f"[connected to 127.0.0.1:{server.port}] h2c> connection closed" in output


def test_operate_cmd_unknown() -> None:
    term = Terminal(io.StringIO(), io.StringIO())

    try:
        term.operate_cmd("nope")
    except H2cError as e:
        assert "unknown command" in str(e)
    else:
        raise AssertionError("expected H2cError")


def test_main_reports_dial_failure(monkeypatch, capsys, closed_port) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("settings\nexit\n"))

    h2c_repl.main(["--prompt", "test", f"127.0.0.1:{closed_port}"])

    output = capsys.readouterr().out
    assert f"error: dial to server [127.0.0.1:{closed_port}] failed" in output
    assert "test> Enable Push: false" in output
