"""
Unit tests for the persistent osqueryi extension session.

The session runs against a fake interactive process and a fake clock, so
warm-up, handshake and query deadlines are exercised without waiting.
"""

import json
from pathlib import Path

import pytest

from conftest import FakeClock, FakeProcessHandle, FakeRunner, session_tables
from reportmate.models.query import ExtensionState
from reportmate.osquery.session import (
    EXTENSIONS_TIMEOUT_SECONDS,
    HANDSHAKE_QUERY,
    ExtensionSession,
)
from reportmate.validation import ExtensionHandshakeError, QueryErrorKind, QueryExecutionError

MDM_ROWS = [{"enrolled": "true", "server_url": "https://mdm.example.com"}]


def _no_simple_runs(args):
    raise AssertionError(f"unexpected one-shot command: {args}")


def make_session(responder, clock=None, exits_on_request=True, query_timeout=30.0,
                 handshake_timeout=30.0, spawn_error=None):
    clock = clock or FakeClock()
    handle = FakeProcessHandle(clock, responder, exits_on_request=exits_on_request)
    runner = FakeRunner(_no_simple_runs, handle=handle, spawn_error=spawn_error)
    session = ExtensionSession(
        "/usr/local/bin/osqueryi",
        Path("/usr/local/reportmate/macadmins_extension.ext"),
        runner,
        query_timeout=query_timeout,
        sleep=clock.sleep,
        clock=clock,
        warmup_seconds=7.0,
        handshake_timeout=handshake_timeout,
    )
    return session, handle, runner, clock


@pytest.mark.unit
class TestSessionStartup:
    """Test cases for warm-up and handshake."""

    def test_ready_after_handshake(self):
        session, handle, runner, clock = make_session(session_tables({"mdm": MDM_ROWS}))

        session.start()

        assert session.state is ExtensionState.READY
        assert session.handshake_attempts == 1
        assert clock.sleeps == [7.0]
        assert handle.statements == [HANDSHAKE_QUERY]
        session.close()

    def test_spawn_arguments(self):
        session, handle, runner, clock = make_session(session_tables({}))

        session.start()
        args = runner.spawns[0]

        assert args[:2] == ["/usr/local/bin/osqueryi", "--json"]
        assert args[args.index("--extension") + 1] == "/usr/local/reportmate/macadmins_extension.ext"
        assert args[args.index("--extensions_timeout") + 1] == str(EXTENSIONS_TIMEOUT_SECONDS)
        assert args[args.index("--extensions_socket") + 1] == str(session.socket_path)
        session.close()

    def test_unregistered_extension_degrades_at_deadline(self):
        session, handle, runner, clock = make_session(session_tables({}, registered=False),
                                                      handshake_timeout=2.0)
        started = clock()

        with pytest.raises(ExtensionHandshakeError):
            session.start()

        assert session.state is ExtensionState.DEGRADED
        assert session.handshake_attempts == 1
        assert len(runner.spawns) == 1
        assert clock() - started >= 2.0 + 7.0
        assert handle.exited

    def test_silent_process_times_out_once(self):
        session, handle, runner, clock = make_session(lambda statement: None)

        with pytest.raises(ExtensionHandshakeError) as exc_info:
            session.start()

        assert "30.0s" in str(exc_info.value)
        assert session.state is ExtensionState.DEGRADED
        assert handle.statements == [HANDSHAKE_QUERY]
        assert clock.sleeps == [7.0]

    def test_process_that_died_fails_handshake_quickly(self):
        session, handle, runner, clock = make_session(session_tables({}))
        handle.exited = True
        started = clock()

        with pytest.raises(ExtensionHandshakeError):
            session.start()

        assert session.state is ExtensionState.DEGRADED
        assert clock() - started == pytest.approx(7.0)

    def test_launch_failure(self):
        session, handle, runner, clock = make_session(session_tables({}),
                                                      spawn_error=FileNotFoundError("osqueryi"))

        with pytest.raises(ExtensionHandshakeError):
            session.start()

        assert session.state is ExtensionState.DEGRADED
        assert clock.sleeps == []
        assert session.socket_path is None

    def test_cannot_start_twice(self):
        session, handle, runner, clock = make_session(session_tables({}))
        session.start()

        with pytest.raises(ExtensionHandshakeError):
            session.start()

        assert len(runner.spawns) == 1
        session.close()

    def test_degraded_is_sticky(self):
        session, handle, runner, clock = make_session(session_tables({}, registered=False),
                                                      handshake_timeout=1.0)
        with pytest.raises(ExtensionHandshakeError):
            session.start()

        with pytest.raises(ExtensionHandshakeError):
            session.start()

        assert session.state is ExtensionState.DEGRADED
        assert session.handshake_attempts == 1


@pytest.mark.unit
class TestSessionQueries:
    """Test cases for queries through a ready session."""

    def test_query_returns_rows(self):
        session, handle, runner, clock = make_session(session_tables({"mdm": MDM_ROWS}))
        session.start()

        rows = session.query("SELECT * FROM mdm")

        assert rows == MDM_ROWS
        assert handle.statements[-1] == "SELECT * FROM mdm;"
        session.close()

    def test_banner_before_results_is_skipped(self):
        def responder(statement):
            if "osquery_extensions" in statement:
                return '[W1018] extension registered\n[\n  {"name": "macadmins"}\n]\n', ""
            return "osquery> " + json.dumps(MDM_ROWS) + "\n", ""

        session, handle, runner, clock = make_session(responder)
        session.start()

        assert session.query("SELECT * FROM mdm;") == MDM_ROWS
        session.close()

    def test_stderr_error_fails_fast(self):
        session, handle, runner, clock = make_session(session_tables({"mdm": MDM_ROWS}))
        session.start()
        before = clock()

        with pytest.raises(QueryExecutionError) as exc_info:
            session.query("SELECT * FROM nonexistent")

        assert exc_info.value.kind is QueryErrorKind.EXECUTION
        assert "no such table" in exc_info.value.detail
        assert clock() == before
        assert session.is_ready
        session.close()

    def test_stderr_noise_is_not_an_error(self):
        def responder(statement):
            if "osquery_extensions" in statement:
                return '[{"name": "macadmins"}]\n', ""
            return json.dumps(MDM_ROWS), "W1018 15:02:11 warning: slow table\n"

        session, handle, runner, clock = make_session(responder)
        session.start()

        assert session.query("SELECT * FROM mdm") == MDM_ROWS
        session.close()

    def test_query_timeout_degrades(self):
        def responder(statement):
            if "osquery_extensions" in statement:
                return '[{"name": "macadmins"}]\n', ""
            return None

        session, handle, runner, clock = make_session(responder, query_timeout=5.0)
        session.start()

        with pytest.raises(QueryExecutionError) as exc_info:
            session.query("SELECT * FROM munki_info")

        assert exc_info.value.kind is QueryErrorKind.TIMEOUT
        assert session.state is ExtensionState.DEGRADED
        assert handle.exited

    def test_query_requires_ready_session(self):
        session, handle, runner, clock = make_session(session_tables({}))

        with pytest.raises(QueryExecutionError) as exc_info:
            session.query("SELECT * FROM mdm")

        assert "unstarted" in exc_info.value.detail
        assert runner.spawns == []


@pytest.mark.unit
class TestSessionTeardown:
    """Test cases for closing the session."""

    def test_close_sends_exit_and_removes_socket_dir(self):
        session, handle, runner, clock = make_session(session_tables({}))
        session.start()
        socket_dir = session.socket_path.parent
        assert socket_dir.is_dir()

        session.close()

        assert handle.sent[-1] == ".exit\n"
        assert handle.stdin_closed
        assert not handle.terminated
        assert not socket_dir.exists()
        assert session.state is ExtensionState.TERMINATED

    def test_close_terminates_process_that_ignores_exit(self):
        session, handle, runner, clock = make_session(session_tables({}), exits_on_request=False)
        session.start()

        session.close()

        assert handle.terminated

    def test_close_is_idempotent(self):
        session, handle, runner, clock = make_session(session_tables({}))
        session.start()

        session.close()
        session.close()

        assert handle.sent.count(".exit\n") == 1

    def test_close_before_start(self):
        session, handle, runner, clock = make_session(session_tables({}))

        session.close()

        assert session.state is ExtensionState.UNSTARTED
        assert handle.sent == []
