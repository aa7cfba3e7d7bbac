"""
Pytest configuration and shared fixtures for the ReportMate test suite.

This module provides common fixtures, fakes for the process runner and the
HTTP session, and test configuration for all test modules.
"""

import json
import plistlib
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from unittest.mock import Mock

import pytest

# Add src to Python path for testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from reportmate.config import ConfigurationManager, SourcePaths  # noqa: E402
from reportmate.models.config import ConfigurationSnapshot  # noqa: E402
from reportmate.osquery.extension import referenced_tables  # noqa: E402
from reportmate.system.commands import CommandResult  # noqa: E402


# ============================================================================
# Test Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers and settings."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "e2e: mark test as an end-to-end test")


# ============================================================================
# Core Fixtures
# ============================================================================


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp_path = tempfile.mkdtemp()
    yield Path(temp_path)
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def source_paths(temp_dir):
    """Plist locations inside the temp directory."""
    return SourcePaths(
        user_file=temp_dir / "user" / "com.github.reportmate.plist",
        system_file=temp_dir / "system" / "com.github.reportmate.plist",
        managed_file=temp_dir / "managed" / "com.github.reportmate.plist",
    )


@pytest.fixture
def write_plist():
    """Write a dictionary to a plist file, creating parent directories."""

    def _write(path: Path, values: Dict[str, Any]) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            plistlib.dump(values, f)
        return path

    return _write


@pytest.fixture
def make_manager(source_paths):
    """Build a ConfigurationManager over the temp plist paths and a fake environment."""

    def _make(environ: Optional[Dict[str, str]] = None, **kwargs) -> ConfigurationManager:
        return ConfigurationManager(paths=source_paths, environ=environ or {}, **kwargs)

    return _make


@pytest.fixture
def snapshot():
    """Snapshot pointing at a test API with the extension disabled."""
    return ConfigurationSnapshot(
        api_url="https://reportmate.example.com",
        api_key="s3cret",
        extension_enabled=False,
        timeout=30,
    )


# ============================================================================
# Fakes
# ============================================================================


class FakeClock:
    """Monotonic clock that only moves when slept on or advanced."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProcessHandle:
    """
    Interactive process stand-in.

    ``responder`` receives each statement written to stdin and returns
    ``(stdout, stderr)`` or None for no output at all.
    """

    def __init__(self, clock: FakeClock,
                 responder: Callable[[str], Optional[Tuple[str, str]]],
                 exits_on_request: bool = True):
        self.clock = clock
        self.responder = responder
        self.exits_on_request = exits_on_request
        self.pid = 4242
        self.sent: List[str] = []
        self.stdout: List[str] = []
        self.stderr = ""
        self.exited = False
        self.stdin_closed = False
        self.terminated = False

    def send(self, text: str) -> None:
        if self.stdin_closed or self.exited:
            raise BrokenPipeError("stdin closed")
        self.sent.append(text)
        if text.strip() == ".exit":
            if self.exits_on_request:
                self.exited = True
            return
        response = self.responder(text.strip())
        if response is None:
            return
        out, err = response
        if out:
            self.stdout.append(out)
        self.stderr += err

    def read(self, timeout: float) -> Optional[str]:
        if self.stdout:
            return self.stdout.pop(0)
        if self.exited:
            return None
        self.clock.advance(timeout)
        return ""

    def drain_stderr(self) -> str:
        text, self.stderr = self.stderr, ""
        return text

    def poll(self) -> Optional[int]:
        return 0 if self.exited else None

    def close_stdin(self) -> None:
        self.stdin_closed = True

    def wait(self, timeout: float) -> Optional[int]:
        return 0 if self.exited else None

    def terminate(self) -> None:
        self.terminated = True
        self.exited = True

    @property
    def statements(self) -> List[str]:
        return [s.strip() for s in self.sent if s.strip() != ".exit"]


class FakeRunner:
    """
    ProcessRunner stand-in.

    ``on_run`` maps an argument list to a CommandResult; ``handle`` is
    returned from ``spawn``.
    """

    def __init__(self, on_run: Callable[[List[str]], CommandResult],
                 handle: Optional[FakeProcessHandle] = None,
                 spawn_error: Optional[OSError] = None):
        self.on_run = on_run
        self.handle = handle
        self.spawn_error = spawn_error
        self.runs: List[List[str]] = []
        self.spawns: List[List[str]] = []

    def run(self, args, timeout=None, env=None) -> CommandResult:
        arg_list = [str(a) for a in args]
        self.runs.append(arg_list)
        return self.on_run(arg_list)

    def run_shell(self, command: str, timeout=None) -> CommandResult:
        return self.run(["/bin/bash", "-c", command], timeout=timeout)

    def spawn(self, args, env=None) -> FakeProcessHandle:
        self.spawns.append([str(a) for a in args])
        if self.spawn_error is not None:
            raise self.spawn_error
        assert self.handle is not None, "no fake handle configured"
        return self.handle

    @property
    def queries(self) -> List[str]:
        """Query texts passed to ``osqueryi --json``."""
        return [args[-1] for args in self.runs if len(args) >= 3 and args[1] == "--json"]


def osquery_tables(tables: Dict[str, List[Dict[str, Any]]]) -> Callable[[List[str]], CommandResult]:
    """
    Simple-tier responder serving fixed rows per table.

    A query against an unknown table fails like osqueryi does.
    """

    def _respond(args: List[str]) -> CommandResult:
        if args[1:] == ["--version"]:
            return CommandResult(args, 0, "osqueryi version 5.10.2\n", "")
        query = args[-1]
        names = referenced_tables(query)
        table = names[0] if names else ""
        if table not in tables:
            return CommandResult(args, 1, "", f"Error: no such table: {table}\n")
        return CommandResult(args, 0, json.dumps(tables[table]), "")

    return _respond


def session_tables(tables: Dict[str, List[Dict[str, Any]]],
                   registered: bool = True) -> Callable[[str], Optional[Tuple[str, str]]]:
    """Extension-session responder: handshake plus fixed rows per table."""

    def _respond(statement: str) -> Optional[Tuple[str, str]]:
        if "osquery_extensions" in statement:
            rows = [{"name": "macadmins"}] if registered else []
            return json.dumps(rows, indent=2) + "\n", ""
        names = referenced_tables(statement)
        table = names[0] if names else ""
        if table not in tables:
            return "", f"Error: no such table: {table}\n"
        return json.dumps(tables[table], indent=2) + "\n", ""

    return _respond


@pytest.fixture
def fake_clock():
    return FakeClock()


class FakeResponse:
    def __init__(self, status_code: int, text: str):
        self.status_code = status_code
        self.text = text


@pytest.fixture
def fake_http_session():
    """requests.Session stand-in; set ``.post.return_value`` / ``.get.return_value``."""
    session = Mock()
    session.headers = {}
    session.post.return_value = FakeResponse(200, json.dumps({"success": True}))
    session.get.return_value = FakeResponse(200, "OK")
    return session
