"""
Persistent osqueryi session with the extension loaded.

Loading the extension costs a fixed warm-up delay, so one interactive
osqueryi process is started per engine and every extension query is written
to its stdin. Results are cut out of the stdout transcript by bracket
matching.

State machine:
    UNSTARTED -> STARTING -> AWAITING_HANDSHAKE -> READY -> TERMINATED
    any live state -> DEGRADED (sticky) -> TERMINATED
"""

import logging
import shutil
import tempfile
import time
import weakref
from pathlib import Path
from typing import Callable, List, Optional

from ..models.query import ExtensionState, Record
from ..system.commands import ProcessHandle, ProcessRunner
from ..validation import ExtensionHandshakeError, QueryErrorKind, QueryExecutionError
from .extension import extract_json_array

logger = logging.getLogger(__name__)

EXTENSION_WARMUP_SECONDS = 7.0
HANDSHAKE_TIMEOUT_SECONDS = 30.0
EXTENSIONS_TIMEOUT_SECONDS = 15
READ_POLL_SECONDS = 0.25
EXIT_WAIT_SECONDS = 2.0

HANDSHAKE_QUERY = "SELECT name FROM osquery_extensions WHERE name != 'core';"


class _SessionResources:
    """Process handle and socket directory released at teardown."""

    def __init__(self) -> None:
        self.handle: Optional[ProcessHandle] = None
        self.socket_dir: Optional[Path] = None


def _teardown(resources: _SessionResources) -> None:
    handle, resources.handle = resources.handle, None
    if handle is not None:
        try:
            handle.send(".exit\n")
        except (OSError, ValueError):
            pass
        handle.close_stdin()
        if handle.wait(EXIT_WAIT_SECONDS) is None:
            logger.debug(f"osqueryi session (PID {handle.pid}) ignored .exit, terminating")
            handle.terminate()
    socket_dir, resources.socket_dir = resources.socket_dir, None
    if socket_dir is not None:
        shutil.rmtree(socket_dir, ignore_errors=True)


class ExtensionSession:
    """
    One interactive osqueryi process with the extension loaded.

    A session that fails its handshake, dies, or times out on a query moves
    to DEGRADED and is never restarted.
    """

    def __init__(
        self,
        osquery_path: str,
        extension_path: Path,
        runner: ProcessRunner,
        query_timeout: float,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        warmup_seconds: float = EXTENSION_WARMUP_SECONDS,
        handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS,
    ):
        self.osquery_path = osquery_path
        self.extension_path = extension_path
        self.query_timeout = query_timeout
        self._runner = runner
        self._sleep = sleep
        self._clock = clock
        self._warmup_seconds = warmup_seconds
        self._handshake_timeout = handshake_timeout
        self._state = ExtensionState.UNSTARTED
        self._buffer = ""
        self._resources = _SessionResources()
        self._finalizer = weakref.finalize(self, _teardown, self._resources)
        self.handshake_attempts = 0

    @property
    def state(self) -> ExtensionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ExtensionState.READY

    @property
    def socket_path(self) -> Optional[Path]:
        if self._resources.socket_dir is None:
            return None
        return self._resources.socket_dir / "osquery.em"

    def start(self) -> None:
        """
        Launch osqueryi, wait out the warm-up and confirm the extension registered.

        Raises:
            ExtensionHandshakeError: If the process cannot start or the
                extension does not register within the handshake timeout.
                The session is DEGRADED afterwards.
        """
        if self._state is not ExtensionState.UNSTARTED:
            raise ExtensionHandshakeError(f"Extension session cannot start from state {self._state.value}")

        self._state = ExtensionState.STARTING
        self.handshake_attempts += 1
        self._resources.socket_dir = Path(tempfile.mkdtemp(prefix="reportmate-osquery-"))
        args = [
            self.osquery_path,
            "--json",
            "--extension", str(self.extension_path),
            "--extensions_timeout", str(EXTENSIONS_TIMEOUT_SECONDS),
            "--extensions_socket", str(self.socket_path),
        ]
        try:
            self._resources.handle = self._runner.spawn(args)
        except OSError as e:
            self._degrade(f"cannot launch {self.osquery_path}: {e}")
            raise ExtensionHandshakeError(f"Failed to start osqueryi session: {e}") from e

        logger.debug(f"Waiting {self._warmup_seconds}s for osquery extension warm-up")
        self._sleep(self._warmup_seconds)
        self._state = ExtensionState.AWAITING_HANDSHAKE

        deadline = self._clock() + self._handshake_timeout
        last_error = "extension not registered"
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            try:
                if self._exchange(HANDSHAKE_QUERY, remaining):
                    self._state = ExtensionState.READY
                    logger.info(f"osquery extension ready: {self.extension_path}")
                    return
            except QueryExecutionError as e:
                last_error = e.detail
                if e.kind is QueryErrorKind.TIMEOUT or self._process_exited():
                    break
            self._sleep(READ_POLL_SECONDS)

        self._degrade(f"handshake failed: {last_error}")
        raise ExtensionHandshakeError(
            f"osquery extension did not register within {self._handshake_timeout}s: {last_error}"
        )

    def query(self, sql: str) -> List[Record]:
        """
        Run one query through the session.

        Raises:
            QueryExecutionError: On query errors. TIMEOUT and a dead process
                also move the session to DEGRADED.
        """
        if self._state is not ExtensionState.READY:
            raise QueryExecutionError(QueryErrorKind.EXECUTION,
                                      f"extension session is {self._state.value}", query=sql)
        try:
            return self._exchange(sql, self.query_timeout)
        except QueryExecutionError as e:
            if e.kind is QueryErrorKind.TIMEOUT or self._process_exited():
                self._degrade(str(e))
            raise

    def close(self) -> None:
        """Send .exit, terminate if needed and remove the socket directory."""
        self._finalizer()
        if self._state is not ExtensionState.UNSTARTED:
            self._state = ExtensionState.TERMINATED

    def _process_exited(self) -> bool:
        handle = self._resources.handle
        return handle is None or handle.poll() is not None

    def _degrade(self, reason: str) -> None:
        logger.warning(f"osquery extension session degraded, using simple queries: {reason}")
        self._finalizer()
        self._state = ExtensionState.DEGRADED

    def _exchange(self, sql: str, timeout: float) -> List[Record]:
        handle = self._resources.handle
        if handle is None:
            raise QueryExecutionError(QueryErrorKind.EXECUTION, "session process is not running", query=sql)

        statement = sql.strip()
        if not statement.endswith(";"):
            statement += ";"
        handle.drain_stderr()
        try:
            handle.send(statement + "\n")
        except (OSError, ValueError) as e:
            raise QueryExecutionError(QueryErrorKind.EXECUTION, f"session stdin closed: {e}", query=sql) from e

        deadline = self._clock() + timeout
        while True:
            found = extract_json_array(self._buffer)
            if found is not None:
                rows, end = found
                self._buffer = self._buffer[end:]
                return [row for row in rows if isinstance(row, dict)]

            errors = [line.strip() for line in handle.drain_stderr().splitlines()
                      if line.strip().lower().startswith("error")]
            if errors:
                raise QueryExecutionError(QueryErrorKind.EXECUTION, errors[0], query=sql)

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise QueryExecutionError(QueryErrorKind.TIMEOUT, f"no result within {timeout}s", query=sql)

            chunk = handle.read(min(READ_POLL_SECONDS, remaining))
            if chunk is None:
                raise QueryExecutionError(QueryErrorKind.EXECUTION, "osqueryi session exited", query=sql)
            self._buffer += chunk
