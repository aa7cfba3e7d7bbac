"""
osquery execution engine.

Two tiers:

- Simple tier: one ``osqueryi --json <query>`` process per query.
- Extension tier: queries that reference macadmins extension tables go to a
  persistent ExtensionSession. When the session cannot be established the
  engine stays on the simple tier for the rest of its lifetime.

An engine is owned by one caller and runs queries strictly one at a time.
"""

import json
import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Set

from ..models.config import ConfigurationSnapshot
from ..models.query import ExtensionState, QueryResult, QueryTier, Record
from ..system.commands import ProcessRunner
from ..validation import (
    ExtensionHandshakeError,
    QueryErrorKind,
    QueryExecutionError,
    ValidationError,
    validate_identifier,
)
from .extension import EXTENSION_TABLES, query_uses_extension_tables, resolve_extension_path
from .session import EXTENSION_WARMUP_SECONDS, HANDSHAKE_TIMEOUT_SECONDS, ExtensionSession

logger = logging.getLogger(__name__)

VERSION_TIMEOUT_SECONDS = 30


def parse_query_output(stdout: str, query: str) -> List[Record]:
    """
    Parse ``osqueryi --json`` output.

    Raises:
        QueryExecutionError: OUTPUT_FORMAT if the output is not a JSON array of objects
    """
    text = stdout.strip()
    if not text:
        return []
    try:
        rows = json.loads(text)
    except ValueError as e:
        raise QueryExecutionError(QueryErrorKind.OUTPUT_FORMAT, f"invalid JSON output: {e}", query=query) from e
    if not isinstance(rows, list) or not all(isinstance(row, dict) for row in rows):
        raise QueryExecutionError(QueryErrorKind.OUTPUT_FORMAT,
                                  f"expected a JSON array of rows, got {type(rows).__name__}", query=query)
    return rows


class QueryEngine:
    """Runs osquery queries for the module processors."""

    def __init__(
        self,
        snapshot: ConfigurationSnapshot,
        runner: Optional[ProcessRunner] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        warmup_seconds: float = EXTENSION_WARMUP_SECONDS,
        handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS,
        extension_path: Optional[Path] = None,
    ):
        """
        Args:
            snapshot: Configuration supplying the osqueryi path, timeout and extension settings
            runner: Process runner, replaced by a fake in tests
            sleep: Blocking sleep used for the extension warm-up
            clock: Monotonic clock used for the handshake and query deadlines
            warmup_seconds: Fixed delay after starting the extension session
            handshake_timeout: Upper bound on waiting for the extension to register
            extension_path: Use this extension file instead of searching for one
        """
        self.osquery_path = snapshot.osquery_path
        self.timeout = snapshot.timeout
        self._runner = runner or ProcessRunner()
        self._sleep = sleep
        self._clock = clock
        self._warmup_seconds = warmup_seconds
        self._handshake_timeout = handshake_timeout
        self._available_tables: Set[str] = set()
        self._session: Optional[ExtensionSession] = None
        self._closed = False

        if not snapshot.extension_enabled:
            self.extension_path = None
            logger.debug("osquery extension disabled")
        else:
            self.extension_path = extension_path or resolve_extension_path(snapshot.extension_path or None)
            if self.extension_path is None:
                logger.debug("osquery extension enabled but not found, using simple queries only")

    def __enter__(self) -> "QueryEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def extension_state(self) -> ExtensionState:
        if self._session is None:
            return ExtensionState.DEGRADED if self.extension_path is None else ExtensionState.UNSTARTED
        return self._session.state

    @property
    def handshake_attempts(self) -> int:
        return self._session.handshake_attempts if self._session else 0

    def is_available(self) -> bool:
        """True if osqueryi runs and reports a version."""
        result = self._runner.run([self.osquery_path, "--version"], timeout=VERSION_TIMEOUT_SECONDS)
        return result.ok

    def get_version(self) -> str:
        """
        Return the osqueryi version string.

        Raises:
            QueryExecutionError: If osqueryi cannot be run
        """
        result = self._runner.run([self.osquery_path, "--version"], timeout=VERSION_TIMEOUT_SECONDS)
        if result.launch_failed:
            raise QueryExecutionError(QueryErrorKind.LAUNCH, result.stderr.strip())
        if not result.ok:
            raise QueryExecutionError(QueryErrorKind.EXECUTION,
                                      result.stderr.strip() or f"exit code {result.returncode}")
        return result.stdout.strip()

    def is_table_available(self, name: str) -> bool:
        """
        Check whether a table is registered.

        Positive answers are remembered; negative answers are checked again
        on the next call.
        """
        try:
            table = validate_identifier(name, field_name="table")
        except ValidationError as e:
            logger.warning(f"Invalid table name: {e}")
            return False
        if table in self._available_tables:
            return True

        probe = (f"SELECT name FROM osquery_registry "
                 f"WHERE registry = 'table' AND name = '{table}';")
        result = self._execute(probe, table, use_extension=table in EXTENSION_TABLES)
        if len(result) > 0:
            self._available_tables.add(table)
            return True
        return False

    def execute(self, query: str, key: Optional[str] = None) -> QueryResult:
        """
        Run a single query.

        Returns:
            QueryResult tagged with ``key`` (the query text if not given).
            Failures produce an empty result with the error attached.
        """
        return self._execute(query, key or query, use_extension=query_uses_extension_tables(query))

    def execute_batch(self, queries: Mapping[str, str]) -> Dict[str, QueryResult]:
        """
        Run queries one after another.

        Returns:
            One result per key in input order; a failed query yields an
            empty result
        """
        results: Dict[str, QueryResult] = {}
        total = len(queries)
        for index, (key, query) in enumerate(queries.items(), start=1):
            logger.debug(f"Query {index}/{total}: {key}")
            results[key] = self.execute(query, key)
        return results

    def close(self) -> None:
        """Tear down the extension session, if one was started."""
        self._closed = True
        if self._session is not None:
            self._session.close()

    def _execute(self, query: str, key: str, use_extension: bool) -> QueryResult:
        if use_extension:
            session = self._ready_session()
            if session is not None:
                try:
                    return QueryResult(key=key, records=session.query(query), tier=QueryTier.EXTENSION)
                except QueryExecutionError as e:
                    if session.is_ready:
                        logger.warning(f"Query '{key}' failed: {e}")
                        return QueryResult.failed(key, e, tier=QueryTier.EXTENSION)
                    logger.debug(f"Retrying '{key}' with a simple query after session loss")

        try:
            return QueryResult(key=key, records=self._run_simple(query), tier=QueryTier.SIMPLE)
        except QueryExecutionError as e:
            logger.warning(f"Query '{key}' failed: {e}")
            return QueryResult.failed(key, e)

    def _ready_session(self) -> Optional[ExtensionSession]:
        if self.extension_path is None or self._closed:
            return None
        if self._session is None:
            self._session = ExtensionSession(
                self.osquery_path,
                self.extension_path,
                self._runner,
                query_timeout=self.timeout,
                sleep=self._sleep,
                clock=self._clock,
                warmup_seconds=self._warmup_seconds,
                handshake_timeout=self._handshake_timeout,
            )
            try:
                self._session.start()
            except ExtensionHandshakeError as e:
                logger.warning(f"osquery extension unavailable: {e}")
        return self._session if self._session.is_ready else None

    def _run_simple(self, query: str) -> List[Record]:
        result = self._runner.run([self.osquery_path, "--json", query], timeout=self.timeout)
        if result.timed_out:
            raise QueryExecutionError(QueryErrorKind.TIMEOUT, f"no result within {self.timeout}s", query=query)
        if result.launch_failed:
            raise QueryExecutionError(QueryErrorKind.LAUNCH, result.stderr.strip(), query=query)
        if not result.ok:
            detail = result.stderr.strip() or f"osqueryi exited with code {result.returncode}"
            raise QueryExecutionError(QueryErrorKind.EXECUTION, detail, query=query)
        return parse_query_output(result.stdout, query)
