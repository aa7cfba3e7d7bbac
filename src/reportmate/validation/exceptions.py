"""
Exception types and error handling helpers for the agent.

This module keeps error handling small: one exception hierarchy describing the
failure classes of the collection pipeline, plus logging helpers that report
an error at a chosen severity and optionally re-raise it.
"""

import logging
import sys
from enum import Enum
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Severity levels for error handling."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ValidationError(Exception):
    """
    Exception raised when a value fails validation or coercion.

    Configuration sources use it to reject a single malformed value while
    keeping the previously resolved one.
    """

    def __init__(self, message: str, field_name: Optional[str] = None,
                 value: Any = None, severity: ErrorSeverity = ErrorSeverity.ERROR):
        super().__init__(message)
        self.field_name = field_name
        self.value = value
        self.severity = severity


class ReportMateError(Exception):
    """Base class for all agent failures."""


class ConfigurationError(ReportMateError):
    """A configuration source could not be read or parsed."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class FatalConfigurationError(ReportMateError):
    """The run cannot proceed at all (missing identity, privilege or endpoint)."""


class QueryErrorKind(Enum):
    """Failure classes of a single osquery invocation."""
    LAUNCH = "launch"
    EXECUTION = "execution"
    OUTPUT_FORMAT = "output_format"
    TIMEOUT = "timeout"


class QueryExecutionError(ReportMateError):
    """
    A query could not be executed or its output could not be decoded.

    Attributes:
        kind: Which stage failed
        detail: stderr text or decoder message
        query: The query text, when known
    """

    def __init__(self, kind: QueryErrorKind, detail: str, query: Optional[str] = None):
        super().__init__(f"osquery {kind.value} failure: {detail}")
        self.kind = kind
        self.detail = detail
        self.query = query


class ExtensionHandshakeError(ReportMateError):
    """The osquery extension did not become ready within the handshake bound."""


class CacheIOError(ReportMateError):
    """A cache artifact could not be written."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class TransmissionError(ReportMateError):
    """
    Exception form of a failed transmission.

    The client itself never raises; callers that prefer exceptions can turn a
    failure outcome into this error with ``TransmissionFailure.to_error()``.
    """

    def __init__(self, message: str, outcome: Any = None):
        super().__init__(message)
        self.outcome = outcome


def handle_error(
    error: Exception,
    context: str,
    severity: Union[ErrorSeverity, str] = ErrorSeverity.ERROR,
    reraise: bool = True,
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Handle errors with consistent logging and optional re-raising.

    Args:
        error: The exception that occurred
        context: Context description of where the error occurred
        severity: Severity level for logging
        reraise: Whether to re-raise the exception after logging
        logger: Logger instance to use (defaults to module logger)
    """
    effective_logger = logger or globals()['logger']

    error_msg = f"Error in {context}: {error}"

    if isinstance(severity, str):
        severity_str = severity.lower()
    else:
        severity_str = severity.value

    if severity_str == "debug":
        effective_logger.debug(error_msg, exc_info=True)
    elif severity_str == "info":
        effective_logger.info(error_msg)
    elif severity_str == "warning":
        effective_logger.warning(error_msg)
    elif severity_str == "error":
        effective_logger.error(error_msg)
    elif severity_str == "critical":
        effective_logger.critical(error_msg, exc_info=True)

    if reraise:
        raise error


def handle_config_error(error: Exception, context: str, **kwargs) -> None:
    """Handle configuration-related errors."""
    handle_error(error, f"config {context}", **kwargs)


def handle_file_error(error: Exception, context: str, **kwargs) -> None:
    """Handle file-related errors."""
    handle_error(error, f"file {context}", **kwargs)


def handle_subprocess_error(error: Exception, command: str, **kwargs) -> None:
    """Handle subprocess-related errors."""
    handle_error(error, f"subprocess command '{command}'", **kwargs)


def handle_cli_error(error: Exception, context: str, exit_code: int = 1, **kwargs) -> None:
    """Log a CLI error and exit with ``exit_code``."""
    kwargs.setdefault("severity", ErrorSeverity.ERROR)
    handle_error(error, f"CLI {context}", reraise=False, **kwargs)
    sys.exit(exit_code)
