"""
Console logging context and report printing for the CLI.
"""

import logging
import sys
from typing import IO, Any, Mapping, Optional

from ..models.results import RunOutcome

LOG_FORMAT = "%(asctime)s [%(levelname)-5.5s] %(name)s:%(filename)s:%(lineno)d\t %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
ROOT_LOGGER_NAME = "reportmate"

# -v count: errors, +warnings, +info, +debug
VERBOSITY_LEVELS = [logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG]
VERBOSITY_DESCRIPTIONS = [
    "Errors Only",
    "Errors + Warnings",
    "Errors + Warnings + Info",
    "Errors + Warnings + Info + Debug",
]


def level_for(verbosity: int, log_level: Optional[str] = None) -> int:
    """
    Effective logging level for a verbosity count and optional configured LogLevel.

    The more verbose of the two wins.
    """
    level = VERBOSITY_LEVELS[max(0, min(verbosity, len(VERBOSITY_LEVELS) - 1))]
    if log_level:
        configured = logging.getLevelName(log_level.upper())
        if isinstance(configured, int):
            level = min(level, configured)
    return level


class LoggingContext:
    """
    Attaches a console handler to the package logger for the life of a CLI run.

    Nothing is configured globally; ``close()`` restores the logger.
    """

    def __init__(self, verbosity: int = 0, log_level: Optional[str] = None,
                 stream: Optional[IO[str]] = None):
        self.verbosity = max(0, min(verbosity, len(VERBOSITY_LEVELS) - 1))
        self.level = level_for(self.verbosity, log_level)
        self.logger = logging.getLogger(ROOT_LOGGER_NAME)
        self.handler = logging.StreamHandler(stream or sys.stdout)
        self.handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        self.handler.setLevel(self.level)
        self._previous_level = self.logger.level
        self.logger.addHandler(self.handler)
        self.logger.setLevel(self.level)

    @property
    def description(self) -> str:
        return VERBOSITY_DESCRIPTIONS[self.verbosity]

    def set_log_level(self, log_level: Optional[str]) -> None:
        """Apply a configured LogLevel once the configuration is known."""
        self.level = level_for(self.verbosity, log_level)
        self.handler.setLevel(self.level)
        self.logger.setLevel(self.level)

    def close(self) -> None:
        self.logger.removeHandler(self.handler)
        self.logger.setLevel(self._previous_level)
        self.handler.flush()

    def __enter__(self) -> "LoggingContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def print_section(title: str, rows: Mapping[str, Any], out: Optional[IO[str]] = None) -> None:
    out = out or sys.stdout
    print(f"=== {title} ===", file=out)
    for key, value in rows.items():
        print(f"  {key}: {value}", file=out)
    print("", file=out)


def print_outcome(outcome: RunOutcome, out: Optional[IO[str]] = None) -> None:
    """Print the final run result."""
    out = out or sys.stdout
    status = "SUCCESS" if outcome.success else "FAILED"
    print(f"{status}: {outcome.message}", file=out)
    if outcome.failed_modules:
        print(f"  Modules not collected: {', '.join(outcome.failed_modules)}", file=out)
