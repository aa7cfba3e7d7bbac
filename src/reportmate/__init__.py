"""
ReportMate: fleet telemetry agent for managed macOS devices.

This package collects inventory, security, hardware and network facts with
osquery (plus shell fallbacks), caches the aggregated payload and sends it
to the ReportMate collection API.

The package is organized into specialized modules:
- config: Layered configuration resolution
- models: Data structures and type definitions
- validation: Error taxonomy and value coercion
- system: Process execution and host identity
- osquery: Query engine and extension session
- storage: Collection cache
- api: Transmission client
- collection: Module processors and run orchestration
- cli: Command-line interface

Usage:
    From command line:
        reportmate --collect-only -vv

    Programmatically:
        from reportmate import CollectionOrchestrator, ConfigurationManager, RunOptions
        orchestrator = CollectionOrchestrator(ConfigurationManager())
        outcome = orchestrator.run(RunOptions(force=True))
"""

from .config.defaults import PACKAGE_VERSION

# Main interfaces
from .config import ConfigurationManager
from .collection import CollectionOrchestrator, ModuleProcessor, ModuleRegistry, RunOptions
from .osquery import QueryEngine
from .storage import CacheStore
from .api import TransmissionClient
from .cli import main_cli

# Model classes for external use
from .models import (
    ConfigSource,
    ConfigurationSnapshot,
    QueryResult,
    RunOutcome,
    TransmissionFailure,
    TransmissionSuccess,
)

# Errors
from .validation import (
    CacheIOError,
    ConfigurationError,
    ExtensionHandshakeError,
    FatalConfigurationError,
    QueryExecutionError,
    ReportMateError,
    TransmissionError,
    ValidationError,
)

__version__ = PACKAGE_VERSION

__all__ = [
    # Main interfaces
    "CacheStore",
    "CollectionOrchestrator",
    "ConfigurationManager",
    "ModuleProcessor",
    "ModuleRegistry",
    "QueryEngine",
    "RunOptions",
    "TransmissionClient",
    "main_cli",
    # Models
    "ConfigSource",
    "ConfigurationSnapshot",
    "QueryResult",
    "RunOutcome",
    "TransmissionFailure",
    "TransmissionSuccess",
    # Errors
    "CacheIOError",
    "ConfigurationError",
    "ExtensionHandshakeError",
    "FatalConfigurationError",
    "QueryExecutionError",
    "ReportMateError",
    "TransmissionError",
    "ValidationError",
]
