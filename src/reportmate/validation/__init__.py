"""
Validation and error handling for the reportmate package.

This module provides the agent's exception taxonomy, value coercion helpers
and consistent error reporting across the application.
"""

from .exceptions import (
    CacheIOError,
    ConfigurationError,
    ErrorSeverity,
    ExtensionHandshakeError,
    FatalConfigurationError,
    QueryErrorKind,
    QueryExecutionError,
    ReportMateError,
    TransmissionError,
    ValidationError,
    handle_cli_error,
    handle_error,
    handle_config_error,
    handle_file_error,
    handle_subprocess_error,
)

from .validators import (
    validate_bool,
    validate_enum_choice,
    validate_identifier,
    validate_module_list,
    validate_non_empty_string,
    validate_positive_integer,
)

__all__ = [
    # Errors
    "CacheIOError",
    "ConfigurationError",
    "ErrorSeverity",
    "ExtensionHandshakeError",
    "FatalConfigurationError",
    "QueryErrorKind",
    "QueryExecutionError",
    "ReportMateError",
    "TransmissionError",
    "ValidationError",
    "handle_cli_error",
    "handle_error",
    "handle_config_error",
    "handle_file_error",
    "handle_subprocess_error",
    # Validators
    "validate_bool",
    "validate_enum_choice",
    "validate_identifier",
    "validate_module_list",
    "validate_non_empty_string",
    "validate_positive_integer",
]
