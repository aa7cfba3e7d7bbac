"""
osquery integration.

This module provides the QueryEngine used by module processors, the
persistent extension session behind it, and helpers for locating the
macadmins extension.
"""

from .engine import QueryEngine, parse_query_output
from .extension import (
    EXTENSION_TABLES,
    extract_json_array,
    query_uses_extension_tables,
    referenced_tables,
    resolve_extension_path,
)
from .session import ExtensionSession

__all__ = [
    "EXTENSION_TABLES",
    "ExtensionSession",
    "QueryEngine",
    "extract_json_array",
    "parse_query_output",
    "query_uses_extension_tables",
    "referenced_tables",
    "resolve_extension_path",
]
