"""
Data collection pipeline.

This module provides the CollectionOrchestrator that drives a run, the
module processor interface, and the built-in query catalogs.
"""

from .base import ModuleProcessor, QueryModuleProcessor, parse_shell_output
from .catalog import DEFAULT_CATALOGS, ModuleCatalog, ModuleRegistry
from .orchestrator import NO_CACHED_DATA_MESSAGE, CollectionOrchestrator, RunOptions

__all__ = [
    "CollectionOrchestrator",
    "DEFAULT_CATALOGS",
    "ModuleCatalog",
    "ModuleProcessor",
    "ModuleRegistry",
    "NO_CACHED_DATA_MESSAGE",
    "QueryModuleProcessor",
    "RunOptions",
    "parse_shell_output",
]
