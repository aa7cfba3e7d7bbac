"""
Configuration management for the reportmate package.

This module provides the layered configuration resolver and the helpers it
uses to read property-list files and the environment.
"""

# Main configuration interface
from .manager import ConfigurationManager, SourcePaths, describe_snapshot

# For advanced usage - direct access to loaders and coercion
from .loader import canonical_key, load_environment, load_plist_file, write_plist_file
from .validators import coerce_config_value

__all__ = [
    # Main interface
    "ConfigurationManager",
    "SourcePaths",
    "describe_snapshot",
    # Advanced interface
    "canonical_key",
    "coerce_config_value",
    "load_environment",
    "load_plist_file",
    "write_plist_file",
]
