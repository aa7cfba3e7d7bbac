"""
Command-line interface for the reportmate package.

This module provides the main CLI entry point for the collection agent.
"""

from .main import main_cli

__all__ = [
    "main_cli",
]
